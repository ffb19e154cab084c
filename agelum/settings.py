"""
User settings and project resolution.

Global settings live in ``$AGELUM_HOME/user-settings.json``. The fields that
belong to a single project (workflowId, commands, url, autoRun) are kept in
that project's ``.agelum/config.json`` instead and merged in on read.
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import agelum_home

logger = logging.getLogger(__name__)

SETTINGS_FILE = "user-settings.json"
LEGACY_CONFIG_FILE = "config.json"
PROJECT_CONFIG = ".agelum/config.json"
DEFAULT_DEV_COMMAND = "pnpm dev"

PROJECT_FIELDS = ("workflowId", "commands", "url", "autoRun")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "theme": "dark",
    "language": "en",
    "notifications": True,
    "autoSave": True,
    "defaultView": "epics",
    "sidebarCollapsed": False,
    "editorFontSize": 14,
    "editorFontFamily": "monospace",
    "showLineNumbers": True,
    "wordWrap": True,
    "aiModel": "default",
    "aiProvider": "auto",
    "projects": [],
    "enabledAgents": [],
    "stagehandApiKey": "",
    "openaiApiKey": "",
    "anthropicApiKey": "",
    "googleApiKey": "",
    "grokApiKey": "",
    "workflows": [],
    "activeWorkflow": "default",
    "createBranchPerTask": False,
}

# settings key -> environment variable used to backfill it
ENV_API_KEYS = {
    "stagehandApiKey": "BROWSERBASE_API_KEY",
    "openaiApiKey": "OPENAI_API_KEY",
    "anthropicApiKey": "ANTHROPIC_API_KEY",
    "googleApiKey": "GOOGLE_GENERATIVE_AI_API_KEY",
    "grokApiKey": "XAI_API_KEY",
}

PORT_RE = re.compile(r"(?:-p|--port)\s+(\d+)")


@dataclass
class ProjectConfig:
    """A configured project (or a folder containing projects)."""

    id: str
    name: str
    path: str
    type: str = "project"           # project | folder
    workflow_id: Optional[str] = None
    commands: Dict[str, str] = field(default_factory=dict)
    url: Optional[str] = None
    auto_run: bool = False

    @property
    def dev_command(self) -> str:
        return self.commands.get("dev") or DEFAULT_DEV_COMMAND

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "type": self.type,
        }
        if self.workflow_id:
            data["workflowId"] = self.workflow_id
        if self.commands:
            data["commands"] = self.commands
        if self.url:
            data["url"] = self.url
        if self.auto_run:
            data["autoRun"] = self.auto_run
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        return cls(
            id=data.get("id") or data.get("name", ""),
            name=data.get("name", ""),
            path=data.get("path", ""),
            type=data.get("type", "project"),
            workflow_id=data.get("workflowId"),
            commands=data.get("commands") or {},
            url=data.get("url"),
            auto_run=bool(data.get("autoRun", False)),
        )


def settings_path(home=None) -> Path:
    return Path(home or agelum_home()) / SETTINGS_FILE


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Per-project config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def detect_project_url(project_path) -> Optional[str]:
    """Guess the dev server URL from package.json scripts."""
    pkg_path = Path(project_path) / "package.json"
    if not pkg_path.is_file():
        return None
    try:
        pkg = json.loads(pkg_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Cannot read {pkg_path}: {e}")
        return None

    scripts = pkg.get("scripts") or {}
    script = scripts.get("dev") or scripts.get("start") or ""
    match = PORT_RE.search(script)
    if match:
        return f"http://localhost:{match.group(1)}/"
    if "next dev" in script or "next start" in script:
        return "http://localhost:3000/"
    if "vite" in script:
        return "http://localhost:5173/"
    return None


def read_project_config(project_path) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    path = Path(project_path) / PROJECT_CONFIG
    if path.is_file():
        try:
            config.update(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cannot read project config {path}: {e}")
    # Drop keys written as null
    config = {k: v for k, v in config.items() if v is not None}
    if not config.get("url"):
        url = detect_project_url(project_path)
        if url:
            config["url"] = url
    return config


def save_project_config(project_path, project: Dict[str, Any]) -> Path:
    path = Path(project_path) / PROJECT_CONFIG
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {k: project.get(k) for k in PROJECT_FIELDS}
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Global settings
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def read_settings(home=None) -> Dict[str, Any]:
    """Stored settings over defaults, API keys backfilled from env."""
    path = settings_path(home)
    settings = dict(DEFAULT_SETTINGS)
    if path.is_file():
        try:
            stored = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(stored, dict):
                settings.update(stored)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable settings {path}: {e}")

    for key, env in ENV_API_KEYS.items():
        if not settings.get(key) and os.environ.get(env):
            settings[key] = os.environ[env]

    projects = []
    for project in settings.get("projects") or []:
        if project.get("type") == "project" and project.get("path"):
            project = {**project, **read_project_config(project["path"])}
        projects.append(project)
    settings["projects"] = projects
    return settings


def save_settings(settings: Dict[str, Any], home=None) -> Path:
    """Write global settings (mode 0600) and per-project config files."""
    path = settings_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)

    global_projects = []
    for project in settings.get("projects") or []:
        if project.get("type") == "project":
            if project.get("path"):
                save_project_config(project["path"], project)
            project = {k: v for k, v in project.items() if k not in PROJECT_FIELDS}
        global_projects.append(project)

    data = {**settings, "projects": global_projects}
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.chmod(path, 0o600)
    logger.info(f"Saved settings to {path}")
    return path


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Project resolution
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def root_git_directory(home=None) -> Optional[Path]:
    """rootGitDirectory from the legacy $AGELUM_HOME/config.json, if set."""
    path = Path(home or agelum_home()) / LEGACY_CONFIG_FILE
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Cannot read {path}: {e}")
        return None
    root = data.get("rootGitDirectory") if isinstance(data, dict) else None
    return Path(root).expanduser() if root else None


def _virtual_project(name: str, path: Path) -> ProjectConfig:
    data = {"id": name, "name": name, "path": str(path), "type": "project"}
    data.update(read_project_config(path))
    return ProjectConfig.from_dict(data)


def resolve_project(name: str, home=None) -> Optional[ProjectConfig]:
    """Find a project by name: configured, inside a folder, or under the git root."""
    if not name:
        return None
    settings = read_settings(home)
    projects = settings.get("projects") or []

    for project in projects:
        if project.get("type") == "project" and project.get("name") == name:
            return ProjectConfig.from_dict(project)

    for container in projects:
        if container.get("type") != "folder" or not container.get("path"):
            continue
        candidate = Path(container["path"]) / name
        if candidate.is_dir():
            return _virtual_project(name, candidate)

    root = root_git_directory(home)
    if root:
        candidate = root / name
        if candidate.is_dir():
            return _virtual_project(name, candidate)
    return None


def _child_dirs(path: Path) -> List[Path]:
    if not path.is_dir():
        return []
    return sorted(p for p in path.iterdir() if p.is_dir() and not p.name.startswith("."))


def list_repositories(home=None) -> Tuple[List[Dict[str, str]], str]:
    """(repositories, base_path). base_path is set only in git-root mode."""
    settings = read_settings(home)
    projects = settings.get("projects") or []

    if projects:
        repos: Dict[str, Dict[str, str]] = {}
        for project in projects:
            if project.get("type") == "project":
                repos.setdefault(project["name"], {"name": project["name"], "path": project["path"]})
            elif project.get("type") == "folder":
                for child in _child_dirs(Path(project.get("path", ""))):
                    repos.setdefault(child.name, {
                        "name": child.name,
                        "path": str(child),
                        "folderConfigId": project.get("id", ""),
                    })
        return list(repos.values()), ""

    root = root_git_directory(home)
    if not root:
        return [], ""
    return [{"name": p.name, "path": str(p)} for p in _child_dirs(root)], str(root)
