# Agelum server: configuration
# Override defaults via config.yaml ($AGELUM_CONFIG or $AGELUM_HOME/config.yaml).

import logging
import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import List, Optional

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a config file exists but cannot be parsed."""
    pass


def agelum_home() -> Path:
    """Per-user state directory: $AGELUM_HOME or ~/.agelum."""
    return Path(os.environ.get("AGELUM_HOME") or Path.home() / ".agelum").expanduser()


def default_config_path() -> Path:
    env = os.environ.get("AGELUM_CONFIG")
    if env:
        return Path(env).expanduser()
    return agelum_home() / "config.yaml"


@dataclass
class Config:
    """Runtime configuration for the Agelum server and CLI."""

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 6500
    home_dir: str = ""  # "" = $AGELUM_HOME or ~/.agelum
    log_level: str = "INFO"

    # Browser test runner (spawned per run)
    runner_command: List[str] = field(
        default_factory=lambda: ["npx", "tsx", "packages/test-engine/src/runner.ts"]
    )
    runner_cwd: str = "."

    # External binaries
    agent_browser_bin: str = "agent-browser"
    gemini_bin: str = "gemini"

    # Timeouts (seconds)
    browser_command_timeout: int = 30
    gemini_timeout: int = 60
    gemini_agent_timeout: int = 120

    # Behavior
    watch: bool = False
    debounce_ms: int = 500
    buffer_retention_secs: int = 10

    def resolve_paths(self):
        """Expand ~ and fill in the home directory."""
        if not self.home_dir:
            self.home_dir = str(agelum_home())
        self.home_dir = str(Path(self.home_dir).expanduser())
        self.runner_cwd = str(Path(self.runner_cwd).expanduser().resolve())

    @property
    def activity_db(self) -> str:
        return str(Path(self.home_dir) / "activity.db")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path) if path else default_config_path()
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {cfg_path} must be a mapping")
            known = {f.name for f in fields(cls)}
            cfg = cls(**{k: v for k, v in data.items() if k in known})
            logger.info(f"Loaded config from {cfg_path}")
        else:
            cfg = cls()
        cfg.resolve_paths()
        return cfg
