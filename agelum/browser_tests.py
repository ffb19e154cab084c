"""
Browser test scenarios stored as JSON under ``.agelum/work/tests``.

    tests/
      index.json                      # [{id, name, group, folder, ...}]
      <GROUP>/<folder>/test.json      # grouped scenario
      <id>.json                       # flat scenario (no group)
      runs/<testId>/<execId>/result.json

A scenario is ``{"name": ..., "steps": [...]}``; each step is a dict with
an ``action`` plus the fields that action needs.
"""
import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .layout import tests_root
from .schema import utc_now

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
RUNS_DIR = "runs"
TEST_FILE = "test.json"
RESULT_FILE = "result.json"
ARTIFACTS_URL = "/api/tests/artifacts/"

DEFAULT_GROUPS = ["LOGIN", "NAVIGATION", "REGRESSION", "FEATURES", "EXPERIMENTAL"]

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# action -> required fields
STEP_FIELDS: Dict[str, List[str]] = {
    "open": ["url"],
    "wait": ["type", "value"],
    "setViewport": ["width", "height"],
    "click": ["selector"],
    "type": ["selector", "text"],
    "select": ["selector", "option"],
    "check": ["selector"],
    "hover": ["selector"],
    "press": ["key"],
    "scroll": [],
    "snapshot": [],
    "screenshot": [],
    "prompt": ["instruction"],
    "verifyVisible": ["selector"],
    "command": ["command"],
}

WAIT_TYPES = ("element", "text", "url", "time")


class TestNotFound(LookupError):
    """Raised when a test id resolves to no scenario file."""
    __test__ = False


class StepValidationError(ValueError):
    """Raised when a step is missing its action or required fields."""
    pass


def validate_step(step: Any) -> Dict[str, Any]:
    if not isinstance(step, dict):
        raise StepValidationError("Step must be an object")
    action = step.get("action")
    if action not in STEP_FIELDS:
        raise StepValidationError(f"Unknown step action: {action!r}")
    missing = [f for f in STEP_FIELDS[action] if step.get(f) in (None, "")]
    if missing:
        raise StepValidationError(f"Step '{action}' requires: {', '.join(missing)}")
    if action == "wait" and step["type"] not in WAIT_TYPES:
        raise StepValidationError(f"Invalid wait type: {step['type']!r}")
    if action == "setViewport":
        for dim in ("width", "height"):
            if not isinstance(step[dim], int) or step[dim] <= 0:
                raise StepValidationError(f"setViewport {dim} must be a positive integer")
    if action == "command" and not isinstance(step.get("args", []), list):
        raise StepValidationError("command args must be a list")
    timeout = step.get("timeout")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout < 0):
        raise StepValidationError("timeout must be a non-negative number")
    return step


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _read_json(path: Path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


class BrowserTestStore:
    """Scenario, group and execution storage for one project."""

    __test__ = False

    def __init__(self, repo_dir):
        self.repo_dir = Path(repo_dir)
        self.root = tests_root(self.repo_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    @property
    def runs_dir(self) -> Path:
        return self.root / RUNS_DIR

    # ── Groups ───────────────────────────────────────────────────────────

    def ensure_default_groups(self):
        existing = {p.name.lower() for p in self.root.iterdir() if p.is_dir()}
        for group in DEFAULT_GROUPS:
            if group.lower() not in existing:
                (self.root / group).mkdir(parents=True, exist_ok=True)

    def list_groups(self) -> List[str]:
        self.ensure_default_groups()
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and not p.name.startswith(".") and p.name != RUNS_DIR
        )

    def create_group(self, name: str) -> str:
        if not name or not SAFE_ID_RE.match(name) or name == RUNS_DIR:
            raise ValueError(f"Invalid group name: {name!r}")
        (self.root / name).mkdir(parents=True, exist_ok=True)
        return name

    # ── Index ────────────────────────────────────────────────────────────

    def read_index(self) -> List[Dict[str, Any]]:
        if not self.index_path.is_file():
            return []
        try:
            data = _read_json(self.index_path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable test index {self.index_path}: {e}")
            return []
        return data if isinstance(data, list) else []

    def write_index(self, index: List[Dict[str, Any]]):
        _write_json(self.index_path, index)

    def _index_entry(self, test_id: str) -> Optional[Dict[str, Any]]:
        for entry in self.read_index():
            if entry.get("id") == test_id:
                return entry
        return None

    # ── Scenarios ────────────────────────────────────────────────────────

    def resolve_test_path(self, test_id: str) -> Optional[Path]:
        if not test_id or not SAFE_ID_RE.match(test_id):
            return None
        entry = self._index_entry(test_id)
        if entry and entry.get("group") and entry.get("folder"):
            path = self.root / entry["group"] / entry["folder"] / TEST_FILE
            if path.is_file():
                return path
        flat = self.root / f"{test_id}.json"
        if flat.is_file():
            return flat
        return None

    def _require(self, test_id: str) -> Path:
        path = self.resolve_test_path(test_id)
        if not path:
            raise TestNotFound(f"Test not found: {test_id}")
        return path

    def list_tests(self) -> List[Dict[str, Any]]:
        tests = [dict(entry) for entry in self.read_index()]
        seen = {t.get("id") for t in tests}
        for path in sorted(self.root.glob("*.json")):
            if path.name == INDEX_FILE:
                continue
            test_id = path.stem
            if test_id in seen:
                continue
            updated = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat()
            try:
                data = _read_json(path)
            except (OSError, json.JSONDecodeError):
                tests.append({"id": test_id, "name": path.name, "error": "Invalid JSON"})
                continue
            tests.append({
                "id": test_id,
                "name": data.get("name") or path.name,
                "stepsCount": len(data.get("steps") or []),
                "updatedAt": updated,
            })
        return tests

    def create_test(self, name: Optional[str] = None, group: Optional[str] = None,
                    steps: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        steps = [validate_step(s) for s in (steps or [])]
        test_id = slugify(name) or f"test-{int(time.time() * 1000)}"
        name = name or "Untitled Test"
        now = utc_now()
        scenario = {"name": name, "steps": steps, "createdAt": now, "updatedAt": now}

        if group:
            self.create_group(group)
            path = self.root / group / test_id / TEST_FILE
            _write_json(path, scenario)
            index = [e for e in self.read_index() if e.get("id") != test_id]
            index.append({
                "id": test_id,
                "name": name,
                "group": group,
                "folder": test_id,
                "stepsCount": len(steps),
                "createdAt": now,
                "updatedAt": now,
            })
            self.write_index(index)
        else:
            path = self.root / f"{test_id}.json"
            _write_json(path, scenario)

        logger.info(f"Created test {test_id} at {path}")
        return {"id": test_id, "name": name, "filePath": str(path)}

    def get_test(self, test_id: str) -> Dict[str, Any]:
        data = _read_json(self._require(test_id))
        return {"id": test_id, **data}

    def update_test(self, test_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data.get("name") or not isinstance(data.get("steps"), list):
            raise StepValidationError("Invalid test structure. Name and steps array required.")
        steps = [validate_step(s) for s in data["steps"]]
        path = self._require(test_id)
        existing = _read_json(path)
        existing.update({"name": data["name"], "steps": steps, "updatedAt": utc_now()})
        _write_json(path, existing)
        self._touch_index(test_id, existing, name=data["name"])
        return {"id": test_id, **existing}

    def delete_test(self, test_id: str) -> bool:
        path = self.resolve_test_path(test_id)
        if path:
            path.unlink()
            if path.name == TEST_FILE and not any(path.parent.iterdir()):
                path.parent.rmdir()
        index = self.read_index()
        remaining = [e for e in index if e.get("id") != test_id]
        if len(remaining) != len(index):
            self.write_index(remaining)
        return path is not None

    def get_steps(self, test_id: str) -> List[Dict[str, Any]]:
        return _read_json(self._require(test_id)).get("steps") or []

    def add_step(self, test_id: str, step: Dict[str, Any]) -> Dict[str, Any]:
        validate_step(step)
        path = self._require(test_id)
        data = _read_json(path)
        data.setdefault("steps", []).append(step)
        data["updatedAt"] = utc_now()
        _write_json(path, data)
        self._touch_index(test_id, data)
        return step

    def _touch_index(self, test_id: str, data: Dict[str, Any], name: Optional[str] = None):
        index = self.read_index()
        for entry in index:
            if entry.get("id") == test_id:
                entry["stepsCount"] = len(data.get("steps") or [])
                entry["updatedAt"] = data.get("updatedAt")
                if name:
                    entry["name"] = name
                self.write_index(index)
                return

    def test_name(self, test_id: str) -> str:
        entry = self._index_entry(test_id)
        if entry and entry.get("name"):
            return entry["name"]
        path = self.resolve_test_path(test_id)
        if path:
            try:
                return _read_json(path).get("name") or test_id
            except (OSError, json.JSONDecodeError):
                return test_id
        return test_id

    # ── Executions ───────────────────────────────────────────────────────

    @staticmethod
    def new_execution_id() -> str:
        return f"exec-{int(time.time() * 1000)}"

    def execution_dir(self, test_id: str, execution_id: str) -> Path:
        for part in (test_id, execution_id):
            if not part or not SAFE_ID_RE.match(part):
                raise ValueError(f"Invalid id: {part!r}")
        return self.runs_dir / test_id / execution_id

    def artifact_url(self, path: str) -> str:
        """Map a screenshot path under runs/ to its artifacts URL."""
        if path.startswith("http") or path.startswith(ARTIFACTS_URL):
            return path
        runs = self.runs_dir.resolve()
        resolved = Path(path).resolve()
        if runs in resolved.parents:
            return ARTIFACTS_URL + resolved.relative_to(runs).as_posix()
        # Paths reported from another checkout of the same project
        if "tests/runs/" in path:
            return ARTIFACTS_URL + path.split("tests/runs/", 1)[1]
        return path

    def save_result(self, result: Dict[str, Any]) -> Path:
        path = self.execution_dir(result["testId"], result["id"]) / RESULT_FILE
        _write_json(path, result)
        return path

    def finish_execution(self, test_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Persist a result reported by an external runner."""
        execution_id = body.get("executionId")
        if not execution_id:
            raise ValueError("Execution ID is required")
        start = body.get("startedAt") or utc_now()
        end = body.get("completedAt") or utc_now()
        start_dt, end_dt = parse_iso(start), parse_iso(end)
        duration = int((end_dt - start_dt).total_seconds() * 1000) if start_dt and end_dt else 0
        screenshots = body.get("screenshots") or []

        result = {
            "id": execution_id,
            "testId": test_id,
            "testName": self.test_name(test_id),
            "startedAt": start,
            "completedAt": end,
            "status": body.get("status") or "unknown",
            "duration": duration,
            "exitCode": body.get("exitCode"),
            "logs": body.get("logs") or [],
            "screenshotCount": len(screenshots),
            "screenshots": [self.artifact_url(p) for p in screenshots],
        }
        self.save_result(result)
        logger.info(f"Recorded execution {execution_id} for {test_id}: {result['status']}")
        return result

    def _results_in(self, test_dir: Path) -> List[Dict[str, Any]]:
        results = []
        if not test_dir.is_dir():
            return results
        for exec_dir in test_dir.iterdir():
            result_file = exec_dir / RESULT_FILE
            if not result_file.is_file():
                continue
            try:
                results.append(_read_json(result_file))
            except (OSError, json.JSONDecodeError) as e:
                logger.debug(f"Skipping malformed result {result_file}: {e}")
        return results

    def list_executions(self, test_id: Optional[str] = None, last: Optional[int] = None) -> List[Dict[str, Any]]:
        """Execution results, most recent first."""
        if test_id:
            if not SAFE_ID_RE.match(test_id):
                return []
            results = self._results_in(self.runs_dir / test_id)
        else:
            results = []
            if self.runs_dir.is_dir():
                for test_dir in sorted(self.runs_dir.iterdir()):
                    results.extend(self._results_in(test_dir))

        epoch = datetime.fromtimestamp(0, timezone.utc)
        results.sort(key=lambda r: parse_iso(r.get("startedAt")) or epoch, reverse=True)
        if last is not None:
            results = results[:max(last, 0)]
        return results

    def artifact_path(self, rel: str) -> Path:
        """Resolve an artifact path inside runs/, rejecting traversal."""
        base = self.runs_dir.resolve()
        resolved = (base / rel).resolve()
        try:
            resolved.relative_to(base)
        except ValueError:
            raise ValueError(f"Invalid artifact path: {rel}")
        if not resolved.is_file():
            raise FileNotFoundError(rel)
        return resolved
