"""
Work item schema.

Every work item is a markdown file. Its kind decides the root directory,
its state is the name of the directory it sits in:

  tasks:  backlog | fixes | pending | doing | done | inbox
  epics:  backlog | fixes | pending | doing | done
  ideas:  thinking | important | priority | planned | done

The legacy task/epic state "priority" is folded into "fixes" on read and
redirected on write. For ideas "priority" is a real column.
"""
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class InvalidState(ValueError):
    """Raised when a state name is not valid for the item kind."""
    pass


class ItemKind(Enum):
    """Kinds of work item, each with its own directory tree."""
    TASK = "task"
    EPIC = "epic"
    IDEA = "idea"

    @classmethod
    def from_str(cls, value: str) -> "ItemKind":
        value = (value or "").strip().lower()
        # Accept plural route names ("tasks", "epics", "ideas")
        if value.endswith("s"):
            value = value[:-1]
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Invalid item kind: {value!r}")

    @property
    def plural(self) -> str:
        return self.value + "s"


TASK_STATES: List[str] = ["backlog", "fixes", "pending", "doing", "done", "inbox"]
EPIC_STATES: List[str] = ["backlog", "fixes", "pending", "doing", "done"]
IDEA_STATES: List[str] = ["thinking", "important", "priority", "planned", "done"]

STATES: Dict[ItemKind, List[str]] = {
    ItemKind.TASK: TASK_STATES,
    ItemKind.EPIC: EPIC_STATES,
    ItemKind.IDEA: IDEA_STATES,
}

DEFAULT_STATE: Dict[ItemKind, str] = {
    ItemKind.TASK: "pending",
    ItemKind.EPIC: "backlog",
    ItemKind.IDEA: "thinking",
}

# Directories scanned on read; tasks and epics still carry "priority" on disk
# in older projects.
LEGACY_STATE_DIRS: Dict[ItemKind, List[str]] = {
    ItemKind.TASK: ["priority"],
    ItemKind.EPIC: ["priority"],
    ItemKind.IDEA: [],
}

PRIORITIES = ("low", "medium", "high", "urgent")


def normalize_state(kind: ItemKind, state: Optional[str]) -> str:
    """Map a requested state onto a canonical state for kind.

    Empty means the kind's default. Raises InvalidState on unknown names.
    """
    if not state:
        return DEFAULT_STATE[kind]
    state = state.strip().lower()
    if state == "priority" and kind in (ItemKind.TASK, ItemKind.EPIC):
        return "fixes"
    if state not in STATES[kind]:
        raise InvalidState(f"Invalid {kind.value} state: {state}")
    return state


def state_dirs(kind: ItemKind) -> List[str]:
    """All directory names that may hold items of kind, canonical first."""
    return STATES[kind] + LEGACY_STATE_DIRS[kind]


def normalize_priority(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip().lower()
    return value if value in PRIORITIES else None


@dataclass
class WorkItem:
    """A single markdown-backed task, epic or idea."""

    id: str                         # File name without .md
    title: str
    state: str
    path: str
    kind: ItemKind = ItemKind.TASK
    description: str = ""
    created_at: str = ""            # File mtime, ISO-8601 UTC

    # Task-only metadata
    epic: Optional[str] = None
    assignee: str = ""
    reporter: Optional[str] = None
    priority: Optional[str] = None
    source_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys the board UI reads."""
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "state": self.state,
            "createdAt": self.created_at,
            "path": self.path,
        }
        if self.kind == ItemKind.TASK:
            data["assignee"] = self.assignee
        if self.epic:
            data["epic"] = self.epic
        if self.reporter:
            data["reporter"] = self.reporter
        if self.priority:
            data["priority"] = self.priority
        if self.source_url:
            data["sourceUrl"] = self.source_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: ItemKind = ItemKind.TASK) -> "WorkItem":
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            state=data.get("state", DEFAULT_STATE[kind]),
            path=data.get("path", ""),
            kind=kind,
            description=data.get("description", ""),
            created_at=data.get("createdAt", ""),
            epic=data.get("epic"),
            assignee=data.get("assignee", ""),
            reporter=data.get("reporter"),
            priority=normalize_priority(data.get("priority")),
            source_url=data.get("sourceUrl"),
        )
