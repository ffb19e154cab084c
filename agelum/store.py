"""
File-backed work item store.

Items are markdown files; the directory an item sits in is its state:

    .agelum/work/tasks/<state>/[<epic>/]<id>.md
    .agelum/work/epics/<state>/<id>.md
    .agelum/doc/ideas/<state>/<id>.md

Reads merge the primary .agelum tree with the legacy agelum/ tree; writes
always go to the primary tree.
"""
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Dict, Any

from .layout import ensure_structure, item_roots, plans_root
from .markdown import (
    parse_frontmatter,
    render_frontmatter,
    sanitize_file_base,
    timestamp_prefix,
    has_timestamp_prefix,
    file_name_to_id,
    unique_file_path,
    remove_title_from_frontmatter,
    update_markdown_title,
    build_item_markdown,
)
from .schema import (
    ItemKind,
    WorkItem,
    STATES,
    normalize_state,
    normalize_priority,
    state_dirs,
    utc_now,
)

logger = logging.getLogger(__name__)


class ItemNotFound(LookupError):
    """Raised when a work item file cannot be located."""
    pass


class InvalidItemPath(ValueError):
    """Raised when a path falls outside the item roots of the store."""
    pass


def _mtime_iso(path: Path) -> str:
    return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat()


class WorkItemStore:
    """CRUD over one kind of work item inside one project."""

    def __init__(self, repo_dir, kind: ItemKind):
        self.repo_dir = Path(repo_dir)
        self.kind = kind
        self.primary_root, self.legacy_root = item_roots(self.repo_dir, kind)

    # ── Reading ──────────────────────────────────────────────────────────

    def _roots(self) -> List[Path]:
        return [r for r in (self.primary_root, self.legacy_root) if r.is_dir()]

    def _parse_file(self, path: Path, state: str, epic: Optional[str] = None) -> Optional[WorkItem]:
        try:
            content = path.read_text(encoding="utf-8")
            created_at = _mtime_iso(path)
        except OSError as e:
            logger.warning(f"Unreadable item {path}: {e}")
            return None

        fm = parse_frontmatter(content)
        item_id = file_name_to_id(path.name)
        title = item_id
        if self.kind != ItemKind.TASK and fm.get("title"):
            title = fm["title"]
        # Reports store the tool in "source" and the page in "url"
        source = fm.get("url") or fm.get("source", "")
        if not source.startswith(("http://", "https://")):
            source = None

        return WorkItem(
            id=item_id,
            title=title,
            state=state,
            path=str(path),
            kind=self.kind,
            description=fm.get("description", ""),
            created_at=created_at,
            epic=fm.get("epic") or epic,
            assignee=fm.get("assignee", ""),
            reporter=fm.get("reporter") or None,
            priority=normalize_priority(fm.get("priority")),
            source_url=source,
        )

    def _read_dir(self, directory: Path, state: str, epic: Optional[str] = None) -> List[WorkItem]:
        items: List[WorkItem] = []
        if not directory.is_dir():
            return items
        for entry in sorted(directory.iterdir()):
            if entry.is_dir():
                # Sub-folders of a task state are epic folders
                if self.kind == ItemKind.TASK and epic is None:
                    items.extend(self._read_dir(entry, state, epic=entry.name))
            elif entry.is_file() and entry.suffix == ".md":
                item = self._parse_file(entry, state, epic)
                if item:
                    items.append(item)
        return items

    def list_items(self) -> List[WorkItem]:
        """All items of this kind, de-duplicated by path."""
        ensure_structure(self.repo_dir)
        by_path: Dict[str, WorkItem] = {}
        for root in self._roots():
            for dir_name in state_dirs(self.kind):
                state = normalize_state(self.kind, dir_name)
                for item in self._read_dir(root / dir_name, state):
                    by_path[item.path] = item
        return list(by_path.values())

    def get(self, item_id: str) -> WorkItem:
        for item in self.list_items():
            if item.id == item_id:
                return item
        raise ItemNotFound(f"{self.kind.value.capitalize()} not found: {item_id}")

    def board(self) -> Dict[str, Any]:
        """Items grouped into kanban columns in canonical state order."""
        items = self.list_items()
        columns = []
        for state in STATES[self.kind]:
            in_state = [i for i in items if i.state == state]
            in_state.sort(key=lambda i: i.created_at, reverse=True)
            columns.append({
                "state": state,
                "items": [i.to_dict() for i in in_state],
                "count": len(in_state),
            })
        return {"kind": self.kind.value, "columns": columns, "total": len(items)}

    # ── Creating ─────────────────────────────────────────────────────────

    def _state_dir(self, state: str) -> Path:
        directory = self.primary_root / state
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def create(
        self,
        title: str,
        description: str = "",
        state: Optional[str] = None,
        assignee: Optional[str] = None,
        reporter: Optional[str] = None,
        priority: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> WorkItem:
        ensure_structure(self.repo_dir)
        state = normalize_state(self.kind, state)
        directory = self._state_dir(state)
        created = utc_now()
        priority = normalize_priority(priority)

        if self.kind == ItemKind.TASK:
            base = f"{timestamp_prefix()}-{sanitize_file_base(title)}"
            path = unique_file_path(directory, base)
            item_id = file_name_to_id(path.name)
            frontmatter = render_frontmatter({
                "created": created,
                "state": state,
                "assignee": assignee,
                "reporter": reporter,
                "priority": priority,
                "source": source_url,
            })
            heading = item_id
            display_title = item_id
        else:
            ms = int(time.time() * 1000)
            path = unique_file_path(directory, f"{self.kind.value}-{ms}")
            item_id = file_name_to_id(path.name)
            frontmatter = render_frontmatter({
                "title": title,
                "created": created,
                "state": state,
            })
            heading = title
            display_title = title

        path.write_text(f"{frontmatter}\n# {heading}\n\n{description or ''}\n", encoding="utf-8")
        logger.info(f"Created {self.kind.value} {item_id} in {state}")

        return WorkItem(
            id=item_id,
            title=display_title,
            state=state,
            path=str(path),
            kind=self.kind,
            description=description or "",
            created_at=created,
            assignee=assignee or "",
            reporter=reporter,
            priority=priority,
            source_url=source_url,
        )

    def create_from_content(
        self,
        content: str,
        state: Optional[str] = None,
        file_base: Optional[str] = None,
    ) -> Dict[str, str]:
        """Write pre-composed markdown as a new task."""
        if self.kind != ItemKind.TASK:
            raise ValueError("createFromContent is only supported for tasks")
        ensure_structure(self.repo_dir)
        state = normalize_state(self.kind, state)
        directory = self._state_dir(state)

        base = f"{timestamp_prefix()}-{sanitize_file_base(file_base or 'untitled')}"
        path = unique_file_path(directory, base)
        text = build_item_markdown(utc_now(), state, file_name_to_id(path.name), content)
        path.write_text(text, encoding="utf-8")
        logger.info(f"Created task {path.name} from content")
        return {"path": str(path), "content": text}

    # ── Moving / renaming ────────────────────────────────────────────────

    def _find_in(self, directory: Path, item_id: str) -> Optional[Path]:
        if not directory.is_dir():
            return None
        target = f"{item_id}.md"
        for entry in sorted(directory.iterdir()):
            if entry.is_file() and entry.name == target:
                return entry
        for entry in sorted(directory.iterdir()):
            if entry.is_dir():
                found = self._find_in(entry, item_id)
                if found:
                    return found
        return None

    def find_file(self, item_id: str, state: str):
        """Return (path, root) of item_id under state, primary root first."""
        dir_names = [state]
        if state == "fixes" and self.kind in (ItemKind.TASK, ItemKind.EPIC):
            dir_names.append("priority")
        for root in self._roots():
            for name in dir_names:
                found = self._find_in(root / name, item_id)
                if found:
                    return found, root / name
        return None, None

    def move(self, item_id: str, from_state: str, to_state: str) -> Path:
        """Move an item to another state column, keeping its epic folder."""
        from_state = normalize_state(self.kind, from_state)
        to_state = normalize_state(self.kind, to_state)

        src, from_dir = self.find_file(item_id, from_state)
        if not src:
            raise ItemNotFound(f"{self.kind.value.capitalize()} file not found: {item_id}")

        root = from_dir.parent
        rel_parts = src.relative_to(from_dir).parts

        file_name = f"{item_id}.md"
        if self.kind == ItemKind.TASK and to_state == "done" and not has_timestamp_prefix(item_id):
            file_name = f"{timestamp_prefix()}-{item_id}.md"

        to_dir = root / to_state
        if len(rel_parts) > 1:
            to_dir = to_dir / rel_parts[0]
        to_dir.mkdir(parents=True, exist_ok=True)
        dst = to_dir / file_name

        os.replace(src, dst)
        logger.info(f"Moved {self.kind.value} {item_id}: {from_state} -> {to_state}")
        return dst

    def _check_path(self, path) -> Path:
        resolved = Path(path).resolve()
        for root in (self.primary_root, self.legacy_root):
            try:
                resolved.relative_to(root.resolve())
                return resolved
            except ValueError:
                continue
        raise InvalidItemPath(f"Invalid {self.kind.value} path: {path}")

    def rename(self, path, new_title: str) -> Dict[str, str]:
        """Rename an item file after its new title and rewrite its heading."""
        current = self._check_path(path)
        if not current.is_file():
            raise ItemNotFound(f"{self.kind.value.capitalize()} file not found: {path}")

        safe = sanitize_file_base(new_title)
        if safe.lower().endswith(".md"):
            safe = safe[:-3]
        candidate = current.parent / f"{safe}.md"
        target = current if candidate == current else unique_file_path(current.parent, safe)
        final_id = file_name_to_id(target.name)

        text = current.read_text(encoding="utf-8")
        text = remove_title_from_frontmatter(text)
        text = update_markdown_title(text, final_id)

        if target != current:
            os.replace(current, target)
        target.write_text(text, encoding="utf-8")
        logger.info(f"Renamed {current.name} -> {target.name}")
        return {"path": str(target), "content": text, "id": final_id, "title": final_id}

    # ── Raw content ──────────────────────────────────────────────────────

    def read_content(self, path) -> str:
        resolved = self._check_path(path)
        if not resolved.is_file():
            raise ItemNotFound(f"File not found: {path}")
        return resolved.read_text(encoding="utf-8")

    def write_content(self, path, content: str) -> Path:
        resolved = self._check_path(path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
        return resolved

    def delete(self, path) -> None:
        resolved = self._check_path(path)
        if not resolved.is_file():
            raise ItemNotFound(f"File not found: {path}")
        resolved.unlink()
        logger.info(f"Deleted {resolved}")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Plans (flat markdown files, no states)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def list_plans(repo_dir) -> List[Dict[str, str]]:
    root = plans_root(repo_dir)
    if not root.is_dir():
        return []
    plans = []
    for path in sorted(root.glob("*.md"), reverse=True):
        fm = parse_frontmatter(path.read_text(encoding="utf-8"))
        plans.append({
            "id": file_name_to_id(path.name),
            "title": fm.get("title") or file_name_to_id(path.name),
            "createdAt": _mtime_iso(path),
            "path": str(path),
        })
    return plans


def create_plan(repo_dir, title: str, content: str = "") -> Dict[str, str]:
    ensure_structure(repo_dir)
    root = plans_root(repo_dir)
    path = unique_file_path(root, f"{timestamp_prefix()}-{sanitize_file_base(title)}")
    frontmatter = render_frontmatter({"title": title, "created": utc_now()})
    text = f"{frontmatter}\n# {title}\n\n{content or ''}\n"
    path.write_text(text, encoding="utf-8")
    return {"id": file_name_to_id(path.name), "title": title, "path": str(path)}
