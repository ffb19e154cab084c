"""
Work tree watcher.

Watches <repo>/.agelum with watchdog and turns markdown changes under the
item roots into activity events, so edits made by editors or agents show up
in the same log as edits made through the app.
"""
import logging
import time
from pathlib import Path
from typing import Dict, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .events import ActivityLog
from .layout import PRIMARY_ROOTS, agelum_path, ensure_structure
from .schema import ItemKind, STATES
from .markdown import file_name_to_id

logger = logging.getLogger(__name__)


def classify(path: Path, root: Path) -> Optional[Tuple[ItemKind, str, str]]:
    """(kind, state, item id) for an item file under root, else None."""
    if path.suffix != ".md":
        return None
    try:
        rel = path.relative_to(root)
    except ValueError:
        return None
    parts = rel.parts
    for kind, prefix in PRIMARY_ROOTS.items():
        prefix_parts = tuple(prefix.split("/"))
        if parts[:len(prefix_parts)] != prefix_parts:
            continue
        rest = parts[len(prefix_parts):]
        # <state>/<file> or <state>/<epic>/<file>
        if len(rest) < 2 or len(rest) > 3:
            return None
        state = rest[0]
        if state == "priority" and kind != ItemKind.IDEA:
            state = "fixes"
        if state not in STATES[kind]:
            return None
        return kind, state, file_name_to_id(path.name)
    return None


class WorkTreeHandler(FileSystemEventHandler):
    """Maps filesystem events under .agelum to activity events."""

    def __init__(self, repo: str, root: Path, log: ActivityLog, debounce_ms: int = 500):
        self.repo = repo
        self.root = root.resolve()
        self.log = log
        self.debounce_ms = debounce_ms
        self._last_seen: Dict[str, float] = {}

    def _debounce(self, path: str) -> bool:
        """Return True if this path hasn't been seen within the debounce window."""
        now = time.monotonic()
        last = self._last_seen.get(path)
        if last is not None and (now - last) < (self.debounce_ms / 1000):
            return False
        self._last_seen[path] = now
        return True

    def _classify(self, path: str):
        return classify(Path(path).resolve(), self.root)

    def _emit(self, event_type: str, info, summary: str, **details):
        kind, state, item_id = info
        self.log.emit_event(
            self.repo, event_type, summary,
            kind=kind.value, item_id=item_id,
            details={"state": state, **details},
        )

    def on_created(self, fs_event):
        if fs_event.is_directory:
            return
        info = self._classify(fs_event.src_path)
        if info:
            self._last_seen[fs_event.src_path] = time.monotonic()
            self._emit("created", info, f"{info[0].value} {info[2]} created in {info[1]}")

    def on_modified(self, fs_event):
        if fs_event.is_directory:
            return
        info = self._classify(fs_event.src_path)
        if info and self._debounce(fs_event.src_path):
            self._emit("updated", info, f"{info[0].value} {info[2]} updated")

    def on_deleted(self, fs_event):
        if fs_event.is_directory:
            return
        info = self._classify(fs_event.src_path)
        if info:
            self._last_seen.pop(fs_event.src_path, None)
            self._emit("deleted", info, f"{info[0].value} {info[2]} deleted")

    def on_moved(self, fs_event):
        if fs_event.is_directory:
            return
        src = self._classify(fs_event.src_path)
        dst = self._classify(fs_event.dest_path)
        if src and dst:
            if src[1] != dst[1]:
                self._emit("moved", dst, f"{dst[0].value} {dst[2]}: {src[1]} -> {dst[1]}",
                           from_state=src[1])
            else:
                self._emit("renamed", dst, f"{src[2]} renamed to {dst[2]}", from_id=src[2])
        elif dst:
            self._emit("created", dst, f"{dst[0].value} {dst[2]} created in {dst[1]}")
        elif src:
            self._emit("deleted", src, f"{src[0].value} {src[2]} deleted")


class WorkTreeWatcher:
    """watchdog Observer over one project's .agelum directory."""

    def __init__(self, repo_dir, log: ActivityLog, debounce_ms: int = 500,
                 repo_name: Optional[str] = None):
        self.repo_dir = Path(repo_dir)
        self.repo_name = repo_name or self.repo_dir.name
        self.root = agelum_path(self.repo_dir)
        self.handler = WorkTreeHandler(self.repo_name, self.root, log, debounce_ms)
        self.observer: Optional[Observer] = None

    def start(self):
        ensure_structure(self.repo_dir)
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.root), recursive=True)
        self.observer.start()
        logger.info(f"Watching {self.root}")

    def stop(self):
        if self.observer:
            self.observer.stop()
            self.observer.join()
            self.observer = None

    def run_forever(self):
        """Block until interrupted."""
        self.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Stopping watcher")
        finally:
            self.stop()
