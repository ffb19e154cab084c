"""
Activity log: what happened to which work item, and when.

Events are rows in a small SQLite database ($AGELUM_HOME/activity.db).
They are written by the HTTP API after each mutation and by the work tree
watcher for edits made outside the app (editors, agents, git).
"""
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "created",
    "moved",
    "renamed",
    "deleted",
    "updated",
    "process_started",
    "process_stopped",
    "test_finished",
    "report_created",
}


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode with dict-like rows."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class ActivityLog:
    """SQLite-backed append-only event log."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo TEXT NOT NULL,
                    kind TEXT,
                    item_id TEXT,
                    event_type TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    details TEXT,  -- JSON object
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_activity_repo
                ON activity_events(repo, created_at)
            """)

    def emit_event(
        self,
        repo: str,
        event_type: str,
        summary: str,
        kind: Optional[str] = None,
        item_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert one event and return its id."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Invalid event_type: {event_type}")
        if not repo:
            raise ValueError("repo is required")

        now = datetime.now(timezone.utc).isoformat()
        with _connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO activity_events
                (repo, kind, item_id, event_type, summary, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (repo, kind, item_id, event_type, summary,
                 json.dumps(details) if details else None, now),
            )
            event_id = cursor.lastrowid
        logger.debug(f"Activity #{event_id} {event_type} in {repo}: {summary}")
        return event_id

    def get_recent_events(self, repo: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events first, optionally for one repo."""
        with _connect(self.db_path) as conn:
            if repo:
                rows = conn.execute(
                    """
                    SELECT * FROM activity_events
                    WHERE repo = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (repo, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM activity_events
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()

        events = []
        for row in rows:
            event = dict(row)
            event["details"] = json.loads(event["details"]) if event["details"] else None
            events.append(event)
        return events
