"""
The .agelum directory convention.

Every managed project keeps its work items under ``<repo>/.agelum``:

    .agelum/
      doc/{docs,plan,context,ideas/<state>}
      work/{tasks/<state>,epics/<state>,tests}
      ai/{commands,skills,agents}
      temp/

Older projects used a flat ``<repo>/agelum`` tree (tasks/, epics/, ideas/,
plan/, docs/). Readers still scan it; migrate_legacy_layout() moves it over.
"""
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from .schema import ItemKind, STATES

logger = logging.getLogger(__name__)

AGELUM_DIR = ".agelum"
LEGACY_DIR = "agelum"

AGELUM_STRUCTURE: List[str] = (
    ["doc/docs", "doc/plan", "doc/context"]
    + [f"doc/ideas/{s}" for s in STATES[ItemKind.IDEA]]
    + [f"work/tasks/{s}" for s in STATES[ItemKind.TASK]]
    + ["work/tasks/images"]
    + [f"work/epics/{s}" for s in STATES[ItemKind.EPIC]]
    + ["work/tests", "ai/commands", "ai/skills", "ai/agents", "temp"]
)

PRIMARY_ROOTS: Dict[ItemKind, str] = {
    ItemKind.TASK: "work/tasks",
    ItemKind.EPIC: "work/epics",
    ItemKind.IDEA: "doc/ideas",
}

LEGACY_ROOTS: Dict[ItemKind, str] = {
    ItemKind.TASK: "tasks",
    ItemKind.EPIC: "epics",
    ItemKind.IDEA: "ideas",
}

# Legacy top-level dirs that are not per-state item trees
LEGACY_DOC_DIRS: Dict[str, str] = {
    "plan": "doc/plan",
    "docs": "doc/docs",
}

SKILL_FILE = "ai/skills/agent-browser.md"

AGENT_BROWSER_SKILL = """# Agent Browser Skill

## Overview

Use `agelum browser` CLI to interact with browsers programmatically for web automation and testing.

## Core Workflow

1. Navigate to a URL: `agelum browser open <url>`
2. Take a snapshot to identify elements: `agelum browser snapshot`
3. Interact using element refs (`@e1`) or CSS selectors
4. Re-snapshot after DOM changes

## Commands

**Navigation:**
- `agelum browser open <url>` - Navigate to URL
- `agelum browser back` - Go back
- `agelum browser forward` - Go forward
- `agelum browser reload` - Reload page

**Snapshot:**
- `agelum browser snapshot` - Get interactive elements with refs

**Interaction:**
- `agelum browser click <selector>` - Click element (@ref or CSS selector)
- `agelum browser fill <selector> "<text>"` - Clear and type into field
- `agelum browser type <selector> "<text>"` - Type without clearing
- `agelum browser press <key>` - Press key (Enter, Tab, Escape, etc.)
- `agelum browser select <selector> "<option>"` - Select dropdown option
- `agelum browser check <selector>` - Check checkbox
- `agelum browser hover <selector>` - Hover element
- `agelum browser scroll <direction> [px]` - Scroll (up/down/left/right)

**Waiting:**
- `agelum browser wait <selector>` - Wait for element
- `agelum browser wait <ms>` - Wait milliseconds

**Capture:**
- `agelum browser screenshot` - Capture screenshot
- `agelum browser eval "<js>"` - Execute JavaScript

## Notes

- Element refs (e.g., `@e1`) become invalid after navigation or DOM changes
- Always re-snapshot after interactions that modify the page
- Use CSS selectors for stable, deterministic test steps
- Use `@ref` for flexible, context-aware interactions
"""


def agelum_path(repo_dir) -> Path:
    return Path(repo_dir) / AGELUM_DIR


def legacy_path(repo_dir) -> Path:
    return Path(repo_dir) / LEGACY_DIR


def item_roots(repo_dir, kind: ItemKind) -> Tuple[Path, Path]:
    """(primary, legacy) root directories for kind."""
    return (
        agelum_path(repo_dir) / PRIMARY_ROOTS[kind],
        legacy_path(repo_dir) / LEGACY_ROOTS[kind],
    )


def plans_root(repo_dir) -> Path:
    return agelum_path(repo_dir) / "doc" / "plan"


def tests_root(repo_dir) -> Path:
    return agelum_path(repo_dir) / "work" / "tests"


def ensure_structure(repo_dir) -> Path:
    """Create the .agelum tree and install the browser skill file."""
    root = agelum_path(repo_dir)
    root.mkdir(parents=True, exist_ok=True)
    for rel in AGELUM_STRUCTURE:
        (root / rel).mkdir(parents=True, exist_ok=True)

    skill = root / SKILL_FILE
    if not skill.exists():
        skill.write_text(AGENT_BROWSER_SKILL, encoding="utf-8")
    return root


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Legacy migration
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class MigrationReport:
    moved: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "moved": [{"from": a, "to": b} for a, b in self.moved],
            "skipped": self.skipped,
        }


def _legacy_moves(repo_dir) -> List[Tuple[Path, Path]]:
    """Pairs of (legacy dir, primary dir) to merge."""
    legacy = legacy_path(repo_dir)
    primary = agelum_path(repo_dir)
    pairs = []
    for kind in ItemKind:
        src_root = legacy / LEGACY_ROOTS[kind]
        dst_root = primary / PRIMARY_ROOTS[kind]
        if not src_root.is_dir():
            continue
        for state_dir in sorted(p for p in src_root.iterdir() if p.is_dir()):
            state = state_dir.name
            if state == "priority" and kind in (ItemKind.TASK, ItemKind.EPIC):
                state = "fixes"
            pairs.append((state_dir, dst_root / state))
    for src_name, dst_rel in LEGACY_DOC_DIRS.items():
        src = legacy / src_name
        if src.is_dir():
            pairs.append((src, primary / dst_rel))
    return pairs


def migrate_legacy_layout(repo_dir, dry_run: bool = False) -> MigrationReport:
    """Move every file of the legacy agelum/ tree into .agelum/.

    Existing targets are never overwritten; they are reported as skipped.
    Running it twice is a no-op.
    """
    report = MigrationReport()
    legacy = legacy_path(repo_dir)
    if not legacy.is_dir():
        return report

    if not dry_run:
        ensure_structure(repo_dir)

    for src_dir, dst_dir in _legacy_moves(repo_dir):
        for src in sorted(p for p in src_dir.rglob("*") if p.is_file()):
            dst = dst_dir / src.relative_to(src_dir)
            if dst.exists():
                logger.warning(f"Migration skipped {src}: {dst} already exists")
                report.skipped.append(str(src))
                continue
            report.moved.append((str(src), str(dst)))
            if dry_run:
                continue
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(dst))

    if not dry_run:
        _prune_empty_dirs(legacy)
    logger.info(f"Migrated {len(report.moved)} file(s) from {legacy} ({len(report.skipped)} skipped)")
    return report


def _prune_empty_dirs(root: Path) -> None:
    # Deepest first so parents become empty before they are checked
    for path in sorted((p for p in root.rglob("*") if p.is_dir()),
                       key=lambda p: len(p.parts), reverse=True):
        if not any(path.iterdir()):
            path.rmdir()
    if root.is_dir() and not any(root.iterdir()):
        root.rmdir()
