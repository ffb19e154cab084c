"""
Bug report intake: screenshot + annotations -> task markdown.

Reports arrive from the browser extension with a PNG data URL. The image is
stored under work/tasks/images/ and the annotations as an SVG overlay next
to it; the task links both and spells out what each numbered mark means.
"""
import base64
import binascii
import logging
import re
import struct
from pathlib import Path
from typing import Any, Dict, List, Optional

from .annotations import Annotation, build_annotation_instructions, render_svg
from .layout import ensure_structure, item_roots
from .markdown import render_frontmatter, sanitize_file_base, timestamp_prefix, unique_file_path, file_name_to_id
from .schema import ItemKind, normalize_priority, normalize_state, utc_now

logger = logging.getLogger(__name__)

DATA_URL_RE = re.compile(r"^data:image/png;base64,(.+)$", re.S)
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class ReportError(ValueError):
    """Raised when a report payload cannot be turned into a task."""
    pass


def decode_png_data_url(data_url: str) -> bytes:
    match = DATA_URL_RE.match((data_url or "").strip())
    if not match:
        raise ReportError("Screenshot must be a data:image/png;base64 URL")
    try:
        data = base64.b64decode(match.group(1), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ReportError(f"Invalid screenshot data: {e}") from e
    if not data.startswith(PNG_SIGNATURE):
        raise ReportError("Screenshot is not a PNG image")
    return data


def png_size(data: bytes):
    """(width, height) from the IHDR chunk."""
    if len(data) < 24:
        raise ReportError("Truncated PNG image")
    return struct.unpack(">II", data[16:24])


def create_report(
    repo_dir,
    title: str,
    description: str,
    screenshot_data_url: str,
    state: str = "inbox",
    source_url: str = "",
    reporter: Optional[str] = None,
    priority: Optional[str] = None,
    annotations: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Write the screenshot, the overlay and the task file; return their paths."""
    if not title:
        raise ReportError("Title is required")
    image = decode_png_data_url(screenshot_data_url)
    try:
        marks = [Annotation.from_dict(a) for a in (annotations or [])]
    except (KeyError, TypeError, ValueError) as e:
        raise ReportError(f"Invalid annotation: {e}") from e
    overlay = render_svg(marks, *png_size(image)) if marks else None

    ensure_structure(repo_dir)
    state = normalize_state(ItemKind.TASK, state or "inbox")
    tasks_root, _ = item_roots(repo_dir, ItemKind.TASK)
    state_dir = tasks_root / state
    images_dir = tasks_root / "images"
    state_dir.mkdir(parents=True, exist_ok=True)
    images_dir.mkdir(parents=True, exist_ok=True)

    task_path = unique_file_path(state_dir, f"{timestamp_prefix()}-{sanitize_file_base(title)}")
    task_id = file_name_to_id(task_path.name)

    image_path = images_dir / f"{task_id}.png"
    image_path.write_bytes(image)

    overlay_path: Optional[Path] = None
    if overlay is not None:
        overlay_path = images_dir / f"{task_id}.svg"
        overlay_path.write_text(overlay, encoding="utf-8")

    frontmatter = render_frontmatter({
        "created": utc_now(),
        "state": state,
        "source": "chrome-plugin",
        "title": title,
        "reporter": reporter,
        "priority": normalize_priority(priority),
        "url": source_url,
    })

    body = f"# {task_id}\n\n{description or ''}\n\n"
    body += "## Context\n"
    body += f"- **Source URL**: {source_url or 'N/A'}\n"
    body += "- **Tool**: Chrome Plugin\n\n"
    body += f"![Screenshot](../images/{image_path.name})\n\n"
    if overlay_path:
        body += f"[Annotation overlay](../images/{overlay_path.name})\n\n"
    body += build_annotation_instructions(marks)

    task_path.write_text(f"{frontmatter}\n{body}", encoding="utf-8")
    logger.info(f"Report {title!r} filed as {task_path}")

    return {
        "success": True,
        "id": task_id,
        "path": str(task_path),
        "image": str(image_path),
        "overlay": str(overlay_path) if overlay_path else None,
    }
