"""
Markdown helpers for work item files.

Frontmatter is parsed with a regex rather than a YAML loader: item files are
hand-edited and often contain values (URLs, colons in titles) that a strict
YAML parse would reject.
"""
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

FRONTMATTER_RE = re.compile(r"^---\n([\s\S]*?)\n---\n?")
FIELD_RE = re.compile(r"^([A-Za-z_][\w-]*):\s*(.*)$")
HEADING_RE = re.compile(r"^[ \t]*#[ \t]+(.+?)[ \t]*$", re.M)
TIMESTAMP_PREFIX_RE = re.compile(r"^\d{2}_\d{2}_\d{2}-\d{6}-")

MAX_FILE_BASE = 120


def parse_frontmatter(text: str) -> Dict[str, str]:
    """Return the ``key: value`` pairs of the leading frontmatter block."""
    match = FRONTMATTER_RE.match(text or "")
    if not match:
        return {}
    fields: Dict[str, str] = {}
    for line in match.group(1).split("\n"):
        m = FIELD_RE.match(line.strip())
        if m:
            fields[m.group(1)] = m.group(2).strip()
    return fields


def split_frontmatter(text: str) -> Tuple[str, str]:
    """Split text into (frontmatter block including fences, body)."""
    match = FRONTMATTER_RE.match(text or "")
    if not match:
        return "", text or ""
    return match.group(0), text[match.end():]


def render_frontmatter(fields: Dict[str, Optional[str]]) -> str:
    lines = ["---"]
    for key, value in fields.items():
        if value is None or value == "":
            continue
        lines.append(f"{key}: {value}")
    lines.append("---")
    return "\n".join(lines) + "\n"


def sanitize_file_base(title: str) -> str:
    """Turn a free-form title into a safe file base name."""
    base = (title or "").strip()
    base = re.sub(r"[\\/]", "-", base)
    base = re.sub(r'[<>:"|?*\x00-\x1f]', "", base)
    base = re.sub(r"\s+", "-", base)
    base = re.sub(r"-+", "-", base)
    base = re.sub(r"^\.+", "", base)
    base = re.sub(r"\.+$", "", base)
    base = base[:MAX_FILE_BASE].strip()
    return base or "untitled"


def timestamp_prefix(now: Optional[datetime] = None) -> str:
    """Sortable local-time prefix, e.g. ``26_10_19-143005``."""
    now = now or datetime.now()
    return now.strftime("%y_%m_%d-%H%M%S")


def has_timestamp_prefix(name: str) -> bool:
    return bool(TIMESTAMP_PREFIX_RE.match(name or ""))


def file_name_to_id(file_name: str) -> str:
    return file_name[:-3] if file_name.endswith(".md") else file_name


def unique_file_path(directory: Path, base: str) -> Path:
    """First of base.md, base-2.md, base-3.md, ... that does not exist."""
    directory = Path(directory).resolve()
    candidate = base
    suffix = 2
    while (directory / f"{candidate}.md").exists():
        candidate = f"{base}-{suffix}"
        suffix += 1
    return directory / f"{candidate}.md"


def remove_title_from_frontmatter(text: str) -> str:
    block, body = split_frontmatter(text)
    if not block:
        return text
    inner = FRONTMATTER_RE.match(block).group(1)
    kept = [line for line in inner.split("\n") if not re.match(r"^title:\s*", line.strip())]
    return "---\n" + "\n".join(kept) + "\n---\n" + body


def update_markdown_title(text: str, title: str) -> str:
    """Rewrite the first ``# heading`` of the body, inserting one if absent."""
    block, body = split_frontmatter(text)
    match = HEADING_RE.search(body)
    if not match:
        separator = "\n" if block and not block.endswith("\n") else ""
        return f"{block}{separator}\n# {title}\n\n{body.lstrip()}"
    body = body[:match.start()] + f"# {title}" + body[match.end():]
    return block + body


def build_item_markdown(created: str, state: str, title: str, content: str) -> str:
    """Wrap raw content into an item file.

    Content that brings its own frontmatter is kept verbatim (only a heading
    is ensured); otherwise created/state frontmatter is prepended.
    """
    trimmed = (content or "").strip()
    if FRONTMATTER_RE.match(trimmed):
        _, existing_body = split_frontmatter(trimmed)
        if HEADING_RE.search(existing_body):
            return trimmed + "\n"
        return update_markdown_title(trimmed, title).rstrip() + "\n"

    if HEADING_RE.search(trimmed):
        body = trimmed
    else:
        body = f"# {title}\n\n{trimmed}"

    frontmatter = render_frontmatter({"created": created, "state": state})
    return f"{frontmatter}\n{body}\n"
