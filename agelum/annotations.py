"""
Screenshot annotations: numbered boxes and arrows drawn over a screenshot.

Shared by the report intake (SVG overlay stored next to the PNG) and by the
task text that tells an agent what each numbered mark means.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape, quoteattr

logger = logging.getLogger(__name__)

ANNOTATION_TYPES = ("modify", "arrow", "remove")

ANNOTATION_COLORS: Dict[str, Dict[str, str]] = {
    "modify": {
        "stroke": "#f59e0b",
        "fill": "rgba(245, 158, 11, 0.15)",
        "badge": "#f97316",
        "glow": "rgba(245, 158, 11, 0.8)",
    },
    "arrow": {
        "stroke": "#3b82f6",
        "fill": "transparent",
        "badge": "#2563eb",
        "glow": "rgba(37, 99, 235, 0.8)",
    },
    "remove": {
        "stroke": "#dc2626",
        "fill": "rgba(220, 38, 38, 0.15)",
        "badge": "#dc2626",
        "glow": "rgba(220, 38, 38, 0.8)",
    },
}

COLOR_NAMES = {"modify": "orange", "arrow": "blue", "remove": "red"}

ACTION_PHRASES = {
    "modify": "we want to do this modification:",
    "arrow": "we need to move that.",
    "remove": "remove these components.",
}

BADGE_RADIUS = 12


def _opt_float(value) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class Annotation:
    id: int
    type: str
    x: float
    y: float
    width: Optional[float] = None
    height: Optional[float] = None
    end_x: Optional[float] = None
    end_y: Optional[float] = None
    prompt: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Annotation":
        ann_type = data.get("type")
        if ann_type not in ANNOTATION_TYPES:
            raise ValueError(f"Invalid annotation type: {ann_type!r}")
        return cls(
            id=int(data["id"]),
            type=ann_type,
            x=float(data["x"]),
            y=float(data["y"]),
            width=_opt_float(data.get("width")),
            height=_opt_float(data.get("height")),
            end_x=_opt_float(data.get("endX")),
            end_y=_opt_float(data.get("endY")),
            prompt=data.get("prompt") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "type": self.type, "x": self.x, "y": self.y,
                                "prompt": self.prompt}
        for key, value in (("width", self.width), ("height", self.height),
                           ("endX", self.end_x), ("endY", self.end_y)):
            if value is not None:
                data[key] = value
        return data


def _num(value: float) -> str:
    """Format like a JS number: no trailing .0 on integers."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def arrowhead_points(x1: float, y1: float, x2: float, y2: float, length: float = 12) -> str:
    """SVG polygon points for an arrowhead at (x2, y2), sides at ±30°."""
    angle = math.atan2(y2 - y1, x2 - x1)
    p1x = x2 - length * math.cos(angle - math.pi / 6)
    p1y = y2 - length * math.sin(angle - math.pi / 6)
    p2x = x2 - length * math.cos(angle + math.pi / 6)
    p2y = y2 - length * math.sin(angle + math.pi / 6)
    return f"{_num(x2)},{_num(y2)} {_num(p1x)},{_num(p1y)} {_num(p2x)},{_num(p2y)}"


def annotation_svg_elements(ann: Annotation) -> List[Dict[str, Any]]:
    colors = ANNOTATION_COLORS[ann.type]
    if ann.type == "arrow" and ann.end_x is not None and ann.end_y is not None:
        return [
            {
                "type": "line",
                "x1": ann.x, "y1": ann.y, "x2": ann.end_x, "y2": ann.end_y,
                "stroke": colors["stroke"],
                "strokeWidth": 3,
            },
            {
                "type": "polygon",
                "points": arrowhead_points(ann.x, ann.y, ann.end_x, ann.end_y),
                "fill": colors["stroke"],
            },
        ]
    return [{
        "type": "rect",
        "x": ann.x, "y": ann.y,
        "width": ann.width or 0, "height": ann.height or 0,
        "stroke": colors["stroke"],
        "strokeWidth": 2,
        "fill": colors["fill"],
    }]


def _element_to_svg(el: Dict[str, Any]) -> str:
    kind = el["type"]
    if kind == "line":
        return (
            f'<line x1="{_num(el["x1"])}" y1="{_num(el["y1"])}" '
            f'x2="{_num(el["x2"])}" y2="{_num(el["y2"])}" '
            f'stroke={quoteattr(el["stroke"])} stroke-width="{el["strokeWidth"]}" />'
        )
    if kind == "polygon":
        return f'<polygon points={quoteattr(el["points"])} fill={quoteattr(el["fill"])} />'
    return (
        f'<rect x="{_num(el["x"])}" y="{_num(el["y"])}" '
        f'width="{_num(el["width"])}" height="{_num(el["height"])}" '
        f'stroke={quoteattr(el["stroke"])} stroke-width="{el["strokeWidth"]}" '
        f'fill={quoteattr(el["fill"])} />'
    )


def _badge_svg(ann: Annotation) -> str:
    cx, cy = _num(ann.x), _num(ann.y)
    badge = ANNOTATION_COLORS[ann.type]["badge"]
    return (
        f'<circle cx="{cx}" cy="{cy}" r="{BADGE_RADIUS}" fill="#ffffff" />'
        f'<circle cx="{cx}" cy="{cy}" r="{BADGE_RADIUS - 2}" fill="{badge}" />'
        f'<text x="{cx}" y="{cy}" fill="#ffffff" font-family="sans-serif" font-size="10" '
        f'font-weight="bold" text-anchor="middle" dominant-baseline="central">'
        f'{escape(str(ann.id))}</text>'
    )


def render_svg(annotations: List[Annotation], width: int, height: int) -> str:
    """Standalone SVG overlay with the same geometry as the screenshot."""
    logger.debug(f"Rendering {len(annotations)} annotation(s) over {width}x{height}")
    body = []
    for ann in annotations:
        body.extend(_element_to_svg(el) for el in annotation_svg_elements(ann))
        body.append(_badge_svg(ann))
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}">\n'
        + "\n".join(f"  {line}" for line in body)
        + ("\n" if body else "")
        + "</svg>\n"
    )


def build_annotation_instructions(annotations: List[Annotation]) -> str:
    """The "## Annotations" section of a report task."""
    text = "## Annotations\n\n"
    if not annotations:
        return text + "No annotations were added.\n\n"
    for ann in annotations:
        color = COLOR_NAMES[ann.type]
        shape = "arrow" if ann.type == "arrow" else "square"
        text += (
            f"{ann.id}. Analize the image above and where is the {color} {shape} "
            f"with number {ann.id} {ACTION_PHRASES[ann.type]} {ann.prompt or ''}\n"
        )
    return text + "\n"
