"""
Field geometry: authoring placements <-> PDF point boxes.

Authoring space (what the owner drags fields around in) has its origin at the
top-left of the page. Fields carry either percentages of the page
(x_pct, y_pct, w_pct, h_pct) or legacy pixels measured against the render
size the owner saw (page1_render_width/height on the document).

PDF space has its origin at the bottom-left, units are points (1/72 inch).
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF

# Render width assumed for legacy pixel fields when the document has none recorded
FALLBACK_RENDER_WIDTH = 800.0

# Legacy defaults when a pixel field has no size
DEFAULT_FIELD_WIDTH = 160.0
DEFAULT_FIELD_HEIGHT = 36.0

# Tolerance for the centre-in-page check (in points, ~1mm)
PLACEMENT_BOUNDS_TOLERANCE = 3.0


class PlacementValidationError(Exception):
    """Invalid field placement."""

    def __init__(self, message: str, code: str = "INVALID_PLACEMENT", details: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


@dataclass
class PdfBox:
    """
    Field box in PDF coordinates.

    x: from left edge, y: from bottom edge, all in points.
    """
    x: float
    y: float
    width: float
    height: float

    @property
    def top(self) -> float:
        return self.y + self.height

    def to_rect(self, page_height: float) -> fitz.Rect:
        """PyMuPDF rectangle (top-left origin) for this box."""
        y_top = page_height - self.y - self.height
        return fitz.Rect(self.x, y_top, self.x + self.width, y_top + self.height)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class DisplayBox:
    """Field box as percentages of the page, top-left origin."""
    x_pct: float
    y_pct: float
    w_pct: float
    h_pct: float


def _num(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def has_percent_geometry(field: Any) -> bool:
    return all(
        getattr(field, attr, None) is not None
        for attr in ("x_pct", "y_pct", "w_pct", "h_pct")
    )


def render_scale(
    page_width: float,
    page_height: float,
    render_width: Optional[float] = None,
    render_height: Optional[float] = None,
) -> Tuple[float, float]:
    """
    Points per render unit, horizontally and vertically.

    Render height defaults to the page aspect ratio applied to the render width.
    """
    rw = render_width if render_width and render_width > 0 else FALLBACK_RENDER_WIDTH
    if render_height and render_height > 0:
        rh = render_height
    else:
        rh = page_height / page_width * rw
    return page_width / rw, page_height / rh


def raw_top_left_box(
    field: Any,
    page_width: float,
    page_height: float,
    render_width: Optional[float] = None,
    render_height: Optional[float] = None,
) -> Tuple[float, float, float, float]:
    """
    Unclamped (left, top, width, height) in points, top-left origin.

    Used both for embedding (after clamping) and for placement validation
    (where the raw values are what get checked).
    """
    if has_percent_geometry(field):
        return (
            field.x_pct / 100.0 * page_width,
            field.y_pct / 100.0 * page_height,
            field.w_pct / 100.0 * page_width,
            field.h_pct / 100.0 * page_height,
        )

    scale_x, scale_y = render_scale(page_width, page_height, render_width, render_height)
    width = _num(getattr(field, "width", None)) or DEFAULT_FIELD_WIDTH
    height = _num(getattr(field, "height", None)) or DEFAULT_FIELD_HEIGHT
    return (
        _num(getattr(field, "x", None)) * scale_x,
        _num(getattr(field, "y", None)) * scale_y,
        width * scale_x,
        height * scale_y,
    )


def to_pdf_box(
    field: Any,
    page_width: float,
    page_height: float,
    render_width: Optional[float] = None,
    render_height: Optional[float] = None,
) -> PdfBox:
    """
    Convert a field placement to a PDF box on a page of the given size.

    The result always lies inside the page: size is capped to the page and
    the origin is clamped so x in [0, W - w] and y in [0, H - h].
    """
    left, top, width, height = raw_top_left_box(
        field, page_width, page_height, render_width, render_height
    )

    width = min(max(width, 0.0), page_width)
    height = min(max(height, 0.0), page_height)

    x = min(max(left, 0.0), page_width - width)
    y = page_height - top - height
    y = min(max(y, 0.0), page_height - height)

    return PdfBox(x=x, y=y, width=width, height=height)


def to_display_box(box: PdfBox, page_width: float, page_height: float) -> DisplayBox:
    """Inverse of to_pdf_box for percentage placements."""
    top = page_height - box.y - box.height
    return DisplayBox(
        x_pct=box.x / page_width * 100.0,
        y_pct=top / page_height * 100.0,
        w_pct=box.width / page_width * 100.0,
        h_pct=box.height / page_height * 100.0,
    )


def validate_field_placement(
    field: Any,
    page_sizes: Sequence[Tuple[float, float]],
    render_width: Optional[float] = None,
    render_height: Optional[float] = None,
) -> None:
    """
    Validate a field against live page measurements.

    Args:
        field: Placed field (percentage or legacy pixel geometry)
        page_sizes: (width, height) in points per page, from measure_pages()
        render_width, render_height: Render size recorded at authoring time

    Raises:
        PlacementValidationError: If the field cannot land on a real page
    """
    page = getattr(field, "page", 1)
    field_id = getattr(field, "id", None)

    if not isinstance(page, int) or page < 1:
        raise PlacementValidationError(
            f"Invalid page number: {page}. Must be an integer >= 1.",
            code="INVALID_PAGE_NUMBER",
            details={"field_id": field_id},
        )

    if page > len(page_sizes):
        raise PlacementValidationError(
            f"Page {page} does not exist. Document has {len(page_sizes)} page(s).",
            code="PAGE_OUT_OF_RANGE",
            details={"field_id": field_id},
        )

    page_width, page_height = page_sizes[page - 1]
    left, top, width, height = raw_top_left_box(
        field, page_width, page_height, render_width, render_height
    )

    if width <= 0:
        raise PlacementValidationError(
            f"Field width must be positive, got: {width}",
            code="INVALID_WIDTH",
            details={"field_id": field_id},
        )

    if height <= 0:
        raise PlacementValidationError(
            f"Field height must be positive, got: {height}",
            code="INVALID_HEIGHT",
            details={"field_id": field_id},
        )

    center_x = left + width / 2
    center_y = top + height / 2
    tol = PLACEMENT_BOUNDS_TOLERANCE
    if not (-tol <= center_x <= page_width + tol and -tol <= center_y <= page_height + tol):
        raise PlacementValidationError(
            f"Field centre ({center_x:.1f}, {center_y:.1f}) lies outside page {page} "
            f"({page_width:.1f} x {page_height:.1f} pt).",
            code="OUTSIDE_PAGE",
            details={"field_id": field_id, "page": page},
        )


def validate_fields(
    fields: List[Any],
    page_sizes: Sequence[Tuple[float, float]],
    render_width: Optional[float] = None,
    render_height: Optional[float] = None,
) -> Dict[str, PdfBox]:
    """Validate every field; returns the clamped PDF box per field id."""
    boxes = {}
    for field in fields:
        validate_field_placement(field, page_sizes, render_width, render_height)
        page_width, page_height = page_sizes[field.page - 1]
        boxes[field.id] = to_pdf_box(field, page_width, page_height, render_width, render_height)
    return boxes
