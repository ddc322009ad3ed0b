"""Classification of a drop gesture into a placement intent.

The target's rectangle is split into three horizontal bands (left 30%,
middle, right 30%) and three vertical bands (top 40%, middle 20%,
bottom 40%). Every band boundary belongs to the middle band, so each
point maps to exactly one zone:

===========  ==================  ===============
vertical     left / middle       right
===========  ==================  ===============
top          before              prepend_child
bottom       after               append_child
middle       before (left)       append_child
             before above the
             centre, else after
             (middle)
===========  ==================  ===============

Points outside the rectangle are classified by the same comparisons.
"""
import math
from dataclasses import dataclass
from enum import Enum

from notetree_mcp.exceptions import ValidationError
from notetree_mcp.models.schema import PlacementKind

LEFT_THRESHOLD = 0.3
RIGHT_THRESHOLD = 0.7
TOP_THRESHOLD = 0.4
BOTTOM_THRESHOLD = 0.6


class HorizontalZone(str, Enum):
    LEFT = "left"
    MIDDLE = "middle"
    RIGHT = "right"


class VerticalZone(str, Enum):
    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


def _finite(value: float, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number", field=name, value=value)
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be finite", field=name, value=value)
    return float(value)


@dataclass(frozen=True)
class Rect:
    """Bounding rectangle of the drop target in page coordinates."""

    left: float
    top: float
    width: float
    height: float

    def __post_init__(self):
        for name in ("left", "top", "width", "height"):
            _finite(getattr(self, name), name)
        if self.width <= 0 or self.height <= 0:
            raise ValidationError(
                "Drop target must have a positive width and height",
                field="rect",
                value=f"{self.width}x{self.height}",
            )

    @classmethod
    def of_size(cls, width: float, height: float) -> "Rect":
        return cls(0.0, 0.0, width, height)


def horizontal_zone(rect: Rect, x: float) -> HorizontalZone:
    if x < rect.width * LEFT_THRESHOLD:
        return HorizontalZone.LEFT
    if x > rect.width * RIGHT_THRESHOLD:
        return HorizontalZone.RIGHT
    return HorizontalZone.MIDDLE


def vertical_zone(rect: Rect, y: float) -> VerticalZone:
    if y < rect.height * TOP_THRESHOLD:
        return VerticalZone.TOP
    if y > rect.height * BOTTOM_THRESHOLD:
        return VerticalZone.BOTTOM
    return VerticalZone.MIDDLE


def resolve_drop_intent(rect: Rect, x: float, y: float) -> PlacementKind:
    """Map a pointer position to a placement intent.

    Args:
        rect: The target node's bounding rectangle.
        x: Pointer X relative to the rectangle's left edge.
        y: Pointer Y relative to the rectangle's top edge.
    """
    x = _finite(x, "x")
    y = _finite(y, "y")
    h_zone = horizontal_zone(rect, x)
    v_zone = vertical_zone(rect, y)

    if v_zone == VerticalZone.TOP:
        return PlacementKind.PREPEND_CHILD if h_zone == HorizontalZone.RIGHT else PlacementKind.BEFORE
    if v_zone == VerticalZone.BOTTOM:
        return PlacementKind.APPEND_CHILD if h_zone == HorizontalZone.RIGHT else PlacementKind.AFTER

    if h_zone == HorizontalZone.LEFT:
        return PlacementKind.BEFORE
    if h_zone == HorizontalZone.RIGHT:
        return PlacementKind.APPEND_CHILD
    # The exact centre line counts as the lower half
    return PlacementKind.BEFORE if y < rect.height / 2 else PlacementKind.AFTER


def drop_intent_from_client(rect: Rect, client_x: float, client_y: float) -> PlacementKind:
    """Like :func:`resolve_drop_intent`, for pointer coordinates on the page."""
    return resolve_drop_intent(
        rect,
        _finite(client_x, "client_x") - rect.left,
        _finite(client_y, "client_y") - rect.top,
    )
