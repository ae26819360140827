"""Field geometry editing in percent-space.

Every coordinate handled here is a percentage (0-100) of the rendered page
box. Pointer input arrives in pixels and is converted with the box the page
is rendered at *right now*, so a viewport resize during a drag never leaks
pixel values into stored geometry.
"""
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from .errors import NotFound, ValidationFailed

FIELD_TYPES = ("signature", "checkbox", "text")
OWNERS = ("advisor", "customer")
MAX_FIELDS_PER_KIND = 3

DEFAULT_SIZES = {
    "signature": (18.0, 6.0),
    "text": (12.0, 5.0),
    "checkbox": (4.0, 4.0),
}
MIN_SIZES = {
    "signature": (8.0, 5.0),
    "text": (8.0, 5.0),
    "checkbox": (4.0, 4.0),
}
DEFAULT_DROP = (10.0, 10.0)

# float slack for values that went through JSON
EPSILON = 1e-6


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


class RenderBox(BaseModel):
    width: float
    height: float


class LayoutField(BaseModel):
    id: str
    owner: str
    type: str
    label: str = ""
    page: int = 1
    x: float
    y: float
    width: float
    height: float


def min_size(field_type: str) -> Tuple[float, float]:
    return MIN_SIZES.get(field_type, MIN_SIZES["text"])


def new_field_id() -> str:
    return uuid.uuid4().hex


def _number(value, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number == number else default


def normalize_field(raw: dict) -> LayoutField:
    """Coerce a posted or stored field dict into a LayoutField.

    Anything not explicitly owned by the customer belongs to the advisor.
    Geometry is coerced, not validated; see :func:`validate_layout`.
    """
    field_type = str(raw.get("type") or "signature").lower()
    default_w, default_h = DEFAULT_SIZES.get(field_type, DEFAULT_SIZES["signature"])
    try:
        page = int(raw.get("page") or 1)
    except (TypeError, ValueError):
        page = 1
    return LayoutField(
        id=str(raw.get("id") or new_field_id()),
        owner="customer" if str(raw.get("owner") or "").lower() == "customer" else "advisor",
        type=field_type,
        label=str(raw.get("label") or ""),
        page=page,
        x=_number(raw.get("x"), DEFAULT_DROP[0]),
        y=_number(raw.get("y"), DEFAULT_DROP[1]),
        width=_number(raw.get("width"), default_w),
        height=_number(raw.get("height"), default_h),
    )


def _geometry_problem(field: LayoutField, page_count: Optional[int]) -> Optional[str]:
    if field.type not in FIELD_TYPES:
        return f"unknown type {field.type!r}"
    if field.owner not in OWNERS:
        return f"unknown owner {field.owner!r}"
    if field.page < 1:
        return "page must be >= 1"
    if page_count is not None and field.page > page_count:
        return f"page {field.page} beyond document ({page_count} pages)"
    for name in ("x", "y", "width", "height"):
        value = getattr(field, name)
        if value < -EPSILON or value > 100 + EPSILON:
            return f"{name} out of range"
    if field.x + field.width > 100 + EPSILON:
        return "x + width exceeds page"
    if field.y + field.height > 100 + EPSILON:
        return "y + height exceeds page"
    min_w, min_h = min_size(field.type)
    if field.width < min_w - EPSILON or field.height < min_h - EPSILON:
        return f"{field.type} must be at least {min_w:g}x{min_h:g}"
    return None


def validate_layout(fields: Iterable[LayoutField], page_count: Optional[int] = None) -> "FieldLayout":
    """Check a full field set before it is stored; nothing is mutated.

    Returns the owner-partitioned layout on success.
    """
    fields = list(fields)
    seen = set()
    for field in fields:
        if field.id in seen:
            raise ValidationFailed("invalid_geometry", f"duplicate field id {field.id}")
        seen.add(field.id)
        problem = _geometry_problem(field, page_count)
        if problem:
            raise ValidationFailed("invalid_geometry", f"field {field.id}: {problem}")
    layout = FieldLayout(fields)
    for owner in OWNERS:
        for field_type in FIELD_TYPES:
            if layout.count(owner, field_type) > MAX_FIELDS_PER_KIND:
                raise ValidationFailed(
                    "field_limit_reached",
                    f"at most {MAX_FIELDS_PER_KIND} {field_type} fields per {owner}",
                )
    return layout


class FieldLayout:
    """Fields of one request, kept as two owner-partitioned sets."""

    def __init__(self, fields: Iterable[LayoutField] = ()):
        self._by_owner: Dict[str, List[LayoutField]] = {owner: [] for owner in OWNERS}
        for field in fields:
            self._by_owner[field.owner].append(field)

    def owned(self, owner: str) -> List[LayoutField]:
        return list(self._by_owner[owner])

    def all_fields(self) -> List[LayoutField]:
        return self._by_owner["advisor"] + self._by_owner["customer"]

    def for_page(self, page: int) -> List[LayoutField]:
        return [f for f in self.all_fields() if f.page == page]

    def count(self, owner: str, field_type: str) -> int:
        return sum(1 for f in self._by_owner[owner] if f.type == field_type)

    def get(self, field_id: str) -> LayoutField:
        for field in self.all_fields():
            if field.id == field_id:
                return field
        raise NotFound("unknown_field", f"field {field_id} not found")

    def add_field(
        self,
        field_type: str,
        owner: str,
        page: int = 1,
        pos: Optional[Tuple[float, float]] = None,
    ) -> LayoutField:
        if field_type not in FIELD_TYPES or owner not in OWNERS:
            raise ValidationFailed("invalid_geometry", f"cannot add {field_type} for {owner}")
        if self.count(owner, field_type) >= MAX_FIELDS_PER_KIND:
            raise ValidationFailed(
                "field_limit_reached",
                f"at most {MAX_FIELDS_PER_KIND} {field_type} fields per {owner}",
            )
        width, height = DEFAULT_SIZES[field_type]
        x, y = pos if pos is not None else DEFAULT_DROP
        field = LayoutField(
            id=new_field_id(),
            owner=owner,
            type=field_type,
            page=max(1, int(page)),
            x=clamp(x, 0, 100 - width),
            y=clamp(y, 0, 100 - height),
            width=width,
            height=height,
        )
        self._by_owner[owner].append(field)
        return field

    def move_field(self, field_id: str, x: float, y: float) -> LayoutField:
        field = self.get(field_id)
        field.x = clamp(x, 0, 100 - field.width)
        field.y = clamp(y, 0, 100 - field.height)
        return field

    def resize_field(self, field_id: str, width: float, height: float) -> LayoutField:
        field = self.get(field_id)
        min_w, min_h = min_size(field.type)
        # make room for the minimum size before clamping against the page edge
        field.x = min(field.x, 100 - min_w)
        field.y = min(field.y, 100 - min_h)
        field.width = clamp(width, min_w, 100 - field.x)
        field.height = clamp(height, min_h, 100 - field.y)
        return field

    def remove_field(self, field_id: str) -> None:
        field = self.get(field_id)
        self._by_owner[field.owner].remove(field)

    def update_label(self, field_id: str, label: str) -> LayoutField:
        field = self.get(field_id)
        field.label = label
        return field


class DragGesture:
    """A pointer drag over one field, either moving or resizing it.

    The field's geometry at pointer-down is the origin; each update applies
    the total pointer delta, converted to percent with the box passed in.
    """

    def __init__(self, layout: FieldLayout, field_id: str, mode: str, start: Tuple[float, float]):
        if mode not in ("move", "resize"):
            raise ValueError(f"unknown drag mode {mode!r}")
        field = layout.get(field_id)
        self.layout = layout
        self.field_id = field_id
        self.mode = mode
        self.start = start
        self.origin = (field.x, field.y, field.width, field.height)

    def update(self, pointer: Tuple[float, float], box: RenderBox) -> LayoutField:
        if box.width <= 0 or box.height <= 0:
            return self.layout.get(self.field_id)
        dx = (pointer[0] - self.start[0]) / box.width * 100
        dy = (pointer[1] - self.start[1]) / box.height * 100
        origin_x, origin_y, origin_w, origin_h = self.origin
        if self.mode == "move":
            return self.layout.move_field(self.field_id, origin_x + dx, origin_y + dy)
        return self.layout.resize_field(self.field_id, origin_w + dx, origin_h + dy)


def begin_drag(layout: FieldLayout, field_id: str, mode: str, pointer: Tuple[float, float]) -> DragGesture:
    return DragGesture(layout, field_id, mode, pointer)


class PlacementMode:
    """One-shot "armed" toggle: the next click on the page drops a field."""

    def __init__(self):
        self.armed_type: Optional[str] = None

    @property
    def armed(self) -> bool:
        return self.armed_type is not None

    def arm(self, field_type: str) -> None:
        if field_type not in FIELD_TYPES:
            raise ValidationFailed("invalid_geometry", f"unknown type {field_type!r}")
        self.armed_type = field_type

    def disarm(self) -> None:
        self.armed_type = None

    def click(
        self,
        layout: FieldLayout,
        owner: str,
        pointer: Tuple[float, float],
        box: RenderBox,
        page: int,
    ) -> Optional[LayoutField]:
        if not self.armed or box.width <= 0 or box.height <= 0:
            return None
        rel_x = pointer[0] / box.width * 100
        rel_y = pointer[1] / box.height * 100
        field_type = self.armed_type
        self.disarm()
        return layout.add_field(field_type, owner, page=page, pos=(rel_x, rel_y))
