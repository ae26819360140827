import pytest

from app.errors import NotFound, ValidationFailed
from app.geometry import (
    FieldLayout,
    LayoutField,
    PlacementMode,
    RenderBox,
    begin_drag,
    normalize_field,
    validate_layout,
)


def field(**overrides):
    data = {"id": "f1", "owner": "advisor", "type": "signature", "page": 1, "x": 10, "y": 10, "width": 18, "height": 6}
    data.update(overrides)
    return LayoutField(**data)


def test_add_field_uses_type_defaults_and_caps_each_owner_and_type():
    layout = FieldLayout()
    first = layout.add_field("signature", "advisor")
    assert (first.width, first.height) == (18.0, 6.0)
    assert (first.x, first.y) == (10.0, 10.0)
    layout.add_field("signature", "advisor")
    layout.add_field("signature", "advisor")
    with pytest.raises(ValidationFailed) as exc:
        layout.add_field("signature", "advisor")
    assert exc.value.code == "field_limit_reached"
    assert layout.count("advisor", "signature") == 3

    # other owner and other types are counted separately
    layout.add_field("signature", "customer")
    layout.add_field("checkbox", "advisor")
    assert layout.count("customer", "signature") == 1
    assert len(layout.all_fields()) == 5


def test_add_field_clamps_drop_position_onto_the_page():
    layout = FieldLayout()
    dropped = layout.add_field("signature", "customer", page=2, pos=(95, 98))
    assert dropped.x == pytest.approx(82)
    assert dropped.y == pytest.approx(94)
    assert dropped.page == 2
    assert layout.for_page(2) == [dropped]
    assert layout.for_page(1) == []


def test_move_and_resize_stay_within_page_and_minimum_size():
    layout = FieldLayout([field(type="checkbox", width=4, height=4)])
    moved = layout.move_field("f1", -5, 200)
    assert (moved.x, moved.y) == (0, 96)

    layout.move_field("f1", 99, 50)
    resized = layout.resize_field("f1", 1, 1)
    assert (resized.width, resized.height) == (4, 4)
    assert resized.x + resized.width <= 100

    grown = layout.resize_field("f1", 500, 30)
    assert grown.x + grown.width == pytest.approx(100)
    assert grown.height == 30


def test_signature_and_text_cannot_shrink_below_eight_by_five():
    layout = FieldLayout([field(), field(id="t1", type="text", width=12, height=5)])
    assert (layout.resize_field("f1", 2, 2).width, layout.get("f1").height) == (8, 5)
    assert layout.resize_field("t1", 3, 9).width == 8


def test_remove_and_relabel():
    layout = FieldLayout([field(), field(id="f2", owner="customer")])
    layout.update_label("f2", "Customer signature")
    assert layout.get("f2").label == "Customer signature"
    layout.remove_field("f1")
    assert [f.id for f in layout.all_fields()] == ["f2"]
    with pytest.raises(NotFound):
        layout.get("f1")


def test_drag_converts_pixel_deltas_with_the_current_box():
    layout = FieldLayout([field(x=10, y=10)])
    gesture = begin_drag(layout, "f1", "move", (100, 100))

    gesture.update((150, 100), RenderBox(width=500, height=400))
    assert layout.get("f1").x == pytest.approx(20)

    # viewport grew mid-drag: the same pixel delta is a smaller percentage now
    gesture.update((150, 100), RenderBox(width=1000, height=800))
    assert layout.get("f1").x == pytest.approx(15)
    assert layout.get("f1").y == pytest.approx(10)


def test_resize_drag_respects_minimum():
    layout = FieldLayout([field(width=18, height=6)])
    gesture = begin_drag(layout, "f1", "resize", (0, 0))
    updated = gesture.update((-400, -400), RenderBox(width=400, height=400))
    assert (updated.width, updated.height) == (8, 5)


def test_drag_rejects_unknown_mode():
    layout = FieldLayout([field()])
    with pytest.raises(ValueError):
        begin_drag(layout, "f1", "rotate", (0, 0))


def test_placement_mode_drops_once_then_disarms():
    layout = FieldLayout()
    placement = PlacementMode()
    box = RenderBox(width=500, height=400)
    assert placement.click(layout, "advisor", (250, 200), box, page=1) is None

    placement.arm("text")
    placed = placement.click(layout, "customer", (250, 200), box, page=3)
    assert (placed.x, placed.y, placed.page, placed.owner) == (50, 50, 3, "customer")
    assert not placement.armed
    assert placement.click(layout, "customer", (10, 10), box, page=3) is None
    assert len(layout.all_fields()) == 1


def test_normalize_field_defaults_owner_to_advisor():
    assert normalize_field({"owner": "Customer", "type": "text"}).owner == "customer"
    assert normalize_field({"owner": "someone"}).owner == "advisor"
    coerced = normalize_field({"type": "checkbox", "x": "12.5", "page": "2"})
    assert (coerced.x, coerced.page, coerced.width, coerced.height) == (12.5, 2, 4.0, 4.0)


def test_validate_layout_accepts_exact_geometry():
    layout = validate_layout([field(page=2, x=12.34, y=5, width=18, height=6)], page_count=2)
    stored = layout.all_fields()[0]
    assert (stored.page, stored.x, stored.y, stored.width, stored.height) == (2, 12.34, 5, 18, 6)


@pytest.mark.parametrize(
    "overrides",
    [
        {"x": 90, "width": 18},
        {"y": -1},
        {"width": 7},
        {"type": "checkbox", "width": 3, "height": 4},
        {"page": 0},
        {"page": 3},
        {"type": "stamp"},
    ],
)
def test_validate_layout_rejects_bad_geometry(overrides):
    with pytest.raises(ValidationFailed) as exc:
        validate_layout([field(**overrides)], page_count=2)
    assert exc.value.code == "invalid_geometry"


def test_validate_layout_rejects_cap_violation_and_duplicate_ids():
    boxes = [field(id=f"c{i}", type="checkbox", width=4, height=4, x=i * 10) for i in range(4)]
    with pytest.raises(ValidationFailed) as exc:
        validate_layout(boxes)
    assert exc.value.code == "field_limit_reached"

    with pytest.raises(ValidationFailed) as exc:
        validate_layout([field(), field()])
    assert exc.value.code == "invalid_geometry"
