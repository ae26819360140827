import io

import pytest
from PIL import Image

from app.capture import (
    MAX_IMAGE_SIDE,
    MAX_PAD_SIDE,
    MAX_POINTS,
    SignaturePad,
    buffer_ratio,
    decode_signature,
    render_strokes,
)
from app.errors import ValidationFailed
from app.utils import data_url_to_bytes, png_to_data_url


def decoded(value: str) -> Image.Image:
    image = Image.open(io.BytesIO(data_url_to_bytes(value)))
    image.load()
    return image


def test_buffer_ratio_doubles_device_ratio_up_to_three():
    assert buffer_ratio(1) == 2
    assert buffer_ratio(None) == 2
    assert buffer_ratio(1.25) == 2.5
    assert buffer_ratio(2) == 3


def test_stroke_exports_png_on_pointer_up():
    pad = SignaturePad(320, 120, device_pixel_ratio=1)
    pad.pointer_down(10, 10)
    pad.pointer_move(60, 40)
    assert pad.drawing
    assert pad.value == ""
    pad.pointer_up()
    assert not pad.drawing
    assert pad.value.startswith("data:image/png;base64,")
    image = decoded(pad.value)
    assert image.size == (640, 240)
    assert image.getbbox() is not None


def test_pointer_leave_ends_the_stroke():
    pad = SignaturePad()
    pad.pointer_down(5, 5)
    pad.pointer_move(20, 20)
    pad.pointer_leave()
    assert not pad.drawing
    assert pad.value


def test_disabled_pad_ignores_input():
    pad = SignaturePad(disabled=True)
    pad.pointer_down(10, 10)
    pad.pointer_move(50, 50)
    pad.pointer_up()
    assert pad.value == ""
    assert pad.buffer.getbbox() is None


def test_clear_resets_buffer_and_value():
    pad = SignaturePad()
    pad.pointer_down(10, 10)
    pad.pointer_up()
    pad.clear()
    assert pad.value == ""
    assert pad.buffer.getbbox() is None


def test_load_paints_existing_value_scaled_into_pad():
    source = SignaturePad(160, 60)
    source.pointer_down(10, 10)
    source.pointer_move(100, 40)
    source.pointer_up()

    pad = SignaturePad(320, 120)
    pad.load(source.value)
    assert pad.value == source.value
    assert pad.buffer.size == (640, 240)
    assert pad.buffer.getbbox() is not None


def test_render_strokes_replays_capture():
    value = render_strokes([[[10, 10], [40, 30], [80, 20]], [[100, 50]]], 320, 120, 2)
    assert decoded(value).size == (960, 360)
    assert render_strokes([], 320, 120) == ""
    assert render_strokes([[]], 320, 120) == ""


def test_decode_signature_rejects_non_png():
    buf = io.BytesIO()
    Image.new("RGB", (4, 4)).save(buf, format="JPEG")
    with pytest.raises(ValidationFailed) as exc:
        decode_signature(png_to_data_url(buf.getvalue()))
    assert exc.value.code == "invalid_signature"

    with pytest.raises(ValidationFailed):
        decode_signature("data:image/png;base64,!!!not-base64")


@pytest.mark.parametrize(
    "strokes,width,height,ratio",
    [
        ([[[1, 1], [5, 5]]], "wide", 120, 1),
        ([[[1, 1], [5, 5]]], 320, None, "retina"),
        ([[5, 6]], 320, 120, 1),
        ([[[1, "left"], [5, 5]]], 320, 120, 1),
        ([[[1, float("nan")]]], 320, 120, 1),
        ("not strokes", 320, 120, 1),
        ([[[1, 1]]], MAX_PAD_SIDE + 1, 120, 1),
        ([[[1, 1]]], 200000, 200000, 1),
        ([[[1, 1]]], 320, 0, 1),
        ([[[1, 1]]], 320, 120, -2),
        ([[[1, 1]]], True, 120, 1),
    ],
)
def test_malformed_stroke_capture_is_rejected(strokes, width, height, ratio):
    with pytest.raises(ValidationFailed) as exc:
        render_strokes(strokes, width, height, ratio)
    assert exc.value.code == "invalid_signature"


def test_stroke_capture_point_budget():
    too_many = [[[i % 300, i % 100] for i in range(MAX_POINTS + 1)]]
    with pytest.raises(ValidationFailed):
        render_strokes(too_many, 320, 120)


def test_stroke_capture_defaults_and_pins_points_to_the_pad():
    value = render_strokes([[[-50, -50], [5000, 5000]]], None, None, None)
    assert decoded(value).size == (640, 240)


def test_decode_signature_rejects_oversized_images():
    buf = io.BytesIO()
    Image.new("L", (MAX_IMAGE_SIDE + 1, 1)).save(buf, format="PNG")
    with pytest.raises(ValidationFailed) as exc:
        decode_signature(png_to_data_url(buf.getvalue()))
    assert exc.value.code == "invalid_signature"


def test_decode_signature_turns_decompression_bombs_into_validation_errors(monkeypatch):
    buf = io.BytesIO()
    Image.new("L", (64, 64)).save(buf, format="PNG")
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    with pytest.raises(ValidationFailed) as exc:
        decode_signature(png_to_data_url(buf.getvalue()))
    assert exc.value.code == "invalid_signature"
