"""Freehand signature capture into an oversampled bitmap.

The pad keeps a Pillow RGBA buffer larger than its display size (device
pixel ratio x 2, capped at 3) so the exported PNG stays sharp after it is
scaled down into a signature field.
"""
import io
import math
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw

from .errors import ValidationFailed
from .utils import data_url_to_bytes, png_to_data_url

MAX_BUFFER_RATIO = 3.0
STROKE_WIDTH = 2
STROKE_COLOR = (15, 23, 42, 255)

# limits for client-supplied captures
MAX_PAD_SIDE = 1000
MAX_STROKES = 200
MAX_POINTS = 10000
MAX_IMAGE_SIDE = 4000

Point = Tuple[float, float]


def buffer_ratio(device_pixel_ratio: Optional[float]) -> float:
    return min(MAX_BUFFER_RATIO, (device_pixel_ratio or 1.0) * 2)


class SignaturePad:
    def __init__(self, width: int = 320, height: int = 120, device_pixel_ratio: float = 1.0,
                 disabled: bool = False):
        self.width = width
        self.height = height
        self.ratio = buffer_ratio(device_pixel_ratio)
        self.disabled = disabled
        self._value = ""
        self._drawing = False
        self._last: Optional[Point] = None
        self._reset_buffer()

    def _reset_buffer(self):
        size = (max(1, round(self.width * self.ratio)), max(1, round(self.height * self.ratio)))
        self.buffer = Image.new("RGBA", size, (0, 0, 0, 0))
        self._draw = ImageDraw.Draw(self.buffer)

    @property
    def value(self) -> str:
        return self._value

    @property
    def drawing(self) -> bool:
        return self._drawing

    def _scaled(self, point: Point) -> Point:
        return point[0] * self.ratio, point[1] * self.ratio

    def _dot(self, point: Point):
        r = STROKE_WIDTH * self.ratio / 2
        x, y = self._scaled(point)
        self._draw.ellipse((x - r, y - r, x + r, y + r), fill=STROKE_COLOR)

    def pointer_down(self, x: float, y: float):
        if self.disabled:
            return
        self._drawing = True
        self._last = (x, y)
        self._dot(self._last)

    def pointer_move(self, x: float, y: float):
        if self.disabled or not self._drawing:
            return
        width = max(1, round(STROKE_WIDTH * self.ratio))
        self._draw.line([self._scaled(self._last), self._scaled((x, y))], fill=STROKE_COLOR,
                        width=width, joint="curve")
        self._last = (x, y)
        # round cap at every vertex
        self._dot(self._last)

    def pointer_up(self):
        if not self._drawing:
            return
        self._drawing = False
        self._last = None
        self._value = self.export()

    pointer_leave = pointer_up

    def export(self) -> str:
        buf = io.BytesIO()
        self.buffer.save(buf, format="PNG")
        return png_to_data_url(buf.getvalue())

    def clear(self):
        self._drawing = False
        self._last = None
        self._reset_buffer()
        self._value = ""

    def load(self, value: str):
        """Paint an existing data URI into the pad, scaled to fit."""
        self.clear()
        if not value:
            return
        image = decode_signature(value)
        self.buffer.alpha_composite(image.convert("RGBA").resize(self.buffer.size, Image.LANCZOS))
        self._value = value


def _invalid(detail: str) -> ValidationFailed:
    return ValidationFailed("invalid_signature", detail)


def decode_signature(value: str) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data_url_to_bytes(value)))
        if image.format != "PNG":
            raise _invalid("signature must be a PNG data URI")
        if max(image.size) > MAX_IMAGE_SIDE:
            raise _invalid(f"signature image larger than {MAX_IMAGE_SIDE}px")
        image.load()
    except (ValueError, OSError, Image.DecompressionBombError) as exc:
        raise _invalid("signature must be a PNG data URI") from exc
    return image


def _finite(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise _invalid(f"{name} must be a number")
    try:
        number = float(value)
    except ValueError:
        raise _invalid(f"{name} must be a number")
    if not math.isfinite(number):
        raise _invalid(f"{name} must be a number")
    return number


def _pad_side(value, default: int, name: str) -> int:
    if value is None:
        return default
    side = _finite(value, name)
    if not 1 <= side <= MAX_PAD_SIDE:
        raise _invalid(f"{name} must be between 1 and {MAX_PAD_SIDE}")
    return int(round(side))


def _device_ratio(value) -> float:
    if value is None:
        return 1.0
    ratio = _finite(value, "device_pixel_ratio")
    if ratio <= 0:
        raise _invalid("device_pixel_ratio must be positive")
    return ratio


def _stroke_points(strokes, width: int, height: int) -> List[List[Point]]:
    if not isinstance(strokes, (list, tuple)):
        raise _invalid("strokes must be a list")
    if len(strokes) > MAX_STROKES:
        raise _invalid(f"at most {MAX_STROKES} strokes")
    parsed, total = [], 0
    for stroke in strokes:
        if not isinstance(stroke, (list, tuple)):
            raise _invalid("each stroke must be a list of [x, y] points")
        total += len(stroke)
        if total > MAX_POINTS:
            raise _invalid(f"at most {MAX_POINTS} points")
        points: List[Point] = []
        for point in stroke:
            if not isinstance(point, (list, tuple)) or len(point) < 2:
                raise _invalid("each point must be an [x, y] pair")
            # points outside the pad are pinned to its edge
            x = min(width, max(0.0, _finite(point[0], "x")))
            y = min(height, max(0.0, _finite(point[1], "y")))
            points.append((x, y))
        if points:
            parsed.append(points)
    return parsed


def render_strokes(strokes: Sequence[Sequence[Sequence[float]]], width: Optional[int] = 320,
                   height: Optional[int] = 120, device_pixel_ratio: Optional[float] = 1.0) -> str:
    """Replay captured strokes (lists of [x, y] display points) into a data URI.

    Input comes straight from clients: shape, numbers and sizes are checked
    and any violation raises ``ValidationFailed("invalid_signature")``.
    """
    width = _pad_side(width, 320, "width")
    height = _pad_side(height, 120, "height")
    ratio = _device_ratio(device_pixel_ratio)
    parsed = _stroke_points(strokes, width, height)
    if not parsed:
        return ""
    pad = SignaturePad(width, height, ratio)
    for points in parsed:
        pad.pointer_down(*points[0])
        for point in points[1:]:
            pad.pointer_move(*point)
        pad.pointer_up()
    return pad.value
