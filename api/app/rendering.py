"""Rasterize one page of a source document into a caller-supplied box.

Paginated sources (PDF, possibly password protected) go through PyMuPDF,
flat images through Pillow and count as a single page. Callers get back the
PNG plus the achieved CSS-pixel size, which is what the percent-based field
overlay is positioned against.
"""
import asyncio
import io
import itertools
import logging
from typing import Callable, Dict, Hashable, Optional, Tuple

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from .config import RENDER_MAX_PIXEL_RATIO
from .errors import LoadFailed, PasswordRequired

logger = logging.getLogger(__name__)

MIN_SCALE = 0.1


class RenderedPage:
    def __init__(self, png: bytes, width: int, height: int, page: int, page_count: int, pixel_ratio: float):
        self.png = png
        self.width = width
        self.height = height
        self.page = page
        self.page_count = page_count
        self.pixel_ratio = pixel_ratio


def detect_kind(data: bytes, mime_type: Optional[str] = None) -> str:
    mime = (mime_type or "").lower()
    if "pdf" in mime:
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    return "pdf" if data[:5] == b"%PDF-" else "image"


def fit_scale(natural_width: float, natural_height: float, max_width: float, max_height: Optional[float] = None) -> float:
    by_width = max(MIN_SCALE, max_width / natural_width)
    if not max_height:
        return by_width
    by_height = max(MIN_SCALE, max_height / natural_height)
    return min(by_width, by_height)


def _pixel_ratio(requested: Optional[float]) -> float:
    return max(1.0, min(RENDER_MAX_PIXEL_RATIO, float(requested or 1.0)))


def _diagnostic(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


class RenderSource:
    kind = "unknown"
    page_count = 1

    def page_size(self, page: int) -> Tuple[float, float]:
        raise NotImplementedError

    def render_page(self, page: int, max_width: float, max_height: Optional[float] = None,
                    pixel_ratio: float = 1.0) -> RenderedPage:
        raise NotImplementedError

    def clamp_page(self, page: int) -> int:
        return max(1, min(int(page or 1), self.page_count))

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class PdfSource(RenderSource):
    kind = "pdf"

    def __init__(self, doc: "fitz.Document"):
        self._doc = doc
        self.page_count = doc.page_count

    def page_size(self, page: int) -> Tuple[float, float]:
        rect = self._doc[self.clamp_page(page) - 1].rect
        return rect.width, rect.height

    def render_page(self, page, max_width, max_height=None, pixel_ratio=1.0):
        index = self.clamp_page(page)
        pdf_page = self._doc[index - 1]
        # page.rect already accounts for /Rotate
        natural_w, natural_h = pdf_page.rect.width, pdf_page.rect.height
        scale = fit_scale(natural_w, natural_h, max_width, max_height)
        ratio = _pixel_ratio(pixel_ratio)
        pix = pdf_page.get_pixmap(matrix=fitz.Matrix(scale * ratio, scale * ratio), alpha=False)
        return RenderedPage(
            png=pix.tobytes("png"),
            width=round(natural_w * scale),
            height=round(natural_h * scale),
            page=index,
            page_count=self.page_count,
            pixel_ratio=ratio,
        )

    def close(self):
        self._doc.close()


class ImageSource(RenderSource):
    kind = "image"
    page_count = 1

    def __init__(self, image: Image.Image):
        self._image = image
        self.natural_size = image.size

    def page_size(self, page: int) -> Tuple[float, float]:
        return float(self.natural_size[0]), float(self.natural_size[1])

    def render_page(self, page, max_width, max_height=None, pixel_ratio=1.0):
        natural_w, natural_h = self.natural_size
        scale = fit_scale(natural_w, natural_h, max_width, max_height)
        ratio = _pixel_ratio(pixel_ratio)
        target = (max(1, round(natural_w * scale * ratio)), max(1, round(natural_h * scale * ratio)))
        mode = "RGBA" if "A" in self._image.getbands() else "RGB"
        resized = self._image.convert(mode).resize(target, Image.LANCZOS)
        buf = io.BytesIO()
        resized.save(buf, format="PNG")
        return RenderedPage(
            png=buf.getvalue(),
            width=round(natural_w * scale),
            height=round(natural_h * scale),
            page=1,
            page_count=1,
            pixel_ratio=ratio,
        )

    def close(self):
        self._image.close()


def _open_pdf(data: bytes, password: Optional[str]) -> PdfSource:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as exc:
        raise LoadFailed(_diagnostic(exc)) from exc
    if doc.needs_pass:
        if not password:
            doc.close()
            raise PasswordRequired()
        if not doc.authenticate(password):
            doc.close()
            raise PasswordRequired("password_incorrect")
    if doc.page_count < 1:
        doc.close()
        raise LoadFailed("document has no pages")
    return PdfSource(doc)


def _open_image(data: bytes) -> ImageSource:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise LoadFailed(_diagnostic(exc)) from exc
    return ImageSource(image)


def open_source(data: bytes, mime_type: Optional[str] = None, password: Optional[str] = None) -> RenderSource:
    if not data:
        raise LoadFailed("empty file")
    if detect_kind(data, mime_type) == "pdf":
        return _open_pdf(data, password)
    return _open_image(data)


def _rasterize(factory: Callable[[], RenderSource], page: int, max_width: float,
               max_height: Optional[float], pixel_ratio: float) -> RenderedPage:
    with factory() as source:
        return source.render_page(page, max_width, max_height, pixel_ratio)


class RenderCoordinator:
    """Supersedable renders, one lane per viewer key.

    A new request for a key cancels the wait on the previous one and the
    older caller gets ``None``. Bookkeeping for a key is dropped once its
    newest render settles. Rasterization runs in a worker thread so the
    event loop, and with it any pointer traffic, stays responsive.
    """

    def __init__(self):
        # generations come from one counter so a key reused after eviction
        # can never match a stale caller
        self._counter = itertools.count(1)
        self._generation: Dict[Hashable, int] = {}
        self._tasks: Dict[Hashable, asyncio.Future] = {}

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def render(self, key: Hashable, factory: Callable[[], RenderSource], page: int,
                     max_width: float, max_height: Optional[float] = None,
                     pixel_ratio: float = 1.0) -> Optional[RenderedPage]:
        generation = next(self._counter)
        self._generation[key] = generation
        previous = self._tasks.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.ensure_future(
            asyncio.to_thread(_rasterize, factory, page, max_width, max_height, pixel_ratio)
        )
        self._tasks[key] = task
        newest = False
        try:
            result = await task
        except asyncio.CancelledError:
            if self._generation.get(key) != generation:
                logger.debug("render superseded key=%s page=%s", key, page)
                return None
            raise
        finally:
            newest = self._generation.get(key) == generation
            if newest:
                del self._generation[key]
                del self._tasks[key]
        return result if newest else None


coordinator = RenderCoordinator()
