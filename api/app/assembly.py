
# Final artifact assembly using pypdf + reportlab.
# Digital requests: field values are stamped onto the original pages.
# Wet requests: the uploaded scans are bundled as they are.
# Both get audit log pages appended and an audit JSON to store next to the PDF.

import datetime
import json
import logging
from io import BytesIO
from typing import Dict, Iterable, List, Optional, Tuple

from PIL import Image
from pypdf import PdfReader, PdfWriter
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .errors import AssemblyFailed
from .geometry import LayoutField
from .rendering import detect_kind
from .utils import canonical_json, data_url_to_bytes, sha256_bytes

logger = logging.getLogger(__name__)

FONT = "Helvetica"
AUDIT_LINE_CHARS = 110


class AssembledArtifact:
    def __init__(self, pdf: bytes, audit_json: str, sha256: str):
        self.pdf = pdf
        self.audit_json = audit_json
        self.sha256 = sha256


def _rotation(page) -> int:
    angle = int(page.rotation or 0) % 360
    return angle if angle in (90, 180, 270) else 0


def percent_to_pdf(box: Tuple[float, float, float, float], field: LayoutField, rotation: int = 0):
    """Map a percent rectangle (top-left origin) to PDF points (bottom-left origin).

    ``box`` is the page mediabox as (left, bottom, width, height). For pages
    rotated by 180 degrees the rectangle is mirrored so it lands where the
    editor preview showed it.
    """
    left, bottom, w, h = box
    field_w = field.width / 100 * w
    field_h = field.height / 100 * h
    if rotation == 180:
        x = (100 - field.x - field.width) / 100 * w
        y = field.y / 100 * h
    else:
        x = field.x / 100 * w
        y = h - field.y / 100 * h - field_h
    return left + x, bottom + y, field_w, field_h


def _fit_text_size(text: str, field_w: float, field_h: float) -> float:
    size = min(14, max(12, field_h * 0.45))
    max_width = max(1, field_w - 4)
    width = stringWidth(text, FONT, size)
    if width > max_width:
        size = max(7, max_width / width * size)
    return size


def _draw_value(c: canvas.Canvas, field: LayoutField, value, field_w: float, field_h: float):
    # drawn relative to the field's lower-left corner
    if field.type == "signature":
        png = data_url_to_bytes(value)
        c.drawImage(ImageReader(BytesIO(png)), 0, 0, width=field_w, height=field_h, mask="auto")
    elif field.type == "checkbox":
        c.setFont(FONT, min(14, max(12, field_h * 0.6)))
        c.drawString(2, 2, "X")
    else:
        text = str(value)
        c.setFont(FONT, _fit_text_size(text, field_w, field_h))
        c.setFillColorRGB(0.1, 0.1, 0.1)
        c.drawString(2, max(2, field_h * 0.2), text)
        c.setFillColorRGB(0, 0, 0)


def _has_value(field: LayoutField, value) -> bool:
    if field.type == "checkbox":
        return bool(value)
    return isinstance(value, str) and bool(value)


def _overlay_page(width, height, items):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for x, y, field_w, field_h, rotation, field, value in items:
        c.saveState()
        if rotation == 180:
            c.translate(x + field_w, y + field_h)
            c.rotate(180)
        else:
            c.translate(x, y)
        _draw_value(c, field, value, field_w, field_h)
        c.restoreState()
    c.showPage()
    c.save()
    return buf.getvalue()


def _image_to_pdf(data: bytes) -> bytes:
    """Place a flat image centered on an A4 page."""
    image = Image.open(BytesIO(data))
    image.load()
    if image.mode not in ("RGB", "RGBA", "L"):
        image = image.convert("RGB")
    page_w, page_h = A4
    scale = min(page_w / image.width, page_h / image.height)
    draw_w, draw_h = image.width * scale, image.height * scale
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.drawImage(ImageReader(image), (page_w - draw_w) / 2, (page_h - draw_h) / 2,
                width=draw_w, height=draw_h, mask="auto")
    c.showPage()
    c.save()
    return buf.getvalue()


def _open_reader(data: bytes, mime_type: Optional[str], password: Optional[str]) -> PdfReader:
    if detect_kind(data, mime_type) == "image":
        return PdfReader(BytesIO(_image_to_pdf(data)))
    reader = PdfReader(BytesIO(data))
    if reader.is_encrypted:
        # owner-password-only files open with an empty user password
        if not reader.decrypt(password or ""):
            raise AssemblyFailed("source document is password protected")
    return reader


def _value_summary(value) -> str:
    if isinstance(value, bool):
        return "checked" if value else "unchecked"
    text = str(value)
    if text.startswith("data:image/"):
        return f"signature image sha256:{sha256_bytes(text.encode())[:16]}"
    return text


def _audit_lines(audit: dict) -> List[str]:
    lines = [
        f"Request: {audit.get('request_id')}  Mode: {audit.get('mode')}",
        f"Advisor signed at: {audit.get('advisor_signed_at') or '-'}",
        f"Customer signed at: {audit.get('customer_signed_at') or '-'}",
    ]
    for label, digest in sorted((audit.get("sha256_sources") or {}).items()):
        lines.append(f"Source {label}: sha256 {digest}")
    for actor in ("advisor", "customer"):
        values = (audit.get("values") or {}).get(actor) or {}
        for field_id, value in values.items():
            lines.append(f"{actor} · {field_id}: {_value_summary(value)}")
    lines.append("")
    lines.append("Events:")
    for ev in audit.get("events") or []:
        lines.append(
            f"{ev.get('at')} · {ev.get('event')} · {ev.get('actor_role') or '-'} · {ev.get('ip') or '-'}"
        )
        if ev.get("hash"):
            lines.append(f"    hash {ev['hash']}")
    return lines


def _append_audit_pages(writer: PdfWriter, audit: dict):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.setFont(FONT, 16)
    c.drawString(40, 740, "Audit Log")
    c.setFont(FONT, 11)
    c.setFillColorRGB(0.2, 0.2, 0.2)
    c.drawString(40, 720, str(audit.get("title") or "")[:AUDIT_LINE_CHARS])
    c.setFont(FONT, 9)
    y = 690
    for line in _audit_lines(audit):
        c.drawString(40, y, line[:AUDIT_LINE_CHARS])
        y -= 14
        if y < 60:
            c.showPage()
            c.setFillColorRGB(0, 0, 0)
            c.setFont(FONT, 12)
            c.drawString(40, 800, "Audit Log (continued)")
            c.setFillColorRGB(0.2, 0.2, 0.2)
            c.setFont(FONT, 9)
            y = 780
    c.showPage()
    c.save()
    buf.seek(0)
    writer.append_pages_from_reader(PdfReader(buf))


def _finish(writer: PdfWriter, audit: dict) -> AssembledArtifact:
    sealed = {**audit, "sealed_at": datetime.datetime.utcnow().isoformat() + "Z"}
    _append_audit_pages(writer, sealed)
    out = BytesIO()
    writer.write(out)
    final_bytes = out.getvalue()
    sha_final = sha256_bytes(final_bytes)
    audit_json = json.dumps({**json.loads(canonical_json(sealed)), "sha256_final": sha_final})
    return AssembledArtifact(final_bytes, audit_json, sha_final)


def _stamp(original: bytes, mime_type: Optional[str], fields: Iterable[LayoutField],
           values_by_role: Dict[str, dict], audit: dict, password: Optional[str]) -> AssembledArtifact:
    reader = _open_reader(original, mime_type, password)
    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    num_pages = len(reader.pages)
    draw_map: Dict[int, list] = {}
    for field in fields:
        if not 1 <= field.page <= num_pages:
            continue
        value = (values_by_role.get(field.owner) or {}).get(field.id)
        if not _has_value(field, value):
            continue
        page = reader.pages[field.page - 1]
        box = page.mediabox
        rotation = _rotation(page)
        x, y, field_w, field_h = percent_to_pdf(
            (float(box.left), float(box.bottom), float(box.width), float(box.height)), field, rotation
        )
        draw_map.setdefault(field.page - 1, []).append((x, y, field_w, field_h, rotation, field, value))
    for pidx, items in draw_map.items():
        box = reader.pages[pidx].mediabox
        overlay = _overlay_page(float(box.right), float(box.top), items)
        writer.pages[pidx].merge_page(PdfReader(BytesIO(overlay)).pages[0])
    return _finish(writer, audit)


def assemble_digital(original: bytes, mime_type: Optional[str], fields: Iterable[LayoutField],
                     values_by_role: Dict[str, dict], audit: dict,
                     password: Optional[str] = None) -> AssembledArtifact:
    try:
        return _stamp(original, mime_type, list(fields), values_by_role, audit, password)
    except AssemblyFailed:
        raise
    except Exception as exc:
        logger.exception("stamping failed for request %s", audit.get("request_id"))
        raise AssemblyFailed(str(exc) or type(exc).__name__) from exc


def assemble_wet(scans: List[Tuple[bytes, Optional[str]]], audit: dict) -> AssembledArtifact:
    if not scans:
        raise AssemblyFailed("no signed scans uploaded")
    try:
        writer = PdfWriter()
        for data, mime_type in scans:
            writer.append_pages_from_reader(_open_reader(data, mime_type, None))
        return _finish(writer, audit)
    except AssemblyFailed:
        raise
    except Exception as exc:
        logger.exception("bundling scans failed for request %s", audit.get("request_id"))
        raise AssemblyFailed(str(exc) or type(exc).__name__) from exc
