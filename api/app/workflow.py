"""Who may sign when.

Completion is two independent predicates instead of one linear chain,
because the advisor step is a no-op when the advisor owns no fields:

* advisor done:  no advisor-owned fields, or ``advisor_signed_at`` set
* customer done: ``customer_signed_at`` set (digital submit or scan upload)

The request is complete once both hold.
"""
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from .capture import decode_signature, render_strokes
from .errors import Forbidden, StateConflict, ValidationFailed
from .geometry import LayoutField
from .models import SignatureRequest

ADVISOR = "advisor"
CUSTOMER = "customer"
ACTORS = (ADVISOR, CUSTOMER)

_TRUTHY = {"1", "true", "on", "yes", "x"}


class SigningMode(str, Enum):
    DIGITAL_DUAL = "digital_dual"      # advisor fields first, then customer
    DIGITAL_SINGLE = "digital_single"  # customer only
    WET_ONLY = "wet_only"              # scans only, no digital path


def actor_for_role(role: Optional[str]) -> str:
    if role in ("admin", "advisor"):
        return ADVISOR
    if role == "customer":
        return CUSTOMER
    raise Forbidden("forbidden", f"role {role!r} cannot sign")


def advisor_required(fields: Iterable[LayoutField]) -> bool:
    return any(f.owner != CUSTOMER for f in fields)


def signing_mode(request: SignatureRequest, fields: Iterable[LayoutField]) -> SigningMode:
    if request.requires_wet_signature:
        return SigningMode.WET_ONLY
    if advisor_required(fields):
        return SigningMode.DIGITAL_DUAL
    return SigningMode.DIGITAL_SINGLE


def signed_at(request: SignatureRequest, actor: str) -> Optional[datetime]:
    return request.advisor_signed_at if actor == ADVISOR else request.customer_signed_at


def advisor_done(request: SignatureRequest, fields: Iterable[LayoutField]) -> bool:
    return not advisor_required(fields) or request.advisor_signed_at is not None


def customer_done(request: SignatureRequest) -> bool:
    return request.customer_signed_at is not None


def is_complete(request: SignatureRequest, fields: Iterable[LayoutField]) -> bool:
    fields = list(fields)
    return advisor_done(request, fields) and customer_done(request)


def any_signed(request: SignatureRequest) -> bool:
    return request.advisor_signed_at is not None or request.customer_signed_at is not None


def check_fields_editable(request: SignatureRequest) -> None:
    if any_signed(request):
        raise StateConflict("locked", "fields cannot change once signing has started")


def check_digital_submission(request: SignatureRequest, fields: Iterable[LayoutField], actor: str) -> None:
    fields = list(fields)
    if signing_mode(request, fields) is SigningMode.WET_ONLY:
        raise StateConflict("wet_signature_required", "upload the signed paper document instead")
    if signed_at(request, actor) is not None:
        raise StateConflict("already_signed", f"{actor} has already signed")
    if actor == CUSTOMER and not advisor_done(request, fields):
        raise StateConflict("advisor_not_signed", "the advisor has to sign first")


def check_upload(request: SignatureRequest, actor: str) -> None:
    if not request.requires_wet_signature:
        raise StateConflict("digital_signature_required", "this document is signed on screen")
    if signed_at(request, actor) is not None:
        raise StateConflict("already_signed", f"{actor} has already signed")


def _signature_value(raw) -> str:
    if isinstance(raw, dict) and "strokes" in raw:
        return render_strokes(
            raw["strokes"], raw.get("width"), raw.get("height"), raw.get("device_pixel_ratio")
        )
    if isinstance(raw, str) and raw.strip():
        decode_signature(raw)
        return raw.strip()
    return ""


def _checkbox_value(raw) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in _TRUTHY
    return bool(raw)


def check_values(fields: Iterable[LayoutField], actor: str, values: dict) -> dict:
    """Keep only the actor's own fields and coerce each value by field type.

    Keys for other actors' fields or unknown ids are dropped. Every one of
    the actor's signature fields must carry a signature.
    """
    own: List[LayoutField] = [f for f in fields if f.owner == actor]
    cleaned = {}
    for field in own:
        raw = values.get(field.id)
        if field.type == "signature":
            signature = _signature_value(raw)
            if not signature:
                raise ValidationFailed("missing_signature", f"field {field.label or field.id} needs a signature")
            cleaned[field.id] = signature
        elif field.type == "checkbox":
            cleaned[field.id] = _checkbox_value(raw)
        elif raw is not None:
            cleaned[field.id] = str(raw).strip()
    return cleaned


def mark_signed(request: SignatureRequest, actor: str, at: Optional[datetime] = None) -> None:
    at = at or datetime.utcnow()
    if actor == ADVISOR:
        request.advisor_signed_at = at
    else:
        request.customer_signed_at = at
