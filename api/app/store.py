"""Persistence boundary for signature requests.

Rows live in SQLModel tables, file bytes in object storage. Every write is
scoped to a single request id; the signed-at columns and the field lock are
claimed with conditional UPDATEs so a concurrent second writer for the same
actor loses instead of overwriting. Completion is claimed the same way by
moving the status from ``signing`` to ``assembling``.
"""
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, update
from sqlmodel import Session, select

from . import storage
from .assembly import assemble_digital, assemble_wet
from .config import MAX_UPLOAD_BYTES, WET_SIGNATURE_PROVIDER_IDS
from .errors import AssemblyFailed, DocumentLoadError, NotFound, StateConflict, ValidationFailed
from .geometry import LayoutField, normalize_field, validate_layout
from .models import SignatureEvent, SignatureField, SignatureRequest, SignatureValue, StoredDocument
from .rendering import RenderSource, open_source
from .utils import canonical_json, sha256_bytes
from .workflow import (
    ACTORS,
    ADVISOR,
    advisor_done,
    advisor_required,
    any_signed,
    check_digital_submission,
    check_fields_editable,
    check_upload,
    check_values,
    customer_done,
    is_complete,
    signing_mode,
)

logger = logging.getLogger(__name__)

UploadedFile = Tuple[str, bytes, Optional[str]]  # name, data, content type

ASSEMBLING = "assembling"  # completion claimed, artifact being built


# ---------- events ----------
def append_event(session: Session, request_id: int, actor_role: str, event: str, meta: Optional[dict] = None,
                 ip=None, ua=None) -> SignatureEvent:
    last = session.exec(
        select(SignatureEvent).where(SignatureEvent.request_id == request_id).order_by(SignatureEvent.id.desc())
    ).first()
    prev_hash = last.hash if last else "0" * 64
    payload = {"actor_role": actor_role, "event": event, "meta": meta or {}}
    row = SignatureEvent(
        request_id=request_id,
        actor_role=actor_role,
        event=event,
        meta_json=canonical_json(payload),
        prev_hash=prev_hash,
        ip=ip,
        user_agent=ua,
    )
    row.hash = sha256_bytes((prev_hash + row.meta_json).encode())
    session.add(row)
    session.flush()
    return row


def list_events(session: Session, request_id: int) -> List[SignatureEvent]:
    return session.exec(
        select(SignatureEvent).where(SignatureEvent.request_id == request_id).order_by(SignatureEvent.id)
    ).all()


# ---------- reads ----------
def get_request(session: Session, request_id: int) -> SignatureRequest:
    request = session.get(SignatureRequest, request_id)
    if not request:
        raise NotFound("not_found", "signature request not found")
    return request


def _to_layout(row: SignatureField) -> LayoutField:
    return LayoutField(
        id=row.key,
        owner=row.owner,
        type=row.type,
        label=row.label,
        page=row.page,
        x=row.x,
        y=row.y,
        width=row.width,
        height=row.height,
    )


def load_fields(session: Session, request_id: int) -> List[LayoutField]:
    rows = session.exec(
        select(SignatureField)
        .where(SignatureField.request_id == request_id)
        .order_by(SignatureField.position, SignatureField.id)
    ).all()
    return [_to_layout(row) for row in rows]


def load_values(session: Session, request_id: int) -> Dict[str, dict]:
    rows = session.exec(select(SignatureValue).where(SignatureValue.request_id == request_id)).all()
    values = {}
    for row in rows:
        try:
            values[row.actor] = json.loads(row.values_json or "{}")
        except json.JSONDecodeError:
            logger.warning("unreadable values for request %s actor %s", request_id, row.actor)
            values[row.actor] = {}
    return values


def list_documents(session: Session, request_id: int, kind: Optional[str] = None) -> List[StoredDocument]:
    stmt = select(StoredDocument).where(StoredDocument.request_id == request_id)
    if kind:
        stmt = stmt.where(StoredDocument.kind == kind)
    return session.exec(stmt.order_by(StoredDocument.created_at, StoredDocument.id)).all()


def get_document(session: Session, request_id: int, document_id: int) -> StoredDocument:
    doc = session.get(StoredDocument, document_id)
    if not doc or doc.request_id != request_id:
        raise NotFound("not_found", "document not found")
    return doc


def original_document(session: Session, request_id: int) -> StoredDocument:
    docs = list_documents(session, request_id, kind="original")
    if not docs:
        raise NotFound("not_found", "original document missing")
    return docs[-1]


def _serialize_document(doc: StoredDocument) -> dict:
    return {
        "id": doc.id,
        "kind": doc.kind,
        "file_name": doc.file_name,
        "file_path": doc.file_path,
        "mime_type": doc.mime_type,
        "size_bytes": doc.size_bytes,
        "created_at": doc.created_at,
    }


def serialize_request(session: Session, request: SignatureRequest, viewer_actor: Optional[str] = None) -> dict:
    fields = load_fields(session, request.id)
    values = load_values(session, request.id)
    return {
        "id": request.id,
        "case_id": request.case_id,
        "title": request.title,
        "provider_id": request.provider_id,
        "requires_wet_signature": request.requires_wet_signature,
        "status": request.status,
        "advisor_signed_at": request.advisor_signed_at,
        "customer_signed_at": request.customer_signed_at,
        "created_by": request.created_by,
        "created_at": request.created_at,
        "signing_mode": signing_mode(request, fields).value,
        "advisor_required": advisor_required(fields),
        "advisor_done": advisor_done(request, fields),
        "customer_done": customer_done(request),
        "fields_locked": any_signed(request),
        "fields": [f.model_dump() for f in fields],
        "documents": [_serialize_document(d) for d in list_documents(session, request.id)],
        "values_by_role": values or None,
        "my_values": values.get(viewer_actor) if viewer_actor else None,
    }


def list_requests(session: Session, case_id: str, viewer_actor: Optional[str] = None) -> List[dict]:
    requests = session.exec(
        select(SignatureRequest)
        .where(SignatureRequest.case_id == case_id)
        .order_by(SignatureRequest.created_at.desc(), SignatureRequest.id.desc())
    ).all()
    return [serialize_request(session, r, viewer_actor) for r in requests]


# ---------- source documents ----------
def load_source_bytes(session: Session, request_id: int) -> Tuple[bytes, Optional[str]]:
    doc = original_document(session, request_id)
    return storage.get_bytes(doc.file_path), doc.mime_type


def open_request_source(session: Session, request_id: int, password: Optional[str] = None) -> RenderSource:
    data, mime_type = load_source_bytes(session, request_id)
    return open_source(data, mime_type, password)


def _known_page_count(session: Session, request_id: int) -> Optional[int]:
    # None when the page count cannot be read without a password
    try:
        with open_request_source(session, request_id) as source:
            return source.page_count
    except DocumentLoadError:
        return None


# ---------- writes ----------
def _store_file(session: Session, request: SignatureRequest, kind: str, upload: UploadedFile,
                uploaded_by: Optional[str], prefix: str = "") -> StoredDocument:
    name, data, content_type = upload
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationFailed("file_too_large", f"{name} exceeds {MAX_UPLOAD_BYTES} bytes")
    key = storage.request_object_key(request.case_id, request.id, name or "document", prefix=prefix)
    storage.put_bytes(key, data, content_type=content_type or "application/octet-stream")
    doc = StoredDocument(
        request_id=request.id,
        case_id=request.case_id,
        kind=kind,
        file_name=name or "document",
        file_path=key,
        mime_type=content_type or None,
        size_bytes=len(data),
        sha256=sha256_bytes(data),
        uploaded_by=uploaded_by,
    )
    session.add(doc)
    session.flush()
    return doc


def create_request(session: Session, case_id: str, title: str, provider_id: Optional[str], requires_wet: bool,
                   upload: Optional[UploadedFile], created_by: Optional[str] = None, actor_role: str = "advisor",
                   ip=None, ua=None) -> SignatureRequest:
    case_id = (case_id or "").strip()
    title = (title or "").strip()
    if not case_id or not title or not upload or not upload[1]:
        raise ValidationFailed("missing_fields", "case, title and file are required")
    provider_id = (provider_id or "").strip() or None
    if provider_id and provider_id in WET_SIGNATURE_PROVIDER_IDS:
        requires_wet = True
    request = SignatureRequest(
        case_id=case_id,
        title=title,
        provider_id=provider_id,
        requires_wet_signature=bool(requires_wet),
        created_by=created_by,
    )
    session.add(request)
    session.flush()
    _store_file(session, request, "original", upload, created_by)
    append_event(session, request.id, actor_role, "created",
                 {"document": upload[0], "requires_wet_signature": request.requires_wet_signature}, ip=ip, ua=ua)
    session.commit()
    session.refresh(request)
    logger.info("signature request %s created for case %s (wet=%s)", request.id, case_id,
                request.requires_wet_signature)
    return request


def _claim_unsigned(session: Session, request: SignatureRequest) -> None:
    result = session.exec(
        update(SignatureRequest)
        .where(
            SignatureRequest.id == request.id,
            SignatureRequest.advisor_signed_at.is_(None),
            SignatureRequest.customer_signed_at.is_(None),
        )
        .values(status="draft")
    )
    if result.rowcount == 0:
        session.rollback()
        raise StateConflict("locked", "fields cannot change once signing has started")


def save_fields(session: Session, request_id: int, raw_fields: List[dict], actor_role: str = "advisor",
                ip=None, ua=None) -> List[LayoutField]:
    request = get_request(session, request_id)
    check_fields_editable(request)
    if not isinstance(raw_fields, list):
        raise ValidationFailed("missing_fields", "fields must be a list")
    layout = validate_layout([normalize_field(raw) for raw in raw_fields], _known_page_count(session, request_id))
    fields = layout.all_fields()
    _claim_unsigned(session, request)
    session.exec(delete(SignatureField).where(SignatureField.request_id == request_id))
    for position, field in enumerate(fields):
        session.add(SignatureField(
            request_id=request_id,
            key=field.id,
            owner=field.owner,
            type=field.type,
            label=field.label,
            page=field.page,
            x=field.x,
            y=field.y,
            width=field.width,
            height=field.height,
            position=position,
        ))
    append_event(session, request_id, actor_role, "fields_saved", {"count": len(fields)}, ip=ip, ua=ua)
    session.commit()
    return fields


def _claim_signature(session: Session, request: SignatureRequest, actor: str, at: datetime) -> None:
    column = SignatureRequest.advisor_signed_at if actor == ADVISOR else SignatureRequest.customer_signed_at
    result = session.exec(
        update(SignatureRequest)
        .where(SignatureRequest.id == request.id, column.is_(None))
        .values({column.key: at, "status": "signing"})
    )
    if result.rowcount == 0:
        session.rollback()
        raise StateConflict("already_signed", f"{actor} has already signed")


def _upsert_values(session: Session, request_id: int, actor: str, values: dict) -> None:
    row = session.exec(
        select(SignatureValue).where(SignatureValue.request_id == request_id, SignatureValue.actor == actor)
    ).first()
    if row is None:
        row = SignatureValue(request_id=request_id, actor=actor)
    row.values_json = canonical_json(values)
    row.updated_at = datetime.utcnow()
    session.add(row)


def submit_digital(session: Session, request_id: int, actor: str, values: dict, actor_role: Optional[str] = None,
                   ip=None, ua=None) -> dict:
    if actor not in ACTORS:
        raise ValidationFailed("invalid_actor", f"unknown actor {actor!r}")
    if not isinstance(values, dict):
        raise ValidationFailed("missing_fields", "values must be an object")
    request = get_request(session, request_id)
    fields = load_fields(session, request_id)
    check_digital_submission(request, fields, actor)
    cleaned = check_values(fields, actor, values)
    _claim_signature(session, request, actor, datetime.utcnow())
    _upsert_values(session, request_id, actor, cleaned)
    append_event(session, request_id, actor_role or actor, "signed", {"fields": sorted(cleaned)}, ip=ip, ua=ua)
    session.commit()
    session.refresh(request)
    logger.info("request %s signed digitally by %s", request_id, actor)
    return _complete_if_ready(session, request)


def upload_signed(session: Session, request_id: int, actor: str, files: List[UploadedFile],
                  actor_role: Optional[str] = None, uploaded_by: Optional[str] = None, ip=None, ua=None) -> dict:
    files = [f for f in files or [] if f and f[1]]
    if not files:
        raise ValidationFailed("missing_file", "at least one signed file is required")
    request = get_request(session, request_id)
    check_upload(request, actor)
    _claim_signature(session, request, actor, datetime.utcnow())
    for upload in files:
        _store_file(session, request, "scan", upload, uploaded_by, prefix="signed_")
    append_event(
        session, request_id, actor_role or actor, "uploaded_scan",
        {"files": [{"name": name, "size": len(data)} for name, data, _ in files]}, ip=ip, ua=ua,
    )
    session.commit()
    session.refresh(request)
    logger.info("request %s: %s uploaded %d signed scan(s)", request_id, actor, len(files))
    return _complete_if_ready(session, request)


# ---------- completion ----------
def _build_audit(session: Session, request: SignatureRequest, fields: List[LayoutField],
                 values: Dict[str, dict], sources: Dict[str, str]) -> dict:
    return {
        "request_id": request.id,
        "case_id": request.case_id,
        "title": f"{request.title} · {request.case_id}",
        "mode": signing_mode(request, fields).value,
        "advisor_signed_at": request.advisor_signed_at,
        "customer_signed_at": request.customer_signed_at,
        "values": values,
        "sha256_sources": sources,
        "events": [
            {
                "at": ev.at,
                "event": ev.event,
                "actor_role": ev.actor_role,
                "ip": ev.ip,
                "user_agent": ev.user_agent,
                "hash": ev.hash,
            }
            for ev in list_events(session, request.id)
        ],
    }


def _assemble(session: Session, request: SignatureRequest, fields: List[LayoutField], password: Optional[str]):
    values = load_values(session, request.id)
    if request.requires_wet_signature:
        scans = list_documents(session, request.id, kind="scan")
        payloads = [(storage.get_bytes(d.file_path), d.mime_type) for d in scans]
        sources = {d.file_name: sha256_bytes(data) for d, (data, _) in zip(scans, payloads)}
        return assemble_wet(payloads, _build_audit(session, request, fields, values, sources))
    original = original_document(session, request.id)
    data = storage.get_bytes(original.file_path)
    audit = _build_audit(session, request, fields, values, {original.file_name: sha256_bytes(data)})
    return assemble_digital(data, original.mime_type, fields, values, audit, password=password)


def _move_status(session: Session, request_id: int, expected: str, status: str) -> bool:
    result = session.exec(
        update(SignatureRequest)
        .where(SignatureRequest.id == request_id, SignatureRequest.status == expected)
        .values(status=status)
    )
    return result.rowcount == 1


def finalize(session: Session, request: SignatureRequest, password: Optional[str] = None) -> Optional[StoredDocument]:
    """Produce the signed artifact once both actors are done.

    Returns the signed document, or None while the request is incomplete or
    another caller holds the assembly claim (status ``assembling``). On any
    failure the claim goes back to ``signing``; for AssemblyFailed an
    ``assembly_failed`` event is written as well. The signed-at flags are
    never touched here.
    """
    fields = load_fields(session, request.id)
    if not is_complete(request, fields):
        return None
    existing = list_documents(session, request.id, kind="signed")
    if existing:
        if request.status != "completed":
            request.status = "completed"
            session.add(request)
            session.commit()
        return existing[-1]
    if not _move_status(session, request.id, "signing", ASSEMBLING):
        session.rollback()
        logger.info("request %s is already being assembled", request.id)
        return None
    session.commit()
    try:
        artifact = _assemble(session, request, fields, password)
        key_pdf = storage.request_object_key(request.case_id, request.id, "signed_final.pdf")
        storage.put_bytes(key_pdf, artifact.pdf, content_type="application/pdf")
        storage.put_bytes(f"{key_pdf}.audit.json", artifact.audit_json.encode(), content_type="application/json")
    except Exception as exc:
        session.rollback()
        _move_status(session, request.id, ASSEMBLING, "signing")
        if isinstance(exc, AssemblyFailed):
            append_event(session, request.id, "system", "assembly_failed", {"detail": exc.detail})
            logger.warning("assembly failed for request %s: %s", request.id, exc.detail)
        session.commit()
        raise
    doc = StoredDocument(
        request_id=request.id,
        case_id=request.case_id,
        kind="signed",
        file_name=key_pdf.rsplit("/", 1)[-1],
        file_path=key_pdf,
        mime_type="application/pdf",
        size_bytes=len(artifact.pdf),
        sha256=artifact.sha256,
        uploaded_by="system",
    )
    session.add(doc)
    _move_status(session, request.id, ASSEMBLING, "completed")
    append_event(session, request.id, "system", "completed", {"sha256_final": artifact.sha256})
    session.commit()
    session.refresh(doc)
    logger.info("request %s completed, sha256_final=%s", request.id, artifact.sha256)
    return doc


def _complete_if_ready(session: Session, request: SignatureRequest) -> dict:
    doc = finalize(session, request)
    if doc is None:
        return {"ok": True, "status": request.status}
    return {"ok": True, "status": "completed", "signed_document_id": doc.id, "sha256_final": doc.sha256}


def retry_assembly(session: Session, request_id: int, password: Optional[str] = None) -> StoredDocument:
    request = get_request(session, request_id)
    if not is_complete(request, load_fields(session, request_id)):
        raise StateConflict("not_ready", "both parties have to sign first")
    doc = finalize(session, request, password=password)
    if doc is None:
        raise StateConflict("assembly_in_progress", "the signed document is being assembled")
    return doc


def pending_assembly(session: Session) -> List[SignatureRequest]:
    """Requests with both signatures in place but no signed artifact yet."""
    candidates = session.exec(select(SignatureRequest).where(SignatureRequest.status == "signing")).all()
    return [r for r in candidates if is_complete(r, load_fields(session, r.id))]
