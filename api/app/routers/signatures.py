import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from sqlmodel import Session

from .. import store
from ..auth import AccessContext, ensure_case_access, issue_link_token, require_operator, resolve_access_context
from ..db import get_session
from ..schemas import AssembleRetry, FieldsSave, SignLink, SignSubmit, SourceInfo
from ..utils import client_ip
from ..workflow import actor_for_role

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------- helpers ----------
def _client(request: Request):
    ip = client_ip(
        request.headers.get("x-forwarded-for"),
        request.headers.get("x-real-ip"),
        request.client.host if request.client else None,
    )
    return ip, request.headers.get("user-agent")


def _load_for(session: Session, request_id: int, ctx: AccessContext):
    sig_request = store.get_request(session, request_id)
    ensure_case_access(ctx, sig_request.case_id)
    return sig_request


async def _read_upload(upload: UploadFile):
    data = await upload.read()
    return upload.filename or "document", data, upload.content_type


# ---------- routes ----------
@router.get("")
def list_signature_requests(
    case_id: str = Query(...),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    ensure_case_access(ctx, case_id)
    return {"items": store.list_requests(session, case_id, actor_for_role(ctx.role))}


@router.post("")
async def create_signature_request(
    request: Request,
    case_id: str = Form(""),
    title: str = Form(""),
    provider_id: Optional[str] = Form(None),
    requires_wet: bool = Form(False),
    file: Optional[UploadFile] = File(None),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_operator),
):
    if case_id:
        ensure_case_access(ctx, case_id)
    upload = await _read_upload(file) if file is not None else None
    ip, ua = _client(request)
    created = store.create_request(
        session,
        case_id=case_id,
        title=title,
        provider_id=provider_id,
        requires_wet=requires_wet,
        upload=upload,
        created_by=ctx.user,
        actor_role=ctx.role,
        ip=ip,
        ua=ua,
    )
    return {"ok": True, "id": created.id, "requires_wet_signature": created.requires_wet_signature}


@router.patch("/{request_id}/fields")
def save_signature_fields(
    request_id: int,
    payload: FieldsSave,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_operator),
):
    _load_for(session, request_id, ctx)
    ip, ua = _client(request)
    fields = store.save_fields(session, request_id, payload.fields, actor_role=ctx.role, ip=ip, ua=ua)
    return {"ok": True, "fields": [f.model_dump() for f in fields]}


@router.post("/{request_id}/submit")
def submit_signature(
    request_id: int,
    payload: SignSubmit,
    request: Request,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    _load_for(session, request_id, ctx)
    ip, ua = _client(request)
    return store.submit_digital(
        session, request_id, actor_for_role(ctx.role), payload.values, actor_role=ctx.role, ip=ip, ua=ua
    )


@router.post("/{request_id}/upload")
async def upload_signed_scan(
    request_id: int,
    request: Request,
    files: List[UploadFile] = File(...),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    _load_for(session, request_id, ctx)
    uploads = [await _read_upload(f) for f in files]
    ip, ua = _client(request)
    return store.upload_signed(
        session,
        request_id,
        actor_for_role(ctx.role),
        uploads,
        actor_role=ctx.role,
        uploaded_by=ctx.user or ctx.role,
        ip=ip,
        ua=ua,
    )


@router.post("/{request_id}/assemble")
def retry_signature_assembly(
    request_id: int,
    payload: Optional[AssembleRetry] = None,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_operator),
):
    _load_for(session, request_id, ctx)
    doc = store.retry_assembly(session, request_id, password=payload.password if payload else None)
    return {"ok": True, "status": "completed", "signed_document_id": doc.id, "sha256_final": doc.sha256}


@router.get("/{request_id}/sign-link", response_model=SignLink)
def create_sign_link(
    request_id: int,
    role: str = Query("customer"),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_operator),
):
    sig_request = _load_for(session, request_id, ctx)
    try:
        token = issue_link_token(sig_request.case_id, role)
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return SignLink(role=role, token=token, url=f"/sign/{request_id}?token={token}")


@router.get("/{request_id}/source", response_model=SourceInfo)
def describe_source(
    request_id: int,
    password: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    _load_for(session, request_id, ctx)
    with store.open_request_source(session, request_id, password) as source:
        pages = []
        for number in range(1, source.page_count + 1):
            width, height = source.page_size(number)
            pages.append({"width": width, "height": height})
        return SourceInfo(kind=source.kind, page_count=source.page_count, pages=pages)


@router.get("/{request_id}/events")
def list_signature_events(
    request_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_operator),
):
    _load_for(session, request_id, ctx)
    return [
        {
            "at": ev.at,
            "actor_role": ev.actor_role,
            "event": ev.event,
            "ip": ev.ip,
            "user_agent": ev.user_agent,
            "prev_hash": ev.prev_hash,
            "hash": ev.hash,
        }
        for ev in store.list_events(session, request_id)
    ]
