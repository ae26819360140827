import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from minio.error import S3Error
from sqlmodel import Session

from .. import store
from ..auth import AccessContext, ensure_case_access, resolve_access_context
from ..db import get_session
from ..rendering import coordinator, open_source
from ..storage import get_bytes

router = APIRouter()


def _viewer_key(request: Request, ctx: AccessContext, request_id: int):
    # one render lane per viewer and request; a newer page request replaces the pending one
    viewer = request.headers.get("x-viewer-id") or ctx.user or ctx.role
    return viewer, request_id


@router.get("/{request_id}/pages/{page}")
async def render_page(
    request_id: int,
    page: int,
    request: Request,
    max_width: float = Query(800, gt=0),
    max_height: Optional[float] = Query(None, gt=0),
    pixel_ratio: float = Query(1.0, gt=0),
    password: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    sig_request = store.get_request(session, request_id)
    ensure_case_access(ctx, sig_request.case_id)
    original = store.original_document(session, request_id)
    try:
        data = await asyncio.to_thread(get_bytes, original.file_path)
    except S3Error:
        raise HTTPException(404, "stored file missing for this request")
    rendered = await coordinator.render(
        _viewer_key(request, ctx, request_id),
        lambda: open_source(data, original.mime_type, password),
        page,
        max_width,
        max_height,
        pixel_ratio,
    )
    if rendered is None:
        return Response(status_code=204)
    return Response(
        content=rendered.png,
        media_type="image/png",
        headers={
            "X-Page-Width": str(rendered.width),
            "X-Page-Height": str(rendered.height),
            "X-Page-Count": str(rendered.page_count),
            "X-Page-Number": str(rendered.page),
            "Cache-Control": "no-store",
        },
    )


@router.get("/{request_id}/documents/{document_id}")
def fetch_document(
    request_id: int,
    document_id: int,
    raw: bool = Query(False),
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    sig_request = store.get_request(session, request_id)
    ensure_case_access(ctx, sig_request.case_id)
    doc = store.get_document(session, request_id, document_id)
    if not raw:
        return {
            "id": doc.id,
            "kind": doc.kind,
            "file_name": doc.file_name,
            "mime_type": doc.mime_type,
            "size_bytes": doc.size_bytes,
            "sha256": doc.sha256,
            "created_at": doc.created_at,
        }
    try:
        content = get_bytes(doc.file_path)
    except S3Error:
        raise HTTPException(404, "stored file missing for this document")
    return Response(
        content=content,
        media_type=doc.mime_type or "application/octet-stream",
        headers={"Content-Disposition": f'inline; filename="{doc.file_name}"'},
    )
