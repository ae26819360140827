
import logging
import os

from celery import Celery
from sqlmodel import Session

from app.db import engine
from app.errors import AssemblyFailed
from app.store import finalize, pending_assembly

REDIS_URL = os.environ.get("REDIS_URL", "redis://redis:6379/0")
QUEUE = os.environ.get("WORKER_QUEUE", "signatures")

logger = logging.getLogger(__name__)

cel = Celery("signatures", broker=REDIS_URL, backend=REDIS_URL)


def sweep(session: Session) -> dict:
    """Finalize every fully signed request that has no signed artifact yet."""
    completed, failed = [], []
    for sig_request in pending_assembly(session):
        try:
            doc = finalize(session, sig_request)
        except AssemblyFailed as exc:
            failed.append({"request_id": sig_request.id, "detail": exc.detail})
            continue
        if doc is not None:
            completed.append({"request_id": sig_request.id, "sha256_final": doc.sha256})
    if completed or failed:
        logger.info("assembly sweep: %d completed, %d failed", len(completed), len(failed))
    return {"completed": completed, "failed": failed}


@cel.task(name="assemble_pending", queue=QUEUE)
def assemble_pending():
    with Session(engine) as session:
        return sweep(session)
