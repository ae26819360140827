
import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text, inspect
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL or "sqlite:///./signatures.db", echo=False, pool_pre_ping=True)

def init_db():
    from .models import SignatureRequest, SignatureField, SignatureValue, StoredDocument, SignatureEvent
    SQLModel.metadata.create_all(engine)
    _ensure_request_created_by_column()
    _ensure_value_actor_unique_index()

def get_session():
    with Session(engine) as session:
        yield session

def _ensure_request_created_by_column():
    inspector = inspect(engine)
    try:
        columns = [col["name"] for col in inspector.get_columns("signaturerequest")]
    except Exception:
        return
    if "created_by" in columns:
        return
    with engine.begin() as conn:
        conn.execute(text("ALTER TABLE signaturerequest ADD COLUMN created_by TEXT"))


def _ensure_value_actor_unique_index():
    inspector = inspect(engine)
    try:
        indexes = inspector.get_indexes("signaturevalue")
    except Exception:
        return
    if any(idx.get("name") == "uq_signaturevalue_request_actor" for idx in indexes):
        return
    with engine.begin() as conn:
        duplicates = conn.execute(
            text("SELECT request_id, actor FROM signaturevalue GROUP BY request_id, actor HAVING COUNT(*) > 1")
        ).fetchall()
        if duplicates:
            pairs = ", ".join(f"{row[0]}/{row[1]}" for row in duplicates)
            logger.warning(
                "duplicate signature values detected; resolve before enforcing uniqueness: %s",
                pairs,
            )
            return
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_signaturevalue_request_actor "
                "ON signaturevalue(request_id, actor)"
            )
        )
