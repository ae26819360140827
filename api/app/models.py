
from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field as ORMField

class SignatureRequest(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    case_id: str = ORMField(index=True)
    title: str
    provider_id: Optional[str] = None
    requires_wet_signature: bool = False
    status: str = "draft"  # draft|signing|assembling|completed
    advisor_signed_at: Optional[datetime] = None
    customer_signed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class SignatureField(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    key: str  # client-facing field id, values are keyed by it
    owner: str  # advisor|customer
    type: str  # signature|checkbox|text
    label: str = ""
    page: int = 1
    x: float
    y: float
    width: float
    height: float
    position: int = 0

class SignatureValue(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    actor: str  # advisor|customer
    values_json: str = "{}"
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)

class StoredDocument(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    case_id: str
    kind: str  # original|scan|signed
    file_name: str
    file_path: str
    mime_type: Optional[str] = None
    size_bytes: int = 0
    sha256: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

class SignatureEvent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    actor_role: str  # system|advisor|customer|admin
    event: str  # created|fields_saved|signed|uploaded_scan|completed|assembly_failed
    meta_json: str = "{}"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    at: datetime = ORMField(default_factory=datetime.utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
