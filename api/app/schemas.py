from pydantic import BaseModel
from typing import Any, Dict, List, Optional

class FieldsSave(BaseModel):
    fields: List[Dict[str, Any]]

class SignSubmit(BaseModel):
    # field key -> PNG data URI | {"strokes": [...], "width", "height", "device_pixel_ratio"} | bool | str
    values: Dict[str, Any] = {}

class AssembleRetry(BaseModel):
    password: Optional[str] = None

class PageSize(BaseModel):
    width: float
    height: float

class SourceInfo(BaseModel):
    kind: str
    page_count: int
    pages: List[PageSize]

class SignLink(BaseModel):
    role: str
    token: str
    url: str
