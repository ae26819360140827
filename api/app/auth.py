from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from itsdangerous import BadSignature
from pydantic import BaseModel

from .config import ADMIN_ACCESS_TOKEN
from .utils import make_token, read_token

LINK_ROLES = ("advisor", "customer")


class AccessContext(BaseModel):
    role: str  # admin|advisor|customer
    case_id: Optional[str] = None
    user: Optional[str] = None

    @property
    def is_operator(self) -> bool:
        return self.role in ("admin", "advisor")


def issue_link_token(case_id: str, role: str, user: Optional[str] = None) -> str:
    if role not in LINK_ROLES:
        raise ValueError(f"cannot issue a link for role {role!r}")
    payload = {"case_id": case_id, "role": role}
    if user:
        payload["user"] = user
    return make_token(payload)


def resolve_access_context(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
) -> AccessContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and candidate == ADMIN_ACCESS_TOKEN:
        return AccessContext(role="admin", user="admin")
    try:
        data = read_token(candidate)
    except BadSignature:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")
    if not isinstance(data, dict) or data.get("role") not in LINK_ROLES or not data.get("case_id"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")
    return AccessContext(role=data["role"], case_id=str(data["case_id"]), user=data.get("user"))


def require_operator(context: AccessContext = Depends(resolve_access_context)) -> AccessContext:
    if not context.is_operator:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator access required")
    return context


def ensure_case_access(context: AccessContext, case_id: str) -> None:
    if context.role == "admin":
        return
    if context.case_id == case_id:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied for this case")
