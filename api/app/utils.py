
import base64, hashlib, json
from typing import Optional
from itsdangerous import URLSafeSerializer
from .config import SECRET_KEY

PNG_DATA_URI_PREFIX = "data:image/png;base64,"

def data_url_to_bytes(data_url: str) -> bytes:
    # accepts "data:image/png;base64,....." or a bare base64 payload
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    return base64.b64decode(data_url, validate=True)

def png_to_data_url(png: bytes) -> str:
    return PNG_DATA_URI_PREFIX + base64.b64encode(png).decode("ascii")

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

def make_token(payload: dict) -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="signature-link")
    return s.dumps(payload)

def read_token(token: str) -> dict:
    s = URLSafeSerializer(SECRET_KEY, salt="signature-link")
    return s.loads(token)

def client_ip(forwarded_for: Optional[str], real_ip: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
    first = (forwarded_for or "").split(",")[0].strip()
    return first or real_ip or fallback
