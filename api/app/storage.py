
from minio import Minio
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET
import io
import re
import time

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=False
)

def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)

def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
    ensure_bucket()
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)

def get_bytes(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()

_UNSAFE_NAME = re.compile(r"[^\w.-]+")

def safe_file_name(name: str) -> str:
    return _UNSAFE_NAME.sub("_", name or "")[:160]

def request_object_key(case_id: str, request_id: int, file_name: str, prefix: str = "") -> str:
    # {case}/signature/{request}/{prefix}{millis}_{name}
    millis = int(time.time() * 1000)
    return f"{case_id}/signature/{request_id}/{prefix}{millis}_{safe_file_name(file_name)}"
