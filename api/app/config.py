
import os

DATABASE_URL = os.getenv("DATABASE_URL")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "case-documents")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signatures")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# provider ids whose documents must always be signed on paper
WET_SIGNATURE_PROVIDER_IDS = {
    p.strip() for p in os.getenv("WET_SIGNATURE_PROVIDER_IDS", "").split(",") if p.strip()
}
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(25 * 1024 * 1024)))
RENDER_MAX_PIXEL_RATIO = float(os.getenv("RENDER_MAX_PIXEL_RATIO", "3"))
