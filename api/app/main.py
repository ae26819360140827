
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import LOG_LEVEL
from .db import init_db
from .errors import SigningError
from .routers import documents, signatures

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Signature workflow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Page-Width", "X-Page-Height", "X-Page-Count", "X-Page-Number"],
)

@app.exception_handler(SigningError)
async def signing_error_handler(request: Request, exc: SigningError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.on_event("startup")
def on_startup():
    init_db()

app.include_router(signatures.router, prefix="/api/signatures", tags=["signatures"])
app.include_router(documents.router, prefix="/api/signatures", tags=["documents"])  # nested

@app.get("/")
def root():
    return {"ok": True, "service": "signature-api"}
