"""
Report pipeline API - FastAPI application entry point.
"""
from __future__ import annotations

import logging
import os
import sys
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from packages.db.database import init_db


def _parse_csv_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return [value.strip() for value in raw.split(",") if value.strip()]


# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("clinreport")

app = FastAPI(
    title="Clinical Report Pipeline API",
    description="Idempotent assessment-to-report processing",
    version="0.1.0",
)

cors_allow_origins = _parse_csv_env("CORS_ALLOW_ORIGINS", ["http://localhost:3000", "http://127.0.0.1:3000"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id", "X-User-Role", "X-Request-Id"],
)


@app.middleware("http")
async def request_audit_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    if request.url.path != "/health":
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "request_audit request_id=%s method=%s path=%s status=%s duration_ms=%s user_id=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-User-Id", "anonymous"),
        )
    return response


@app.on_event("startup")
def startup():
    """Initialize database tables on startup."""
    logger.info("Initializing database...")
    init_db()


# Register routes
from apps.api.routes.processing import router as processing_router  # noqa: E402

app.include_router(processing_router)


@app.get("/health")
def health():
    return {"status": "ok", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("apps.api.main:app", host="0.0.0.0", port=8000, reload=True)
