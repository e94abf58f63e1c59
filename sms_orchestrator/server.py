"""FastAPI server for the SMS orchestrator.

Run with:
    uvicorn sms_orchestrator.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from sms_orchestrator.api.routes import router
from sms_orchestrator.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from sms_orchestrator.runtime import build_runtime
from sms_orchestrator.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the runtime (store, queue, turn graph, clients) once per process."""
    logger.info("Building runtime…")
    application.state.runtime = build_runtime()
    logger.info("Runtime ready.")
    yield
    application.state.runtime.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="SMS Orchestrator",
    description=(
        "Inbound SMS intake, per-conversation turn processing and "
        "scheduled follow-up delivery."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (admin dashboard) ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "SMS Orchestrator",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting SMS orchestrator on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "sms_orchestrator.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
    )
