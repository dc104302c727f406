"""
FastAPI entry point.

The application exposes, under ``API_V1_STR``:

* ``POST /contracts/{id}/extract``                start an extraction job
* ``GET  /contracts/{id}/extraction-jobs``        list a contract's jobs
* ``GET  /extraction-jobs/{id}``                  poll job status / progress
* ``POST /extraction-jobs/{id}/cancel``           cancel a running job
* ``GET  /extraction-jobs/{id}/download[/{file}]`` download an artifact
* ``GET  /extraction-jobs/{id}/files``            list a job's artifacts
* ``GET  /extraction-schema``                     the active schema
* ``GET  /health``, ``/health/celery``, ``/metrics``
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rate_extract.api.deps import get_orchestrator
from rate_extract.api.routes import extraction, health
from rate_extract.core.config import get_settings, get_version
from rate_extract.core.middleware import RequestIDMiddleware
from rate_extract.logging_config import setup_logging

# ── Logging ─────────────────────────────────────────────────────────────────

settings = get_settings()
setup_logging(level=settings.LOG_LEVEL, json_format=not settings.DEBUG)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application startup / shutdown hooks."""
    logger.info("Starting %s (store=%s)", settings.APP_NAME, settings.STORE_BACKEND)
    yield
    if get_orchestrator.cache_info().currsize:
        cancelled = get_orchestrator().shutdown()
        if cancelled:
            logger.info("Cancelled %d running job(s)", len(cancelled))
    logger.info("Shutting down %s", settings.APP_NAME)


# ── App factory ─────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Multi-section rate-contract extraction API powered by "
        "FastAPI, Celery, and a hosted assistant."
    ),
    version=get_version(),
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url=f"{settings.API_V1_STR}/docs",
    redoc_url=f"{settings.API_V1_STR}/redoc",
    root_path=settings.ROOT_PATH,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)

app.include_router(health.router, prefix=settings.API_V1_STR)
app.include_router(extraction.router, prefix=settings.API_V1_STR)
