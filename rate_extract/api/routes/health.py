"""Health-check routes (liveness, readiness, metrics)."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError

from fastapi import APIRouter
from fastapi.responses import Response

from rate_extract.core.config import get_settings, get_version
from rate_extract.core.metrics import generate_metrics
from rate_extract.schemas import CeleryHealthResponse, HealthResponse
from rate_extract.services.schema_registry import get_schema_registry

router = APIRouter(tags=["health"])

_version = get_version()


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Liveness probe: OK when the web process is up and the schema loaded."""
    return HealthResponse(
        status="ok",
        version=_version,
        store_backend=get_settings().STORE_BACKEND,
        schema_version=get_schema_registry().version,
    )


@router.get(
    "/health/celery",
    response_model=CeleryHealthResponse,
)
def celery_health_check() -> CeleryHealthResponse:
    """Readiness probe: checks Celery worker availability.

    Uses a thread-pool with a 5-second timeout to avoid
    hanging when the broker or workers are unreachable.
    """
    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            workers = pool.submit(_inspect_workers).result(timeout=5)

        if not workers:
            return CeleryHealthResponse(
                status="unhealthy",
                message="No Celery workers available",
                workers=[],
            )

        return CeleryHealthResponse(
            status="healthy",
            message=f"{len(workers)} worker(s) online",
            workers=workers,
        )
    except TimeoutError:
        return CeleryHealthResponse(
            status="degraded",
            message="Celery inspect timed out; workers may be busy",
            workers=[],
        )
    except Exception as exc:
        return CeleryHealthResponse(
            status="unhealthy",
            message=f"Error connecting to Celery: {exc}",
            workers=[],
        )


def _inspect_workers() -> list[dict[str, object]]:
    """Online workers with the number of extraction jobs each is running."""
    from rate_extract.workers.celery_app import celery_app

    inspect = celery_app.control.inspect(timeout=3)
    stats = inspect.stats()
    active = inspect.active()

    if stats is None:
        return []

    return [
        {
            "name": name,
            "status": "online",
            "active_tasks": len(active.get(name, [])) if active else 0,
        }
        for name in stats
    ]


@router.get("/metrics", tags=["observability"])
def prometheus_metrics() -> Response:
    """Job counters in Prometheus exposition format."""
    return Response(
        content=generate_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
