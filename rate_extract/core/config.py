"""
Application configuration and settings.

Centralises all external configuration (env-vars / .env) and
version discovery.  Redis connectivity lives in
``rate_extract.core.redis`` and FastAPI dependency injection in
``rate_extract.api.deps``.
"""

from __future__ import annotations

import importlib.metadata
import json
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ── Package version (single source of truth from pyproject.toml) ────────


def get_version() -> str:
    """Return the installed package version.

    Falls back to ``"0.0.0-dev"`` when the package metadata
    is not available (e.g. when running from a source checkout).

    Returns:
        Semantic version string.
    """
    try:
        return importlib.metadata.version("rate-extract-api")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0-dev"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


# ── Settings ────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # General
    APP_NAME: str = "Rate Extract API"
    API_V1_STR: str = "/api/v1"
    ROOT_PATH: str = ""
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    # Redis / Celery
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_SOCKET_TIMEOUT: float = 5.0

    # Job / contract persistence backend: redis | memory
    STORE_BACKEND: str = "redis"

    # ── Hosted assistant ────────────────────────────────────────────
    ASSISTANT_BASE_URL: str = "https://prod-1-data.ke.pinecone.io/assistant/chat"
    ASSISTANT_API_KEY: str = ""
    ASSISTANT_API_VERSION: str = "2025-04"
    ASSISTANT_MODEL: str = "gemini-2.5-pro"
    DEFAULT_ASSISTANT_ID: str = ""
    ASSISTANT_MAX_RETRIES: int = 1

    # ── Section pacing ──────────────────────────────────────────────
    SECTION_TIMEOUT_SECONDS: float = 300.0
    SECTION_TIMEOUTS: dict[str, float] = {}
    SECTION_DELAY_SECONDS: float = 3.0
    SECTION_DELAY_HEAVY_SECONDS: float = 5.0
    HEAVY_TOKEN_THRESHOLD: int = 10_000

    # ── Output ──────────────────────────────────────────────────────
    EXTRACTION_OUTPUT_DIR: str = "./extraction-output"
    EXTRACTION_SCHEMA_PATH: str = ""

    # ── Worker ──────────────────────────────────────────────────────
    EXTRACTION_QUEUE: str = "extractions"
    WORKER_MAX_TASKS_PER_CHILD: int = 50
    TASK_TIME_LIMIT: int = 3600  # seconds
    TASK_SOFT_TIME_LIMIT: int = 3300  # seconds
    RESULT_EXPIRES: int = 86400  # seconds

    # ── Security / SSRF (completion callbacks) ─────────────────────
    ALLOWED_URL_DOMAINS: str = ""
    SSRF_EXEMPT_HOSTNAMES: str = ""
    WEBHOOK_SECRET: str = ""

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors(cls, v: str | list[str]) -> list[str]:
        """Accept a JSON-encoded string or a list."""
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator("SECTION_TIMEOUTS", mode="before")
    @classmethod
    def _parse_section_timeouts(
        cls,
        v: str | dict[str, float],
    ) -> dict[str, float]:
        """Accept a JSON object string (``{"BaseRates": 600}``) or a dict."""
        if isinstance(v, str):
            if not v.strip():
                return {}
            return json.loads(v)
        return v

    @field_validator("STORE_BACKEND")
    @classmethod
    def _check_store_backend(cls, v: str) -> str:
        """Only ``redis`` and ``memory`` are supported."""
        normalized = v.strip().lower()
        if normalized not in {"redis", "memory"}:
            raise ValueError(
                f"STORE_BACKEND must be 'redis' or 'memory', got '{v}'"
            )
        return normalized

    @property
    def allowed_url_domains_list(self) -> list[str]:
        """Callback hosts allowed by ``ALLOWED_URL_DOMAINS`` (empty = any)."""
        return _split_csv(self.ALLOWED_URL_DOMAINS)

    @property
    def ssrf_exempt_hostnames_list(self) -> list[str]:
        """Lower-cased hostnames that skip the private-address check."""
        return [h.lower() for h in _split_csv(self.SSRF_EXEMPT_HOSTNAMES)]

    def section_timeout(self, section: str) -> float:
        """Return the timeout (seconds) for *section*.

        Falls back to ``SECTION_TIMEOUT_SECONDS`` when no
        per-section override is configured.
        """
        return float(self.SECTION_TIMEOUTS.get(section, self.SECTION_TIMEOUT_SECONDS))

    # Derived URLs
    @property
    def REDIS_URL(self) -> str:  # noqa: N802
        """Full Redis connection URL."""
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def CELERY_BROKER_URL(self) -> str:  # noqa: N802
        """Celery broker URL (backed by Redis)."""
        return self.REDIS_URL

    @property
    def CELERY_RESULT_BACKEND(self) -> str:  # noqa: N802
        """Celery result backend URL (backed by Redis)."""
        return self.REDIS_URL


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings singleton.

    Using ``lru_cache`` ensures the .env file is read exactly
    once.  Tests call ``get_settings.cache_clear()`` after
    changing the environment.
    """
    return Settings()
