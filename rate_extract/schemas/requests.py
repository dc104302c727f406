"""Request models for extraction endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel

# Upper bound on caller-supplied callback headers.
_MAX_CALLBACK_HEADERS: int = 20


class StartExtractionRequest(BaseModel):
    """Optional body of ``POST /contracts/{id}/extract``.

    Extraction needs nothing beyond the contract ID in the path;
    the body only carries an optional completion callback.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    callback_url: HttpUrl | None = Field(
        default=None,
        description=(
            "Webhook URL: when the job reaches a terminal state the "
            "worker POSTs the final job document here."
        ),
    )
    callback_headers: dict[str, str] | None = Field(
        default=None,
        description=(
            "Optional HTTP headers to include in the webhook "
            'request (e.g. ``{"Authorization": "Bearer <token>"}``).'
        ),
    )

    @field_validator("callback_headers")
    @classmethod
    def _limit_headers(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        if v is not None and len(v) > _MAX_CALLBACK_HEADERS:
            raise ValueError(
                f"At most {_MAX_CALLBACK_HEADERS} callback headers are allowed"
            )
        return v
