"""Pydantic request/response schemas for the framescan API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from framescan.ml.backend import DelegateKind


class ImageTag(BaseModel):
    """A single classification tag with its score."""

    label: str
    confidence: float


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    tags: list[ImageTag]
    inference_ms: float | None = Field(default=None, description="Wall-clock duration of the engine run")


class BackendConfig(BaseModel):
    """Execution backend of the classifier."""

    delegate: DelegateKind = DelegateKind.NONE
    thread_count: int = Field(default=1, ge=1)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    classifier: str = Field(description="Classifier state: 'ready' or 'closed'")
    backend: BackendConfig
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Error body returned with non-2xx responses."""

    detail: str
