"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from framescan.api.middleware import get_settings_from_request, read_upload, verify_api_key
from framescan.api.schemas import (
    BackendConfig,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
)
from framescan.errors import EngineInitError, InferenceError, NotInitializedError
from framescan.ml.backend import BackendConfiguration
from framescan.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from framescan.ml.inference import InferencePool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _backend_config(configuration: BackendConfiguration) -> BackendConfig:
    return BackendConfig(delegate=configuration.delegate, thread_count=configuration.thread_count)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = get_settings_from_request(request)
    pool = _get_inference_pool(request)

    data = await read_upload(file, settings)
    try:
        image = decode_image(data, settings.max_image_pixels)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        results, inference_ms = await pool.classify(image)
    except TimeoutError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Inference queue full") from exc
    except NotInitializedError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except InferenceError as exc:
        logger.error("Classification of %s failed: %s", file.filename, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return ClassifyImageResponse(
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
        inference_ms=inference_ms,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    classifier = pool.classifier
    return HealthResponse(
        status="ok",
        classifier=str(classifier.state),
        backend=_backend_config(classifier.configuration),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/backend",
    response_model=BackendConfig,
    summary="Current execution backend",
)
async def get_backend(request: Request) -> BackendConfig:
    return _backend_config(_get_inference_pool(request).classifier.configuration)


@router.put(
    "/backend",
    response_model=BackendConfig,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Switch the execution backend",
)
async def put_backend(request: Request, body: BackendConfig) -> BackendConfig:
    """Rebuild the inference engine for the requested backend.

    On failure the previous backend stays active and 409 is returned.
    """
    pool = _get_inference_pool(request)
    configuration = BackendConfiguration(thread_count=body.thread_count, delegate=body.delegate)
    try:
        await pool.run(pool.classifier.reconfigure, configuration)
    except EngineInitError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (TimeoutError, NotInitializedError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _backend_config(pool.classifier.configuration)
