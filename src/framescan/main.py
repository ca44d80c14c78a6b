"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from framescan.api.routes import router
from framescan.config import get_settings
from framescan.ml.image_classifier import ImageClassifier
from framescan.ml.inference import InferencePool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the classifier on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting framescan (model=%s, device=%s, threads=%s, input=%dx%d)",
        settings.model,
        settings.device,
        settings.num_threads,
        settings.input_width,
        settings.input_height,
    )

    classifier = ImageClassifier.from_settings(settings)
    inference_pool = InferencePool(classifier, settings)
    app.state.inference_pool = inference_pool

    logger.info("framescan ready")
    yield

    logger.info("Shutting down framescan")
    inference_pool.shutdown()
    logger.info("framescan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="framescan",
        description="Single-frame image classification on ONNX Runtime",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
