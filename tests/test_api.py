"""Tests for the framescan HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from conftest import make_variant
from fastapi import FastAPI, status
from PIL import Image

from framescan.config import get_settings
from framescan.main import create_app
from framescan.ml.image_classifier import ImageClassifier
from framescan.ml.inference import InferencePool
from framescan.ml.ranking import ClassificationResult


def _init_app_state(app: FastAPI, model_file: Path, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    app.state.settings = settings
    classifier = ImageClassifier(model_file, make_variant(), settings)
    app.state.inference_pool = InferencePool(classifier, settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png_upload(size: tuple[int, int] = (32, 24)) -> dict[str, tuple[str, io.BytesIO, str]]:
    out = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(out, format="PNG")
    out.seek(0)
    return {"file": ("frame.png", out, "image/png")}


@pytest.fixture()
def app(model_file: Path, session_cls: MagicMock) -> FastAPI:
    """Create a fresh app instance backed by a mocked ONNX session."""
    application = create_app()
    _init_app_state(application, model_file)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["classifier"] == "ready"
        assert data["backend"] == {"delegate": "none", "thread_count": 1}
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_reports_configured_backend(self, model_file: Path, session_cls: MagicMock) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, model_file, FRAMESCAN_DEVICE="cuda", FRAMESCAN_NUM_THREADS="2")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["backend"] == {"delegate": "gpu", "thread_count": 2}


class TestClassifyImageEndpoint:
    async def test_classify_image_returns_tags(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify-image", files=_png_upload())
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert [tag["label"] for tag in data["tags"]] == ["cat", "dog"]
        assert data["tags"][0]["confidence"] == pytest.approx(0.9)
        assert data["inference_ms"] >= 0.0

    async def test_inference_ms_comes_from_the_request(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        pool: InferencePool = app.state.inference_pool

        async def classify(image: object) -> tuple[list[ClassificationResult], float]:
            pool.classifier._last_inference_ms = 999.0  # another request finished meanwhile
            return [ClassificationResult("cat", 0.9)], 12.5

        with patch.object(pool, "classify", side_effect=classify):
            response = await client.post("/api/v1/classify-image", files=_png_upload())
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["inference_ms"] == pytest.approx(12.5)

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        fake_image = io.BytesIO(b"fake image data")
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", fake_image, "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "cannot decode" in response.json()["detail"].lower()

    async def test_inference_failure_returns_500(self, client: httpx.AsyncClient, fake_session: MagicMock) -> None:
        fake_session.run.side_effect = RuntimeError("backend fault")
        response = await client.post("/api/v1/classify-image", files=_png_upload())
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert "backend fault" in response.json()["detail"]

    async def test_closed_classifier_returns_503(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        app.state.inference_pool.classifier.close()
        response = await client.post("/api/v1/classify-image", files=_png_upload())
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_oversized_upload_returns_413(self, model_file: Path, session_cls: MagicMock) -> None:
        app = create_app()
        _init_app_state(app, model_file, FRAMESCAN_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/classify-image", files=_png_upload())
            assert response.status_code == 413


class TestBackendEndpoint:
    async def test_get_backend(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/backend")
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"delegate": "none", "thread_count": 1}

    async def test_switch_to_gpu(self, client: httpx.AsyncClient, session_cls: MagicMock) -> None:
        response = await client.put("/api/v1/backend", json={"delegate": "gpu", "thread_count": 2})
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"delegate": "gpu", "thread_count": 2}
        assert session_cls.call_count == 2

    async def test_unavailable_backend_returns_409(
        self, client: httpx.AsyncClient, available_providers: MagicMock
    ) -> None:
        available_providers.return_value = ["CPUExecutionProvider"]
        response = await client.put("/api/v1/backend", json={"delegate": "gpu", "thread_count": 1})
        assert response.status_code == status.HTTP_409_CONFLICT

        current = await client.get("/api/v1/backend")
        assert current.json() == {"delegate": "none", "thread_count": 1}

    async def test_invalid_body_returns_422(self, client: httpx.AsyncClient) -> None:
        response = await client.put("/api/v1/backend", json={"delegate": "tpu", "thread_count": 0})
        assert response.status_code == 422


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, model_file: Path, session_cls: MagicMock) -> None:
        app = create_app()
        _init_app_state(app, model_file, FRAMESCAN_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, model_file: Path, session_cls: MagicMock) -> None:
        app = create_app()
        _init_app_state(app, model_file, FRAMESCAN_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, model_file: Path, session_cls: MagicMock) -> None:
        app = create_app()
        _init_app_state(app, model_file, FRAMESCAN_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
