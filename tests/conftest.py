"""Shared fixtures: settings, a model file on disk and a mocked ONNX session."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from framescan.config import Settings
from framescan.ml.image_classifier import ClassifierVariant, ImageClassifier
from framescan.ml.preprocessing import FloatPixelEncoder
from framescan.ml.ranking import ProbabilityRanking

if TYPE_CHECKING:
    from collections.abc import Iterator

MODEL_BYTES = b"\x08\x08\x12\x04test" + bytes(range(256)) * 4

ALL_PROVIDERS = ["CUDAExecutionProvider", "OpenVINOExecutionProvider", "CPUExecutionProvider"]


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/framescan_test_models",
        "model_repo_id": None,
        "num_threads": 1,
        "input_width": 4,
        "input_height": 4,
        "top_k": 3,
        "api_key": None,
        "labels_path": None,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def make_variant(width: int = 4, height: int = 4, labels: tuple[str, ...] = ("cat", "dog")) -> ClassifierVariant:
    return ClassifierVariant(
        input_width=width,
        input_height=height,
        encoder=FloatPixelEncoder(),
        interpreter=ProbabilityRanking(labels, top_k=3),
    )


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "classifier.onnx"
    path.write_bytes(MODEL_BYTES)
    return path


@pytest.fixture()
def fake_session() -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input")]
    session.get_outputs.return_value = [SimpleNamespace(name="scores")]
    session.get_providers.return_value = ["CPUExecutionProvider"]
    session.run.return_value = [np.array([[0.9, 0.1]], dtype=np.float32)]
    return session


@pytest.fixture()
def available_providers() -> Iterator[MagicMock]:
    with patch("framescan.ml.engine.get_available_providers", return_value=list(ALL_PROVIDERS)) as mock:
        yield mock


@pytest.fixture()
def session_cls(fake_session: MagicMock, available_providers: MagicMock) -> Iterator[MagicMock]:
    with patch("framescan.ml.engine.InferenceSession", return_value=fake_session) as mock:
        yield mock


@pytest.fixture()
def classifier(model_file: Path, session_cls: MagicMock) -> Iterator[ImageClassifier]:
    clf = ImageClassifier(model_file, make_variant(), make_settings(models_dir=str(model_file.parent)))
    yield clf
    clf.close()
