"""Inference engine handle: one ONNX Runtime session bound to one backend."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import numpy as np
from onnxruntime import InferenceSession, get_available_providers
from onnxruntime.capi.onnxruntime_pybind11_state import InvalidGraph, InvalidProtobuf, NoSuchFile

from framescan.errors import EngineInitError, InferenceError, ModelLoadError
from framescan.ml.backend import build_providers, build_session_options

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from framescan.ml.backend import BackendConfiguration, Delegate
    from framescan.ml.model_store import ModelArtifact

logger = logging.getLogger(__name__)


class InferenceEngineHandle:
    """Owns a compiled execution graph for a (model, backend) pair.

    Building a handle parses and optimizes the whole model, so it happens at
    classifier construction and on backend changes only, never per frame.
    """

    def __init__(
        self,
        artifact: ModelArtifact,
        configuration: BackendConfiguration,
        delegate: Delegate | None = None,
    ) -> None:
        self._configuration = configuration
        self._lock = threading.Lock()

        providers = build_providers(delegate)
        if delegate is not None and delegate.provider not in get_available_providers():
            raise EngineInitError(
                f"{delegate.provider} is not available in this onnxruntime build",
                providers=providers,
            )

        try:
            session = InferenceSession(
                artifact.to_bytes(),
                sess_options=build_session_options(configuration),
                providers=providers,
            )
        except (InvalidProtobuf, InvalidGraph, NoSuchFile) as exc:
            raise ModelLoadError(f"Model is not a valid ONNX graph: {exc}", resource=artifact.resource) from exc
        except Exception as exc:
            raise EngineInitError(f"Failed to create inference session: {exc}", providers=providers) from exc

        self._session: InferenceSession | None = session
        self._input_name = session.get_inputs()[0].name
        self._output_name = session.get_outputs()[0].name
        logger.info(
            "Created inference session (threads=%d, delegate=%s, providers=%s)",
            configuration.thread_count,
            configuration.delegate,
            session.get_providers(),
        )

    @property
    def configuration(self) -> BackendConfiguration:
        return self._configuration

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._session is None

    def run(self, input_tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        """Run the model on ``input_tensor`` and return the first output, flattened.

        Raises:
            InferenceError: If the handle is closed or the engine rejects the input.
        """
        with self._lock:
            session = self._session
        if session is None:
            raise InferenceError("Inference engine handle is closed")

        try:
            outputs = session.run([self._output_name], {self._input_name: input_tensor})
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}") from exc
        return np.asarray(outputs[0]).reshape(-1)

    def close(self) -> bool:
        """Drop the session. Returns ``False`` on an already-closed handle.

        The delegate is not touched: it belongs to the classifier and can outlive
        this handle across thread-count rebuilds.
        """
        with self._lock:
            if self._session is None:
                return False
            self._session = None
        logger.info("Closed inference session (delegate=%s)", self._configuration.delegate)
        return True
