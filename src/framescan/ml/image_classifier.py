"""Image classifier: model lifecycle, backend selection and the inference call.

A classifier owns one mapped model, one engine handle, at most one delegate and
one input buffer. Every public operation takes the same lock, so inference
never overlaps a backend rebuild or ``close``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from framescan.errors import NotInitializedError
from framescan.ml.backend import BackendConfiguration, DelegateKind, create_delegate
from framescan.ml.engine import InferenceEngineHandle
from framescan.ml.model_store import ModelStore
from framescan.ml.preprocessing import (
    FloatPixelEncoder,
    InputTensorBuffer,
    InputTensorBuilder,
    QuantizedPixelEncoder,
)
from framescan.ml.ranking import LogitRanking, ProbabilityRanking, load_labels

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

    import numpy as np
    from numpy.typing import NDArray
    from PIL import Image

    from framescan.config import Settings
    from framescan.ml.backend import Delegate
    from framescan.ml.model_store import ModelResource
    from framescan.ml.preprocessing import PixelEncoder
    from framescan.ml.ranking import ClassificationResult, OutputInterpreter

logger = logging.getLogger(__name__)


class ClassifierState(StrEnum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class ClassifierVariant:
    """What a concrete model expects as input and how its output is read."""

    input_width: int
    input_height: int
    encoder: PixelEncoder
    interpreter: OutputInterpreter

    @classmethod
    def from_settings(cls, settings: Settings) -> ClassifierVariant:
        encoder: PixelEncoder
        if settings.pixel_encoding == "quantized":
            encoder = QuantizedPixelEncoder()
        else:
            encoder = FloatPixelEncoder(settings.pixel_mean, settings.pixel_std)

        labels = load_labels(settings.labels_path)
        ranking = LogitRanking if settings.output_kind == "logits" else ProbabilityRanking
        return cls(
            input_width=settings.input_width,
            input_height=settings.input_height,
            encoder=encoder,
            interpreter=ranking(labels, top_k=settings.top_k),
        )


class ImageClassifier:
    """Classifies single frames with an ONNX model.

    Not safe to share between processes; within a process, calls are
    serialized on an internal lock.
    """

    def __init__(
        self,
        model: str | Path | ModelResource,
        variant: ClassifierVariant,
        settings: Settings,
        *,
        configuration: BackendConfiguration | None = None,
        store: ModelStore | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._state = ClassifierState.UNINITIALIZED
        self._settings = settings
        self._variant = variant
        self._last_inference_ms: float | None = None

        # Validated before anything that needs releasing is acquired.
        self._buffer = InputTensorBuffer(variant.input_width, variant.input_height, variant.encoder.dtype)
        self._builder = InputTensorBuilder(self._buffer, variant.encoder)

        self._artifact = (store or ModelStore(settings)).load(model)
        self._delegate: Delegate | None = None
        try:
            self._configuration = configuration or BackendConfiguration.from_settings(settings)
            self._delegate = create_delegate(self._configuration.delegate, settings)
            self._engine = InferenceEngineHandle(self._artifact, self._configuration, self._delegate)
        except BaseException:
            if self._delegate is not None:
                self._delegate.close()
            self._buffer.release()
            self._artifact.release()
            raise

        self._state = ClassifierState.READY
        logger.info(
            "Created image classifier (%dx%d, %s input, %d bytes)",
            variant.input_width,
            variant.input_height,
            self._buffer.dtype,
            self._buffer.nbytes,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ImageClassifier:
        return cls(settings.model, ClassifierVariant.from_settings(settings), settings)

    def __enter__(self) -> ImageClassifier:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -- Properties ---------------------------------------------------------

    @property
    def state(self) -> ClassifierState:
        return self._state

    @property
    def configuration(self) -> BackendConfiguration:
        return self._configuration

    @property
    def input_buffer(self) -> InputTensorBuffer:
        return self._buffer

    @property
    def last_inference_ms(self) -> float | None:
        """Wall-clock duration of the most recent engine run, if any."""
        return self._last_inference_ms

    # -- Inference ----------------------------------------------------------

    def classify_frame(self, image: NDArray[np.uint8] | Image.Image) -> list[ClassificationResult]:
        """Encode ``image``, run the model and return the ranked top-K results.

        Raises:
            NotInitializedError: If the classifier is closed.
            InferenceError: If the engine fails.
            ValueError: If ``image`` is not an RGB raster.
        """
        results, _ = self.classify_frame_timed(image)
        return results

    def classify_frame_timed(
        self, image: NDArray[np.uint8] | Image.Image
    ) -> tuple[list[ClassificationResult], float]:
        """Like ``classify_frame``, also returning this call's engine time in ms.

        The duration is taken under the lock, so it belongs to this frame even
        when other callers are queued on the same classifier.
        """
        with self._lock:
            self._ensure_ready()
            self._builder.build(image)
            output, elapsed_ms = self._run()
        return self._variant.interpreter.interpret_output(output), elapsed_ms

    def run_inference(self) -> NDArray[np.generic]:
        """Run the model on the current buffer contents and return the raw scores."""
        with self._lock:
            self._ensure_ready()
            output, _ = self._run()
            return output

    def _run(self) -> tuple[NDArray[np.generic], float]:
        start = time.perf_counter()
        output = self._engine.run(self._buffer.array)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        self._last_inference_ms = elapsed_ms
        logger.debug("Inference took %.2f ms", elapsed_ms)
        return output, elapsed_ms

    # -- Backend selection --------------------------------------------------

    def use_gpu(self) -> None:
        """Attach a GPU delegate; no-op if one is already attached."""
        with self._lock:
            self._ensure_ready()
            if self._configuration.delegate is DelegateKind.GPU:
                return
            self._reconfigure(replace(self._configuration, delegate=DelegateKind.GPU))

    def use_cpu(self) -> None:
        """Drop any delegate and run on the general-purpose CPU provider."""
        with self._lock:
            self._ensure_ready()
            self._reconfigure(replace(self._configuration, delegate=DelegateKind.NONE))

    def use_accelerator(self) -> None:
        with self._lock:
            self._ensure_ready()
            self._reconfigure(replace(self._configuration, delegate=DelegateKind.ACCELERATOR))

    def set_thread_count(self, thread_count: int) -> None:
        if thread_count < 1:
            raise ValueError(f"thread_count must be >= 1, got {thread_count}")
        with self._lock:
            self._ensure_ready()
            self._reconfigure(replace(self._configuration, thread_count=thread_count))

    def reconfigure(self, configuration: BackendConfiguration) -> None:
        """Switch to ``configuration`` wholesale; no-op if nothing changes."""
        with self._lock:
            self._ensure_ready()
            if configuration == self._configuration:
                return
            self._reconfigure(configuration)

    def _reconfigure(self, configuration: BackendConfiguration) -> None:
        """Build a handle for ``configuration`` and swap it in.

        The replacement is built before the current handle is closed: if the
        requested backend cannot be created, the classifier keeps running on
        the previous one and ``EngineInitError`` propagates.
        """
        new_delegate: Delegate | None = None
        delegate = self._delegate
        if configuration.delegate is not self._configuration.delegate:
            new_delegate = create_delegate(configuration.delegate, self._settings)
            delegate = new_delegate

        try:
            engine = InferenceEngineHandle(self._artifact, configuration, delegate)
        except BaseException:
            if new_delegate is not None:
                new_delegate.close()
            logger.warning("Backend change to %s failed; keeping %s", configuration, self._configuration)
            raise

        self._engine.close()
        if delegate is not self._delegate and self._delegate is not None:
            self._delegate.close()
        self._engine = engine
        self._delegate = delegate
        self._configuration = configuration
        logger.info(
            "Rebuilt inference engine (threads=%d, delegate=%s)",
            configuration.thread_count,
            configuration.delegate,
        )

    # -- Lifecycle ----------------------------------------------------------

    def close(self) -> bool:
        """Release the engine, delegate, buffer and model mapping.

        Returns ``False`` if the classifier was already closed.
        """
        with self._lock:
            if self._state is ClassifierState.CLOSED:
                return False
            self._state = ClassifierState.CLOSED
            self._engine.close()
            if self._delegate is not None:
                self._delegate.close()
                self._delegate = None
            self._buffer.release()
            self._artifact.release()
        logger.info("Image classifier closed")
        return True

    def _ensure_ready(self) -> None:
        if self._state is not ClassifierState.READY:
            raise NotInitializedError(f"Image classifier is {self._state}")
