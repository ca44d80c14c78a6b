"""Async front for the blocking classifier.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ImageClassifier

The classifier serializes calls on its own lock; the semaphore bounds how many
requests can wait on it. Requests beyond the limit queue for up to 5s and then
fail with ``TimeoutError``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from framescan.config import Settings
    from framescan.ml.image_classifier import ImageClassifier
    from framescan.ml.ranking import ClassificationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Runs classifier calls off the event loop with bounded queueing."""

    def __init__(self, classifier: ImageClassifier, settings: Settings) -> None:
        self._classifier = classifier
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="frame-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    @property
    def classifier(self) -> ImageClassifier:
        return self._classifier

    async def classify(self, image: NDArray[np.uint8]) -> tuple[list[ClassificationResult], float]:
        """Classify one decoded frame on the worker pool.

        Returns the ranked results and the engine time of this frame in ms.
        """
        return await self.run(self._classifier.classify_frame_timed, image)

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a blocking call (inference or reconfiguration) to the pool.

        Raises:
            TimeoutError: If no slot frees up within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            logger.warning("Inference queue full; gave up after %.1fs", SEMAPHORE_TIMEOUT_SECONDS)
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of calls currently running."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of calls waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Drain the executor, then close the classifier."""
        self._executor.shutdown(wait=True)
        self._classifier.close()
