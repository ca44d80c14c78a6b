"""Exception hierarchy for the framescan classification core."""

from __future__ import annotations

from collections.abc import Sequence


class FrameScanError(Exception):
    """Base class for all classifier failures."""


class ModelLoadError(FrameScanError):
    """The model resource is missing, unreadable or cannot be mapped."""

    def __init__(self, message: str, resource: object = None) -> None:
        super().__init__(message)
        self.resource = resource


class EngineInitError(FrameScanError):
    """The inference session (or its execution provider) could not be created."""

    def __init__(self, message: str, providers: Sequence[object] = ()) -> None:
        super().__init__(message)
        self.providers = list(providers)


class NotInitializedError(FrameScanError):
    """An operation was attempted before construction finished or after close."""


class InferenceError(FrameScanError):
    """The engine rejected the input or failed while running."""
