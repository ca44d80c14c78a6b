"""Execution backend selection: configuration values, delegates, provider lists.

A ``BackendConfiguration`` says *where* the graph runs. ``Delegate`` objects are
the owned provider resources (GPU or accelerator) attached to it. This module
only describes backends; ``InferenceEngineHandle`` is what actually asks ONNX
Runtime for them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from onnxruntime import SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from framescan.config import Settings

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"
GPU_PROVIDER = "CUDAExecutionProvider"

Provider = str | tuple[str, dict[str, object]]


class DelegateKind(StrEnum):
    NONE = "none"
    GPU = "gpu"
    ACCELERATOR = "accelerator"


DEVICE_DELEGATES: dict[str, DelegateKind] = {
    "cpu": DelegateKind.NONE,
    "cuda": DelegateKind.GPU,
    "accelerator": DelegateKind.ACCELERATOR,
}


@dataclass(frozen=True)
class BackendConfiguration:
    """Thread count plus the delegate kind the engine should be built with."""

    thread_count: int = 1
    delegate: DelegateKind = DelegateKind.NONE

    def __post_init__(self) -> None:
        if self.thread_count < 1:
            raise ValueError(f"thread_count must be >= 1, got {self.thread_count}")

    @classmethod
    def from_settings(cls, settings: Settings) -> BackendConfiguration:
        return cls(thread_count=settings.num_threads, delegate=DEVICE_DELEGATES[settings.device])


@dataclass
class Delegate:
    """An owned execution-provider resource attached to a configuration."""

    kind: DelegateKind
    provider: str
    options: dict[str, object] = field(default_factory=dict)
    _closed: bool = field(default=False, init=False, repr=False, compare=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def as_provider(self) -> Provider:
        if self._closed:
            raise RuntimeError(f"{self.provider} delegate has been closed")
        if self.options:
            return (self.provider, dict(self.options))
        return self.provider

    def close(self) -> bool:
        """Release the delegate. Returns ``False`` if it was already released."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        logger.info("Released %s delegate (%s)", self.kind, self.provider)
        return True


def create_delegate(kind: DelegateKind, settings: Settings) -> Delegate | None:
    """Allocate the delegate for ``kind``; ``None`` for plain CPU execution."""
    if kind is DelegateKind.GPU:
        delegate = Delegate(
            kind=kind,
            provider=GPU_PROVIDER,
            options={
                "device_id": settings.gpu_device_id,
                "gpu_mem_limit": settings.gpu_mem_limit,
                "arena_extend_strategy": "kSameAsRequested",
            },
        )
    elif kind is DelegateKind.ACCELERATOR:
        options: dict[str, object] = {}
        if settings.accelerator_provider == "OpenVINOExecutionProvider":
            options["device_type"] = settings.accelerator_device
        delegate = Delegate(kind=kind, provider=settings.accelerator_provider, options=options)
    else:
        return None
    logger.info("Attached %s delegate (%s)", kind, delegate.provider)
    return delegate


def build_providers(delegate: Delegate | None) -> list[Provider]:
    """Provider list in priority order, always ending with the CPU fallback."""
    if delegate is None:
        return [CPU_PROVIDER]
    return [delegate.as_provider(), CPU_PROVIDER]


def build_session_options(configuration: BackendConfiguration) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = configuration.thread_count
    opts.inter_op_num_threads = 1
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if configuration.delegate is DelegateKind.ACCELERATOR:
        # The accelerator runtime does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
