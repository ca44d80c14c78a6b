"""Model store: resolve, download and memory-map ONNX model artifacts.

Artifacts are mapped read-only so several classifiers loading the same file
share its page cache. Nothing here copies the model into process memory; the
engine handle decides when the bytes are materialized.
"""

from __future__ import annotations

import logging
import mmap
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download

from framescan.errors import ModelLoadError

if TYPE_CHECKING:
    from framescan.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelResource:
    """A model region inside a file.

    ``length=None`` means "from ``offset`` to the end of the file", which is the
    common case of a standalone ``.onnx`` file.
    """

    path: Path
    offset: int = 0
    length: int | None = None


class ModelArtifact:
    """Read-only memory-mapped model bytes, released exactly once."""

    def __init__(self, resource: ModelResource, mapping: mmap.mmap, start: int) -> None:
        self._resource = resource
        self._mapping: mmap.mmap | None = mapping
        self._start = start
        self._size = len(mapping) - start
        self._lock = threading.Lock()

    @property
    def resource(self) -> ModelResource:
        return self._resource

    @property
    def released(self) -> bool:
        with self._lock:
            return self._mapping is None

    def __len__(self) -> int:
        return self._size

    def to_bytes(self) -> bytes:
        """Materialize the model region for engines that need an owned ``bytes`` object.

        Raises:
            ModelLoadError: If the artifact has already been released.
        """
        with self._lock:
            if self._mapping is None:
                raise ModelLoadError("Model artifact has been released", resource=self._resource)
            return self._mapping[self._start :]

    def release(self) -> bool:
        """Unmap the region. Returns ``False`` if it was already released."""
        with self._lock:
            if self._mapping is None:
                return False
            self._mapping.close()
            self._mapping = None
        logger.info("Released model artifact %s", self._resource.path)
        return True


class ModelStore:
    """Resolves model identifiers to files and maps them read-only."""

    def __init__(self, settings: Settings) -> None:
        self._models_dir = Path(settings.models_dir)
        self._repo_id = settings.model_repo_id

    # -- Public API ---------------------------------------------------------

    def load(self, resource_id: str | Path | ModelResource) -> ModelArtifact:
        """Resolve ``resource_id`` and memory-map it.

        Raises:
            ModelLoadError: If the resource cannot be located, opened or mapped.
        """
        resource = self.resolve(resource_id)
        return self._map(resource)

    def resolve(self, resource_id: str | Path | ModelResource) -> ModelResource:
        """Turn a path, bare filename or ``ModelResource`` into an existing file region."""
        if isinstance(resource_id, ModelResource):
            if not resource_id.path.is_file():
                raise ModelLoadError(f"Model file not found: {resource_id.path}", resource=resource_id)
            return resource_id

        path = Path(resource_id)
        if path.is_file():
            return ModelResource(path=path)

        local = self._models_dir / path
        if local.is_file():
            return ModelResource(path=local)

        if self._repo_id is not None:
            return ModelResource(path=self._download(str(resource_id)))

        raise ModelLoadError(f"Model not found: {resource_id}", resource=resource_id)

    # -- Internal -----------------------------------------------------------

    def _download(self, filename: str) -> Path:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=self._repo_id,
                    filename=filename,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelLoadError(
                f"Failed to download {filename} from {self._repo_id}: {exc}", resource=filename
            ) from exc
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    @staticmethod
    def _map(resource: ModelResource) -> ModelArtifact:
        if resource.offset < 0:
            raise ModelLoadError(f"Negative model offset: {resource.offset}", resource=resource)

        try:
            with resource.path.open("rb") as fh:
                size = resource.path.stat().st_size
                end = size if resource.length is None else resource.offset + resource.length
                if end > size or end <= resource.offset:
                    raise ModelLoadError(
                        f"Model region [{resource.offset}, {end}) is empty or outside {resource.path} ({size} bytes)",
                        resource=resource,
                    )
                # mmap offsets must be page aligned; map from the aligned start and slice.
                aligned = resource.offset - resource.offset % mmap.ALLOCATIONGRANULARITY
                mapping = mmap.mmap(fh.fileno(), end - aligned, access=mmap.ACCESS_READ, offset=aligned)
        except OSError as exc:
            raise ModelLoadError(f"Cannot map model {resource.path}: {exc}", resource=resource) from exc

        artifact = ModelArtifact(resource, mapping, resource.offset - aligned)
        logger.info("Mapped model %s (%d bytes at offset %d)", resource.path, len(artifact), resource.offset)
        return artifact
