"""Environment-based configuration for framescan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FRAMESCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FRAMESCAN_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model artifact
    model: str = "classifier.onnx"
    models_dir: str = "models"
    model_repo_id: str | None = None
    labels_path: str | None = None

    # Input tensor
    input_width: int = Field(default=224, ge=1)
    input_height: int = Field(default=224, ge=1)
    pixel_encoding: Literal["float", "quantized"] = "float"
    pixel_mean: float = 127.5
    pixel_std: float = Field(default=127.5, gt=0)

    # Result ranking
    output_kind: Literal["probabilities", "logits"] = "probabilities"
    top_k: int = Field(default=3, ge=1)

    # Execution backend
    device: Literal["cpu", "cuda", "accelerator"] = "cpu"
    num_threads: int = Field(default=1, ge=1)
    accelerator_provider: str = "OpenVINOExecutionProvider"
    accelerator_device: str = "NPU"
    gpu_device_id: int = Field(default=0, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
