"""Environment-based configuration for LabelScope."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LABELSCOPE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LABELSCOPE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8090

    # ONNX Runtime
    device: Literal["cpu", "cuda", "openvino"] = "cpu"
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Decode/inference worker threads
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)
    max_image_pixels: int = Field(default=16_777_216, ge=1)

    # Model lifecycle
    models_dir: str = "models"
    model_load_max_attempts: int = Field(default=3, ge=1)
    model_load_retry_delay: float = Field(default=2.0, ge=0.0)

    # Classification
    top_k: int = Field(default=5, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
