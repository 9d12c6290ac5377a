"""Environment-based configuration for prefrank."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from PREFRANK_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PREFRANK_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Embedding model
    embedding_model: str = "clip_vit_b32_vision"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    embedding_concurrency: int = Field(default=10, ge=1)
    embedding_workers: int = Field(default=3, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)
    thumbnail_max_side: int = Field(default=1024, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Random forest
    num_trees: int = Field(default=100, ge=1)
    max_depth: int = Field(default=20, ge=1)
    min_samples_split: int = Field(default=2, ge=1)
    # None searches every feature at each split.
    num_features: int | None = Field(default=None, ge=1)
    random_seed: int | None = None


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
