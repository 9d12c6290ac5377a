"""Pydantic request/response schemas for the prefrank API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TrainRequest(BaseModel):
    """Labeled embeddings to train a new forest on, index-for-index."""

    model_config = ConfigDict(populate_by_name=True)

    training_set: list[list[float]] = Field(alias="trainingSet", description="One feature vector per sample")
    predictions: list[Literal[0, 1]] = Field(description="Binary label per sample (1 = liked)")

    @model_validator(mode="after")
    def _check_lengths(self) -> TrainRequest:
        if len(self.training_set) != len(self.predictions):
            raise ValueError("trainingSet and predictions must have the same length")
        return self


class TrainResponse(BaseModel):
    """Identifies the forest produced by a training call."""

    version: int = Field(description="Increasing token of the trained forest (millisecond timestamp)")


class PredictProbaRequest(BaseModel):
    """Feature vector and class to score against the current forest."""

    model_config = ConfigDict(populate_by_name=True)

    features: list[float] = Field(min_length=1)
    class_label: int = Field(alias="classLabel")


class PredictProbaResponse(BaseModel):
    probability: float = Field(ge=0.0, le=1.0)


class EmbeddingResponse(BaseModel):
    """Embedding of an uploaded image."""

    embedding: list[float]
    dimension: int


class ThumbnailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data_url: str = Field(alias="dataUrl", description="JPEG thumbnail as a data: URL")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    forest_trained: bool
    forest_version: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available embedding model."""

    name: str
    embedding_dim: int
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
