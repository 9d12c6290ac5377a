"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from prefrank.api.middleware import verify_api_key
from prefrank.api.schemas import (
    EmbeddingResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictProbaRequest,
    PredictProbaResponse,
    ThumbnailResponse,
    TrainRequest,
    TrainResponse,
)
from prefrank.ml.model_manager import MODEL_REGISTRY
from prefrank.ml.preprocessing import create_thumbnail

if TYPE_CHECKING:
    from prefrank.config import Settings
    from prefrank.ml.forest_worker import ForestWorker
    from prefrank.ml.image_embedder import OnnxImageEmbedder
    from prefrank.ml.inference import InferencePool
    from prefrank.ml.model_manager import ModelManager

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_BUSY_RESPONSE = {status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_forest_worker(request: Request) -> ForestWorker:
    worker: ForestWorker = request.app.state.forest_worker
    return worker


def _get_embedder(request: Request) -> OnnxImageEmbedder:
    embedder: OnnxImageEmbedder = request.app.state.embedder
    return embedder


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    limit = _get_settings(request).max_file_size
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {limit} byte limit",
        )
    return data


@router.post(
    "/forest/train",
    response_model=TrainResponse,
    responses={status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse}, **_BUSY_RESPONSE},
    summary="Train a new random forest",
)
async def train_forest(request: Request, body: TrainRequest) -> TrainResponse:
    """Train a forest on labeled embeddings and return its version.

    An empty training set keeps the current forest and returns its version.
    """
    pool = _get_inference_pool(request)
    worker = _get_forest_worker(request)
    try:
        version = await pool.run(worker.train, body.training_set, body.predictions)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return TrainResponse(version=version)


@router.post(
    "/forest/predict-proba",
    response_model=PredictProbaResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    },
    summary="Class probability under the current forest",
)
async def predict_proba(request: Request, body: PredictProbaRequest) -> PredictProbaResponse:
    """Return the probability of ``classLabel`` for a feature vector."""
    worker = _get_forest_worker(request)
    return PredictProbaResponse(probability=worker.predict_proba(body.features, body.class_label))


@router.post(
    "/embed",
    response_model=EmbeddingResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        **_BUSY_RESPONSE,
    },
    summary="Compute the embedding of an image",
)
async def embed_image(request: Request, file: UploadFile) -> EmbeddingResponse:
    """Embed an uploaded image with the configured model."""
    data = await _read_upload(request, file)
    embedder = _get_embedder(request)
    try:
        vector = await _get_inference_pool(request).run(embedder.embed_bytes, data)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return EmbeddingResponse(embedding=vector.tolist(), dimension=int(vector.size))


@router.post(
    "/thumbnail",
    response_model=ThumbnailResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        **_BUSY_RESPONSE,
    },
    summary="Create a JPEG thumbnail",
)
async def thumbnail(
    request: Request,
    file: UploadFile,
    max_side: Annotated[int | None, Query(ge=1, le=8192)] = None,
) -> ThumbnailResponse:
    """Scale an uploaded image so its longer side is ``max_side`` pixels."""
    data = await _read_upload(request, file)
    side = max_side or _get_settings(request).thumbnail_max_side
    try:
        data_url = await _get_inference_pool(request).run(create_thumbnail, data, side)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return ThumbnailResponse(data_url=data_url)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    worker = _get_forest_worker(request)
    manager: ModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        forest_trained=worker.is_trained,
        forest_version=worker.version,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available embedding models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available embedding models, marking the configured one active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            embedding_dim=spec.embedding_dim,
            status="active" if spec.name == settings.embedding_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
