"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import numpy as np
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prefrank.api.middleware import register_exception_handlers
from prefrank.api.routes import router
from prefrank.config import get_settings
from prefrank.ml.forest_worker import ForestWorker, forest_params_from_settings
from prefrank.ml.image_embedder import OnnxImageEmbedder
from prefrank.ml.inference import InferencePool
from prefrank.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting prefrank (device=%s, max_concurrent=%s, model=%s, trees=%s, max_depth=%s)",
        settings.device,
        settings.max_concurrent,
        settings.embedding_model,
        settings.num_trees,
        settings.max_depth,
    )

    inference_pool = InferencePool(settings.max_concurrent, thread_name_prefix="prefrank-inference")
    model_manager = OnnxModelManager(settings)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.embedder = OnnxImageEmbedder(model_manager, settings.embedding_model, settings.max_image_pixels)
    app.state.forest_worker = ForestWorker(
        forest_params_from_settings(settings),
        np.random.default_rng(settings.random_seed),
    )

    logger.info("prefrank ready")
    yield

    logger.info("Shutting down prefrank")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("prefrank shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="prefrank",
        description="Preference-learning image ranking: embeddings, similarity and random-forest scoring",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using PREFRANK_HOST / PREFRANK_PORT."""
    settings = get_settings()
    uvicorn.run(
        "prefrank.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
