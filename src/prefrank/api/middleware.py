"""Middleware: API key authentication and domain error mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from prefrank.ml.forest_worker import ForestNotTrainedError
from prefrank.ml.inference import PoolSaturatedError
from prefrank.ml.similarity import DimensionMismatchError

if TYPE_CHECKING:
    from fastapi import FastAPI

    from prefrank.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against PREFRANK_API_KEY, if one is configured."""
    settings: Settings = request.app.state.settings
    expected = settings.api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def _forest_not_trained(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


async def _dimension_mismatch(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


async def _pool_saturated(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Rejected %s %s: worker pool saturated", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "All workers are busy, retry later"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map library exceptions raised inside routes to HTTP responses."""
    app.add_exception_handler(ForestNotTrainedError, _forest_not_trained)
    app.add_exception_handler(DimensionMismatchError, _dimension_mismatch)
    app.add_exception_handler(PoolSaturatedError, _pool_saturated)
