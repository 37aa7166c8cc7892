"""Exception handlers translating pipeline failures into HTTP responses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import Request, status
from fastapi.responses import JSONResponse

from reshapex.pipeline.errors import (
    ForbiddenSource,
    InvalidOptions,
    ProcessFailure,
    SourceFetchFailure,
    TransformError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[TransformError], int]] = [
    (ForbiddenSource, status.HTTP_403_FORBIDDEN),
    (InvalidOptions, status.HTTP_400_BAD_REQUEST),
    (SourceFetchFailure, status.HTTP_502_BAD_GATEWAY),
    (ProcessFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: TransformError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def transform_error_handler(request: Request, exc: TransformError) -> JSONResponse:
    """Log a failed transformation and return its message."""
    status_code = status_for(exc)
    if isinstance(exc, ProcessFailure) and exc.stderr:
        logger.error("Transformation failed for %s: %s\n%s", request.url.path, exc, exc.stderr.strip())
    elif status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Transformation failed for %s: %s", request.url.path, exc)
    else:
        logger.warning("Transformation rejected for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def pool_timeout_handler(request: Request, exc: TimeoutError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Server busy, no transformation slot available"},
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the pipeline exception handlers."""
    app.add_exception_handler(TransformError, transform_error_handler)
    app.add_exception_handler(TimeoutError, pool_timeout_handler)
