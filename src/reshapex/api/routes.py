"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, status
from fastapi.responses import PlainTextResponse, Response

from reshapex.api.schemas import ErrorResponse, HealthResponse
from reshapex.pipeline.orchestrator import TransformRequest

if TYPE_CHECKING:
    from reshapex.config import Settings
    from reshapex.pipeline.orchestrator import TransformationOrchestrator
    from reshapex.pipeline.pool import TransformPool

router = APIRouter()
api_router = APIRouter(prefix="/api/v1")

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_orchestrator(request: Request) -> TransformationOrchestrator:
    orchestrator: TransformationOrchestrator = request.app.state.orchestrator
    return orchestrator


def _get_pool(request: Request) -> TransformPool:
    pool: TransformPool = request.app.state.transform_pool
    return pool


def _source_reference(image_src: str, request: Request) -> str:
    """Rebuild the source reference, keeping the source URL's own query string."""
    query = request.url.query
    return f"{image_src}?{query}" if query else image_src


@router.get("/", response_class=PlainTextResponse, summary="Greeting")
async def index() -> str:
    return "reshapex: on-demand image transformations"


@router.get(
    "/upload/{options}/{image_src:path}",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/*": {}}},
        **_ERROR_RESPONSES,
    },
    summary="Transform an image",
)
async def upload(options: str, image_src: str, request: Request) -> Response:
    """Transform ``image_src`` with the comma-separated ``options`` and return the image."""
    settings = _get_settings(request)
    orchestrator = _get_orchestrator(request)
    pool = _get_pool(request)

    transform_request = TransformRequest.parse(
        _source_reference(image_src, request),
        options,
        settings.default_options,
    )
    result = await pool.run(orchestrator.process, transform_request)

    headers = {"X-Cache": "HIT" if result.from_cache else "MISS"}
    if result.identity:
        headers["X-Image-Identity"] = result.identity
    return Response(content=result.content, media_type=result.content_type, headers=headers)


@api_router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_pool(request)
    orchestrator = _get_orchestrator(request)
    return HealthResponse(
        status="ok",
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        restricted_domains=settings.restricted_domains,
        mozjpeg_available=orchestrator.builder.mozjpeg_available,
        pool_size=pool.size,
        in_flight_keys=orchestrator.in_flight_keys,
    )
