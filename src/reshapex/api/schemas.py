"""Pydantic response schemas for the reshapex API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    concurrent_requests: int
    queue_depth: int
    restricted_domains: bool
    mozjpeg_available: bool = Field(description="Whether the configured mozjpeg encoder is executable")
    pool_size: int
    in_flight_keys: int = Field(description="Cache keys currently held by a transformation")


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
