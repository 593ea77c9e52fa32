"""
Internal router - health checks and metrics.
"""
from datetime import datetime, timezone
from typing import Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from portal_proxy.state import ProxyState, get_state

router = APIRouter(tags=["internal"])


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(examples=["ok"])
    timestamp: str = Field(examples=["2026-01-01T12:00:00+00:00"], description="Current time, ISO 8601 UTC")
    version: str = Field(examples=["1.0.0"])


class UpstreamStatsResponse(BaseModel):
    """Statistics for a single upstream."""
    request_count: int = Field(examples=[100], description="Total number of requests")
    error_count: int = Field(examples=[5], description="Number of failed requests")
    error_rate_percent: float = Field(examples=[5.0], description="Percentage of failed requests")
    relayed_bytes: int = Field(examples=[20480], description="Total bytes relayed back to clients")
    avg_response_time_ms: float = Field(examples=[45.23], description="Average time to upstream response headers")


class ErrorEventResponse(BaseModel):
    """A recorded proxy failure."""
    upstream: str
    method: str
    path: str
    reason: str
    phase: str = Field(description="Exchange phase in which the failure happened")
    timestamp: str


class StatsResponse(BaseModel):
    upstreams: Dict[str, UpstreamStatsResponse]
    errors: List[ErrorEventResponse]


@router.get("/health", response_model=HealthResponse)
async def health(state: ProxyState = Depends(get_state)) -> HealthResponse:
    """Liveness check; never depends on an upstream."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=state.config.static_version
    )


async def stats(state: ProxyState = Depends(get_state)) -> StatsResponse:
    """
    Get statistics for all upstreams since server start.

    Returns per-upstream counters keyed by upstream and the most recent proxy
    error events, oldest first.
    """
    return StatsResponse(
        upstreams=await state.stats.get_all_stats(),
        errors=await state.stats.recent_errors()
    )


router.add_api_route("/stats", stats, methods=["GET"], response_model=StatsResponse)
