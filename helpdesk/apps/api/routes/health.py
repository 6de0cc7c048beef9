from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from helpdesk.services.telemetry import counters_snapshot, external_call_stats, stream_duration_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


class StatsResponse(BaseModel):
    counters: dict[str, int]
    stream_duration_ms: dict[str, float | None]
    external_calls: dict[str, dict[str, float | int | None]]


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/health/stats", response_model=StatsResponse)
async def stats(window_s: int = 300) -> StatsResponse:
    # In-process counters only; each worker reports its own view.
    return StatsResponse(
        counters=counters_snapshot(),
        stream_duration_ms=stream_duration_stats(),
        external_calls=external_call_stats(window_s),
    )
