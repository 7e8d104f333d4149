"""Aggregated request metrics endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from telescope_collector.services.models import TimeRange
from telescope_collector.services.telescope import Telescope
from telescope_collector.utils.serialization import to_jsonable

from .dependencies import telescope_dep
from .entries import as_utc

router = APIRouter(prefix="/api/metrics", tags=["metrics"])

_DEFAULT_WINDOW = timedelta(hours=1)


def time_range(
    start: datetime | None = Query(default=None, description="Range start; defaults to one hour before `end`."),
    end: datetime | None = Query(default=None, description="Range end; defaults to now."),
) -> TimeRange | None:
    if start is None and end is None:
        return None
    range_end = as_utc(end) or datetime.now(timezone.utc)
    range_start = as_utc(start) or range_end - _DEFAULT_WINDOW
    if range_start > range_end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must not be after end")
    return TimeRange(start=range_start, end=range_end)


@router.get("")
async def request_metrics(
    window: TimeRange | None = Depends(time_range),
    bucket_size: int | None = Query(default=None, gt=0, description="Time series granularity in milliseconds."),
    telescope: Telescope = Depends(telescope_dep),
) -> dict[str, Any]:
    return to_jsonable(telescope.get_metrics(window, bucket_size))


@router.get("/endpoints")
async def endpoint_metrics(
    limit: int = Query(default=50, ge=0, le=1000),
    telescope: Telescope = Depends(telescope_dep),
) -> list[dict[str, Any]]:
    return [to_jsonable(item) for item in telescope.get_endpoint_metrics(limit)]


@router.get("/endpoint")
async def endpoint_details(
    method: str = Query(..., min_length=1),
    path: str = Query(..., min_length=1),
    window: TimeRange | None = Depends(time_range),
    bucket_size: int | None = Query(default=None, gt=0),
    telescope: Telescope = Depends(telescope_dep),
) -> dict[str, Any]:
    details = telescope.get_endpoint_details(method, path, window, bucket_size)
    if details is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Endpoint not found")
    payload = to_jsonable(details)
    payload["status_distribution"] = details.status_distribution.as_dict()
    return payload


@router.get("/status")
async def status_distribution(
    window: TimeRange | None = Depends(time_range),
    telescope: Telescope = Depends(telescope_dep),
) -> dict[str, int]:
    return telescope.get_status_distribution(window).as_dict()


@router.post("/reset")
async def reset_metrics(telescope: Telescope = Depends(telescope_dep)) -> dict[str, str]:
    telescope.reset_metrics()
    return {"status": "reset"}


__all__ = ["router", "time_range"]
