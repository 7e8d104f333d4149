"""Query endpoints for recorded requests, exceptions and logs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from telescope_collector.services.models import QueryOptions
from telescope_collector.services.telescope import Telescope
from telescope_collector.utils.serialization import to_jsonable

from .dependencies import telescope_dep

router = APIRouter(prefix="/api", tags=["entries"])


class PruneRequest(BaseModel):
    older_than: datetime = Field(description="Entries with an earlier timestamp are deleted.")


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def query_options(
    limit: int | None = Query(default=None, ge=0, description="Page size; capped at the configured maximum."),
    offset: int = Query(default=0, ge=0),
    before: datetime | None = Query(default=None),
    after: datetime | None = Query(default=None),
    search: str | None = Query(default=None),
    tags: str | None = Query(default=None, description="Comma-separated; entries need at least one."),
    method: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status", description="Exact code or a class like 4xx."),
    level: Literal["debug", "info", "warn", "error"] | None = Query(default=None),
    telescope: Telescope = Depends(telescope_dep),
) -> QueryOptions:
    tag_list = [tag.strip() for tag in tags.split(",") if tag.strip()] if tags else None
    return QueryOptions(
        limit=telescope.default_limit if limit is None else limit,
        offset=offset,
        before=as_utc(before),
        after=as_utc(after),
        search=search or None,
        tags=tag_list or None,
        method=method or None,
        status=status_filter or None,
        level=level,
    )


@router.get("/requests")
async def list_requests(
    options: QueryOptions = Depends(query_options), telescope: Telescope = Depends(telescope_dep)
) -> list[dict[str, Any]]:
    return [to_jsonable(entry) for entry in await telescope.get_requests(options)]


@router.get("/requests/{entry_id}")
async def get_request(entry_id: str, telescope: Telescope = Depends(telescope_dep)) -> dict[str, Any]:
    entry = await telescope.get_request(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    return to_jsonable(entry)


@router.get("/exceptions")
async def list_exceptions(
    options: QueryOptions = Depends(query_options), telescope: Telescope = Depends(telescope_dep)
) -> list[dict[str, Any]]:
    return [to_jsonable(entry) for entry in await telescope.get_exceptions(options)]


@router.get("/exceptions/{entry_id}")
async def get_exception(entry_id: str, telescope: Telescope = Depends(telescope_dep)) -> dict[str, Any]:
    entry = await telescope.get_exception(entry_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Exception not found")
    return to_jsonable(entry)


@router.get("/logs")
async def list_logs(
    options: QueryOptions = Depends(query_options), telescope: Telescope = Depends(telescope_dep)
) -> list[dict[str, Any]]:
    return [to_jsonable(entry) for entry in await telescope.get_logs(options)]


@router.get("/stats")
async def stats(telescope: Telescope = Depends(telescope_dep)) -> dict[str, Any]:
    return to_jsonable(await telescope.get_stats())


@router.post("/prune")
async def prune(payload: PruneRequest, telescope: Telescope = Depends(telescope_dep)) -> dict[str, int]:
    """Delete entries older than ``older_than`` across all streams."""

    older_than = as_utc(payload.older_than)
    assert older_than is not None
    return {"removed": await telescope.prune(older_than)}


__all__ = ["router", "query_options", "as_utc"]
