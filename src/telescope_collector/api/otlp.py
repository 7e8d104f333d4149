"""OTLP/HTTP ingestion endpoints (JSON encoding only)."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from telescope_collector.otlp.receiver import OtlpReceiver

from .dependencies import receiver_dep

router = APIRouter(prefix="/v1", tags=["otlp"])


async def export_request(request: Request) -> Any:
    """Parse the JSON body of an OTLP export request."""

    content_type = request.headers.get("content-type", "application/json").split(";")[0].strip().lower()
    if content_type == "application/x-protobuf":
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail="Only the OTLP JSON encoding is supported",
        )
    body = await request.body()
    if not body:
        return {}
    try:
        return json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON") from exc


@router.post("/traces")
async def export_traces(
    payload: Any = Depends(export_request), receiver: OtlpReceiver = Depends(receiver_dep)
) -> dict[str, Any]:
    return await receiver.receive_traces(payload)


@router.post("/logs")
async def export_logs(
    payload: Any = Depends(export_request), receiver: OtlpReceiver = Depends(receiver_dep)
) -> dict[str, Any]:
    return await receiver.receive_logs(payload)


@router.post("/metrics")
async def export_metrics(
    payload: Any = Depends(export_request), receiver: OtlpReceiver = Depends(receiver_dep)
) -> dict[str, Any]:
    return await receiver.receive_metrics(payload)


__all__ = ["router", "export_request"]
