from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ...core.logging import get_logger
from ...schemas import ErrorEnvelope, NodeRecord, PodsEnvelope, PodsPayload
from ...services.aggregator import NetworkAggregator

router = APIRouter(prefix="/api", tags=["pods"])
logger = get_logger(__name__)


def get_aggregator(request: Request) -> NetworkAggregator:
    aggregator = getattr(request.app.state, "aggregator", None)
    if isinstance(aggregator, NetworkAggregator):
        return aggregator
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Aggregator not running")


async def _respond(
    load: Callable[[], Awaitable[List[NodeRecord]]], failure: str
) -> Union[PodsEnvelope, JSONResponse]:
    try:
        pods = await load()
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s", failure)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorEnvelope(error=str(exc) or failure).model_dump(),
        )
    return PodsEnvelope(
        data=PodsPayload(pods=pods, total_count=len(pods)),
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/pods",
    response_model=PodsEnvelope,
    response_model_exclude_none=True,
    responses={500: {"model": ErrorEnvelope}},
)
async def list_pods(aggregator: NetworkAggregator = Depends(get_aggregator)):
    """Return the cached fleet view, running a cycle if the cache is cold."""
    return await _respond(aggregator.get_current_view, "Failed to fetch pNodes")


@router.post(
    "/refresh",
    response_model=PodsEnvelope,
    response_model_exclude_none=True,
    responses={500: {"model": ErrorEnvelope}},
)
async def refresh_pods(aggregator: NetworkAggregator = Depends(get_aggregator)):
    """Drop the cached view and rebuild it from the fleet."""
    return await _respond(aggregator.force_refresh, "Failed to refresh pNodes")
