from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ...core.errors import PipelineError
from ...core.logging import get_logger
from ...schemas import ErrorEnvelope, StatsEnvelope
from ...services.rpc_client import SeedRpcClient

router = APIRouter(prefix="/api/stats", tags=["stats"])
logger = get_logger(__name__)


def get_seed_client(request: Request) -> SeedRpcClient:
    client = getattr(request.app.state, "seed_client", None)
    if isinstance(client, SeedRpcClient):
        return client
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Seed client not running")


@router.get(
    "/{address}",
    response_model=StatsEnvelope,
    responses={500: {"model": ErrorEnvelope}, 502: {"model": ErrorEnvelope}},
)
async def node_stats(address: str, seed_client: SeedRpcClient = Depends(get_seed_client)):
    """Ask the seed nodes for one node's live stats.

    Unlike the fleet view this path is not best-effort: once every retry and
    failover is spent, the last upstream error is reported as a 502.
    """
    address = address.strip()
    if not address:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorEnvelope(error="Address parameter is required").model_dump(),
        )

    try:
        stats = await seed_client.get_stats(address)
    except PipelineError as exc:
        logger.warning("Seed stats lookup for %s failed: %s", address, exc)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=ErrorEnvelope(error=str(exc)).model_dump(),
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error fetching stats for %s", address)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorEnvelope(error=str(exc) or "Failed to fetch node stats").model_dump(),
        )

    return StatsEnvelope(data=stats.model_dump(), timestamp=datetime.now(timezone.utc))
