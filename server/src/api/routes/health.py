from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health", summary="Application health probe")
async def healthcheck(request: Request) -> dict[str, object]:
    """Readiness probe; also reports which cache keys are currently held."""
    cache = getattr(request.app.state, "cache", None)
    body: dict[str, object] = {"status": "ok"}
    if cache is not None:
        body["cache"] = cache.stats()
    return body
