from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from server.src.core.logging import get_logger

from ..api.routes import health, pods, stats
from ..config import Settings
from ..services.aggregator import NetworkAggregator
from ..services.batching import FixedBatchScheduler
from ..services.cache import TTLCache
from ..services.enrichment import CreditsService, GeolocationService
from ..services.node_poller import NodePoller
from ..services.rpc_client import SeedRpcClient

logger = get_logger(__name__)


class RequestFinishMiddleware(BaseHTTPMiddleware):
    """Emit one debug line per request on the `api.call` logger."""

    async def dispatch(self, request, call_next):
        start = time.time()
        response = await call_next(request)
        access_logger = logging.getLogger("api.call")
        if access_logger.isEnabledFor(logging.DEBUG):
            client = request.client
            client_addr = client.host if client else "-"
            full_path = request.url.path or "/"
            if request.url.query:
                full_path = f"{full_path}?{request.url.query}"
            access_logger.debug(
                "Finished %s %s %s %s in %.3fms",
                client_addr,
                request.method,
                full_path,
                response.status_code,
                (time.time() - start) * 1000.0,
            )
        return response


def build_aggregator(settings: Settings, cache: TTLCache, client: httpx.AsyncClient) -> NetworkAggregator:
    """Wire the poller, enrichment clients and batch policy around `cache`."""
    return NetworkAggregator(
        settings,
        cache,
        poller=NodePoller(settings, client=client),
        credits=CreditsService(settings, client=client),
        geolocation=GeolocationService(settings, client=client),
        scheduler=FixedBatchScheduler(
            settings.geolocation_batch_size,
            settings.geolocation_batch_delay_seconds,
        ),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Construct the FastAPI application with configured lifespan hooks."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings

        client = httpx.AsyncClient(follow_redirects=True)
        cache = TTLCache(sweep_interval_seconds=settings.cache_sweep_interval_seconds)
        await cache.start()

        app.state.cache = cache
        app.state.aggregator = build_aggregator(settings, cache, client)
        app.state.seed_client = SeedRpcClient(settings, client=client)

        logger.info(
            "Serving fleet view for %d endpoint(s) with %d seed(s)",
            len(settings.known_endpoints),
            len(settings.seed_urls),
        )
        try:
            yield
        finally:
            await cache.stop()
            await client.aclose()

    app = FastAPI(
        title="pNode Watch",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(RequestFinishMiddleware)

    # Expose settings early so request handlers can access configuration even if
    # startup lifespan hooks are bypassed (e.g. during direct testing scenarios).
    app.state.settings = settings

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health.router)
    app.include_router(pods.router)
    app.include_router(stats.router)

    return app
