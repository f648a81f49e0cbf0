from __future__ import annotations

import asyncio
from time import perf_counter
from typing import Dict, Iterable, List, Optional

from server.src.core.errors import EnrichmentFailure
from server.src.core.logging import get_logger

from ..config import Settings
from ..schemas import Geolocation, NodeRecord
from .batching import FixedBatchScheduler
from .cache import TTLCache
from .enrichment import CreditsService, GeolocationService
from .node_poller import NodePoller

logger = get_logger(__name__)

CACHE_KEY_PODS = "aggregated_pods"
CACHE_KEY_CREDITS = "pod_credits"


def merge_records(records: Iterable[NodeRecord]) -> List[NodeRecord]:
    """Collapse reports of the same node into the most recent one.

    Records are keyed by `public_key`; a later report replaces an earlier one
    only if its `last_seen_at` is strictly greater, so on a tie the first
    report in iteration order wins. Output keeps first-appearance order.
    """
    merged: Dict[str, NodeRecord] = {}
    for record in records:
        existing = merged.get(record.public_key)
        if existing is None or record.last_seen_at > existing.last_seen_at:
            merged[record.public_key] = record
    return list(merged.values())


class NetworkAggregator:
    """Builds the merged, enriched fleet view and keeps it behind the cache.

    `get_current_view` and `force_refresh` are the only entry points. A cycle
    never fails because one endpoint or service is down: it publishes fewer
    records or records without enrichment instead.
    """

    def __init__(
        self,
        settings: Settings,
        cache: TTLCache,
        *,
        poller: NodePoller,
        credits: CreditsService,
        geolocation: GeolocationService,
        scheduler: Optional[FixedBatchScheduler] = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._poller = poller
        self._credits = credits
        self._geolocation = geolocation
        self._scheduler = scheduler or FixedBatchScheduler(
            settings.geolocation_batch_size,
            settings.geolocation_batch_delay_seconds,
        )
        # Concurrent misses share one cycle instead of each polling the fleet.
        self._cycle_lock = asyncio.Lock()

    async def get_current_view(self) -> List[NodeRecord]:
        cached = self._cache.get(CACHE_KEY_PODS)
        if cached is not None:
            return list(cached)

        async with self._cycle_lock:
            cached = self._cache.get(CACHE_KEY_PODS)
            if cached is not None:
                return list(cached)
            return await self._run_cycle()

    async def force_refresh(self) -> List[NodeRecord]:
        self._cache.delete(CACHE_KEY_PODS)
        async with self._cycle_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> List[NodeRecord]:
        logger.info("Aggregating pods data from %d endpoint(s)", len(self._settings.known_endpoints))
        started = perf_counter()

        polled = await self._poller.poll_all()
        pods = merge_records(polled)

        credits = await self._fetch_credits()
        pods = [pod.model_copy(update={"credits": credits.get(pod.public_key, 0)}) for pod in pods]

        pods = await self._attach_geolocation(pods)

        self._cache.set(CACHE_KEY_PODS, tuple(pods), self._settings.pods_cache_ttl_ms)
        logger.info(
            "Aggregated %d unique pod(s) from %d report(s) in %.0fms",
            len(pods),
            len(polled),
            (perf_counter() - started) * 1000.0,
        )
        return pods

    async def _fetch_credits(self) -> Dict[str, int]:
        cached = self._cache.get(CACHE_KEY_CREDITS)
        if cached is not None:
            return cached

        try:
            credits = await self._credits.fetch_credits()
        except EnrichmentFailure as exc:
            logger.warning("Failed to fetch credits data, defaulting to 0: %s", exc)
            return {}

        self._cache.set(CACHE_KEY_CREDITS, credits, self._settings.credits_cache_ttl_ms)
        return credits

    async def _attach_geolocation(self, pods: List[NodeRecord]) -> List[NodeRecord]:
        if not pods:
            return pods
        locations = await self._scheduler.run(pods, self._locate)
        return [
            pod.model_copy(update={"geolocation": geo}) if geo is not None else pod
            for pod, geo in zip(pods, locations)
        ]

    async def _locate(self, pod: NodeRecord) -> Optional[Geolocation]:
        try:
            return await self._geolocation.lookup(pod.host)
        except EnrichmentFailure as exc:
            logger.warning("Failed to fetch geolocation for %s: %s", pod.address, exc)
            return None
