from __future__ import annotations

import asyncio
from typing import Any, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from server.src.core.errors import RpcError, TransportError
from server.src.core.logging import get_logger

from ..config import EndpointDefinition, Settings
from ..schemas import NodeRecord
from .rpc_client import build_request, post_rpc

logger = get_logger(__name__)

POLL_METHOD = "get-pods-with-stats"


def normalize_pod(raw: Any) -> NodeRecord:
    """Map one raw `get-pods-with-stats` pod onto a NodeRecord.

    Raises ValueError (or pydantic's ValidationError) when required fields
    are missing or have the wrong type.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"pod entry is {type(raw).__name__}, expected object")
    return NodeRecord(
        address=raw["address"],
        public_key=raw["pubkey"],
        version=raw["version"],
        last_seen_at=raw["last_seen_timestamp"],
        rpc_port=raw["rpc_port"],
        is_public=raw["is_public"],
        uptime_seconds=raw["uptime"],
        storage_committed_bytes=raw["storage_committed"],
        storage_used_bytes=raw["storage_used"],
        storage_usage_percent=raw["storage_usage_percent"],
        # Only endpoints that answered produce records.
        is_online=True,
    )


class NodePoller:
    """Best-effort fan-out of `get-pods-with-stats` across the fleet.

    A failing endpoint contributes zero records; it never fails the poll.
    Uses `poll_timeout_seconds` and never retries.
    """

    def __init__(self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None

    async def poll_all(self, endpoints: Optional[Iterable[EndpointDefinition]] = None) -> List[NodeRecord]:
        targets = list(endpoints) if endpoints is not None else self._configured_endpoints()
        if not targets:
            logger.debug("Poll skipped: no endpoints configured")
            return []

        results = await asyncio.gather(*(self.poll_endpoint(endpoint) for endpoint in targets))

        records: List[NodeRecord] = []
        for endpoint, endpoint_records in zip(targets, results):
            logger.debug("Endpoint %s contributed %d record(s)", endpoint, len(endpoint_records))
            records.extend(endpoint_records)
        return records

    async def poll_endpoint(self, endpoint: EndpointDefinition) -> List[NodeRecord]:
        client = self._ensure_client()
        request = build_request(POLL_METHOD, request_id=1)
        try:
            result = await post_rpc(
                client, endpoint.rpc_url, request, timeout=self._settings.poll_timeout_seconds
            )
        except RpcError as exc:
            logger.warning("RPC error from %s: %s", endpoint, exc)
            return []
        except TransportError as exc:
            logger.warning("Failed to fetch from %s: %s", endpoint, exc.message)
            return []

        pods = result.get("pods") if isinstance(result, dict) else None
        if not isinstance(pods, list):
            logger.warning("Endpoint %s returned no pods list; ignoring response", endpoint)
            return []

        records: List[NodeRecord] = []
        for raw in pods:
            try:
                records.append(normalize_pod(raw))
            except (KeyError, ValueError, ValidationError) as exc:
                logger.debug("Skipping malformed pod from %s: %s", endpoint, exc)
        return records

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _configured_endpoints(self) -> List[EndpointDefinition]:
        try:
            return self._settings.parsed_endpoints
        except ValueError as exc:
            logger.error("Unable to parse fleet endpoint configuration: %s", exc)
            return []

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.poll_timeout_seconds)
        return self._client
