from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from server.src.core.errors import RpcError, TransportError
from server.src.core.logging import get_logger
from server.src.core.time import epoch_ms

from ..config import Settings
from ..schemas import NodeStats

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"


def build_request(method: str, params: Optional[Sequence[Any]] = None, request_id: Optional[int] = None) -> Dict[str, Any]:
    """Build a JSON-RPC 2.0 request envelope; `params` is omitted when empty."""
    request: Dict[str, Any] = {
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "id": request_id if request_id is not None else epoch_ms(),
    }
    if params:
        request["params"] = list(params)
    return request


async def post_rpc(
    client: httpx.AsyncClient,
    url: str,
    request: Dict[str, Any],
    *,
    timeout: float,
) -> Any:
    """POST one JSON-RPC request and return its `result`.

    Raises TransportError when the endpoint cannot be reached or the body is
    not a JSON object, and RpcError when the envelope carries an error or no
    result at all.
    """
    try:
        response = await client.post(url, json=request, timeout=timeout)
        response.raise_for_status()
    except httpx.TimeoutException as exc:
        raise TransportError(url, f"timed out after {timeout}s") from exc
    except httpx.HTTPStatusError as exc:
        raise TransportError(url, f"HTTP status error: {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise TransportError(url, f"HTTP error: {exc}") from exc

    try:
        payload = response.json()
    except ValueError as exc:
        raise TransportError(url, "invalid JSON") from exc

    if not isinstance(payload, dict):
        raise TransportError(url, "response is not a JSON object")

    error = payload.get("error")
    if error:
        if isinstance(error, dict):
            raise RpcError(error.get("code"), str(error.get("message", "unknown error")), endpoint=url)
        raise RpcError(None, str(error), endpoint=url)

    result = payload.get("result")
    if result is None:
        raise RpcError(None, "No result in RPC response", endpoint=url)
    return result


class SeedRpcClient:
    """Retrying JSON-RPC caller that rotates across seed endpoints.

    Every failed attempt (transport or protocol) moves the cursor to the
    next endpoint, then backs off `base * 2**attempt` seconds unless it was
    the final attempt. The cursor belongs to this instance and only moves on
    failure, so a healthy endpoint keeps serving subsequent calls.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._cursor = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    async def call(
        self,
        method: str,
        params: Optional[Sequence[Any]] = None,
        endpoints: Optional[Sequence[str]] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        targets: List[str] = list(endpoints) if endpoints is not None else self._settings.seed_urls
        if not targets:
            raise ValueError("No RPC endpoints configured")
        attempts = max_retries if max_retries is not None else self._settings.rpc_max_retries
        if attempts < 1:
            raise ValueError("max_retries must be at least 1")

        client = self._ensure_client()
        request = build_request(method, params)
        timeout = self._settings.rpc_timeout_seconds

        for attempt in range(attempts):
            url = targets[self._cursor % len(targets)]
            try:
                return await post_rpc(client, url, request, timeout=timeout)
            except (TransportError, RpcError) as exc:
                logger.warning("RPC call %s failed (attempt %d/%d): %s", method, attempt + 1, attempts, exc)
                self._cursor += 1
                if attempt == attempts - 1:
                    raise
                await self._sleep(self._settings.rpc_backoff_base_seconds * (2 ** attempt))

        # range(attempts) is non-empty, so the loop always returns or raises
        raise AssertionError("unreachable")

    async def get_pods(self) -> Dict[str, Any]:
        result = await self.call("get-pods")
        if not isinstance(result, dict):
            raise RpcError(None, "get-pods result is not an object")
        return result

    async def get_stats(self, address: str) -> NodeStats:
        result = await self.call("get-stats", [address])
        if not isinstance(result, dict):
            raise RpcError(None, "get-stats result is not an object")
        stats = result.get("stats", result)
        return NodeStats.model_validate(stats)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.rpc_timeout_seconds, follow_redirects=True)
        return self._client
