from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from server.src.core.errors import EnrichmentFailure
from server.src.core.logging import get_logger

from ..config import Settings
from ..schemas import Geolocation

logger = get_logger(__name__)


async def _get_json(client: httpx.AsyncClient, service: str, url: str, timeout: float) -> Any:
    try:
        response = await client.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise EnrichmentFailure(service, f"HTTP status error: {exc.response.status_code}") from exc
    except httpx.InvalidURL as exc:
        raise EnrichmentFailure(service, f"invalid URL: {exc}") from exc
    except httpx.HTTPError as exc:
        raise EnrichmentFailure(service, f"HTTP error: {exc!r}") from exc
    try:
        return response.json()
    except ValueError as exc:
        raise EnrichmentFailure(service, "invalid JSON") from exc


class CreditsService:
    """Bulk lookup of earned credits for every pod, in a single request."""

    name = "credits"

    def __init__(self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._owns_client = client is None

    async def fetch_credits(self) -> Dict[str, int]:
        payload = await _get_json(
            self._client, self.name, self._settings.credits_url, self._settings.credits_timeout_seconds
        )
        entries = payload.get("pods_credits") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise EnrichmentFailure(self.name, "response has no pods_credits list")

        credits: Dict[str, int] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            pod_id = entry.get("pod_id")
            value = entry.get("credits")
            if not isinstance(pod_id, str) or isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            credits[pod_id] = int(value)
        return credits

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class GeolocationService:
    """Per-IP lookup against ip-api.com style endpoints.

    Returns None when the service answers but has no data for the address
    (`status != "success"`); raises EnrichmentFailure when it cannot be
    reached or the payload is unusable.
    """

    name = "geolocation"

    def __init__(self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._owns_client = client is None

    async def lookup(self, ip: str) -> Optional[Geolocation]:
        url = self._settings.geolocation_url.format(ip=ip)
        payload = await _get_json(self._client, self.name, url, self._settings.geolocation_timeout_seconds)
        if not isinstance(payload, dict):
            raise EnrichmentFailure(self.name, f"unexpected payload for {ip}")
        if payload.get("status") != "success":
            return None
        try:
            return Geolocation(
                city=payload["city"],
                country=payload["country"],
                country_code=payload["countryCode"],
                latitude=payload["lat"],
                longitude=payload["lon"],
                isp=payload.get("isp"),
            )
        except (KeyError, ValueError) as exc:
            raise EnrichmentFailure(self.name, f"malformed payload for {ip}: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
