from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


class Geolocation(BaseModel):
    city: str
    country: str
    country_code: str = Field(..., serialization_alias="countryCode")
    latitude: float
    longitude: float
    isp: Optional[str] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class NodeRecord(BaseModel):
    """Canonical per-node record produced by one poll cycle.

    Identity is `public_key`; `address` is whatever the reporting endpoint
    saw and may differ between endpoints. Records are frozen: enrichment
    builds new copies with `model_copy(update=...)` instead of mutating.
    """

    address: str
    public_key: str = Field(..., serialization_alias="publicKey")
    version: str
    last_seen_at: Union[int, float] = Field(..., serialization_alias="lastSeenAt", description="Seconds since epoch")
    rpc_port: int = Field(..., serialization_alias="rpcPort")
    is_public: bool = Field(..., serialization_alias="isPublic")
    uptime_seconds: Union[int, float] = Field(..., serialization_alias="uptimeSeconds")
    storage_committed_bytes: Union[int, float] = Field(..., serialization_alias="storageCommittedBytes")
    storage_used_bytes: Union[int, float] = Field(..., serialization_alias="storageUsedBytes")
    storage_usage_percent: float = Field(..., serialization_alias="storageUsagePercent")
    credits: int = 0
    geolocation: Optional[Geolocation] = None
    is_online: bool = Field(default=True, serialization_alias="isOnline")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @computed_field(alias="lastSeen")  # type: ignore[prop-decorator]
    @property
    def last_seen(self) -> str:
        return datetime.fromtimestamp(self.last_seen_at, tz=timezone.utc).isoformat()

    @property
    def host(self) -> str:
        """Host portion of `address` (bracketed IPv6, ip:port, or bare host)."""
        address = self.address.strip()
        if address.startswith("[") and "]" in address:
            return address[1:address.index("]")]
        if address.count(":") == 1:
            return address.split(":", 1)[0]
        return address


class PodsPayload(BaseModel):
    pods: List[NodeRecord]
    total_count: int


class PodsEnvelope(BaseModel):
    success: bool = True
    data: PodsPayload
    timestamp: datetime


class NodeStats(BaseModel):
    """`get-stats` result for a single node, as returned by a seed."""

    cpu_percent: float = 0.0
    ram_used: int = 0
    ram_total: int = 0
    uptime: int = 0
    packets_received: int = 0
    packets_sent: int = 0
    active_streams: int = 0
    total_bytes: int = 0
    total_pages: int = 0
    file_size: int = 0

    model_config = ConfigDict(extra="allow")


class StatsEnvelope(BaseModel):
    success: bool = True
    data: Dict[str, Any]
    timestamp: datetime


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: str
