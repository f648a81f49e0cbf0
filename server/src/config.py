from dataclasses import dataclass
from typing import List, Tuple
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RPC_PORT = 6000

# Fleet members that answer get-pods-with-stats. Adding or removing a node
# is a configuration change, there is no runtime discovery.
DEFAULT_KNOWN_ENDPOINTS = [
    f"{ip}:{DEFAULT_RPC_PORT}"
    for ip in (
        "173.212.203.145",
        "173.212.220.65",
        "161.97.97.41",
        "192.190.136.36",
        "192.190.136.37",
        "192.190.136.38",
        "192.190.136.28",
        "192.190.136.29",
        "207.244.255.1",
    )
]

DEFAULT_SEED_ENDPOINTS = [
    "http://seed1.xandeum.network:6000/rpc",
    "http://seed2.xandeum.network:6000/rpc",
]


@dataclass(frozen=True)
class EndpointDefinition:
    host: str
    port: int

    @property
    def rpc_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}/rpc"

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


class Settings(BaseSettings):
    """Application configuration sourced from environment variables or overrides."""

    api_host: str = "127.0.0.1"
    api_port: int = 8000
    api_log_level: str = "info"

    # Fleet to poll each cycle, as HOST:PORT entries. Accept either a raw
    # string (from env like "a:6000,b:6000") or a list; the validator below
    # coerces into a List[str]. Declaring the union with `str | List[str]`
    # prevents pydantic-settings from attempting JSON decoding on simple
    # comma-separated env strings.
    known_endpoints: str | List[str] = list(DEFAULT_KNOWN_ENDPOINTS)
    # Full RPC URLs used by the retrying seed client.
    seed_endpoints: str | List[str] = list(DEFAULT_SEED_ENDPOINTS)

    poll_timeout_seconds: float = 5.0
    rpc_timeout_seconds: float = 10.0
    rpc_max_retries: int = 3
    # Backoff before retry N (0-based) is base * 2**N seconds.
    rpc_backoff_base_seconds: float = 1.0

    credits_url: str = "https://podcredits.xandeum.network/api/pods-credits"
    credits_timeout_seconds: float = 10.0
    geolocation_url: str = "http://ip-api.com/json/{ip}?fields=status,country,countryCode,city,lat,lon,isp"
    geolocation_timeout_seconds: float = 3.0
    # ip-api.com allows 45 requests per minute on the free tier.
    geolocation_batch_size: int = 40
    geolocation_batch_delay_seconds: float = 1.5

    pods_cache_ttl_ms: int = 15_000
    credits_cache_ttl_ms: int = 60_000
    cache_sweep_interval_seconds: float = 60.0

    cors_allow_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    model_config = SettingsConfigDict(
        env_prefix="PNODEWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("known_endpoints", "seed_endpoints", mode="before")
    @classmethod
    def _coerce_list(cls, value):
        """Allow comma or newline separated env strings as well as JSON arrays."""
        if value in (None, ""):
            return []
        if isinstance(value, str):
            v = value.strip()
            if v.startswith("["):
                try:
                    decoded = json.loads(v)
                except ValueError:
                    decoded = None
                if isinstance(decoded, list):
                    return [str(item).strip() for item in decoded if str(item).strip()]
            cleaned = value.replace("\n", ",")
            return [item.strip() for item in cleaned.split(",") if item.strip()]
        if isinstance(value, (tuple, set, list)):
            return [str(item).strip() for item in value if str(item).strip()]
        return value

    @field_validator("rpc_max_retries", "geolocation_batch_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def parsed_endpoints(self) -> List[EndpointDefinition]:
        """Return structured endpoint definitions parsed from `known_endpoints`."""
        parsed: List[EndpointDefinition] = []
        for raw in self.known_endpoints or []:
            if not raw:
                continue
            if not self._looks_like_host_port(raw):
                raise ValueError(f"Invalid endpoint declaration '{raw}'; expected HOST:PORT")
            host, port = self._parse_host_port(raw)
            parsed.append(EndpointDefinition(host=host, port=port))
        return parsed

    @property
    def seed_urls(self) -> List[str]:
        return list(self.seed_endpoints or [])

    @staticmethod
    def _looks_like_host_port(spec: str) -> bool:
        spec = spec.strip()
        if not spec:
            return False
        # IPv6 literal: [addr]:port
        if spec.startswith("[") and "]" in spec:
            _, _, port_part = spec.partition("]:")
            return bool(port_part and port_part.isdigit())
        if ":" not in spec:
            return False
        host, port = spec.rsplit(":", 1)
        if not port.isdigit():
            return False
        if "/" in host:
            return False
        return bool(host)

    @staticmethod
    def _parse_host_port(spec: str) -> Tuple[str, int]:
        spec = spec.strip()
        if spec.startswith("[") and "]" in spec:
            host_part, _, port_part = spec.partition("]:")
            return host_part.lstrip("["), int(port_part)
        host, port = spec.rsplit(":", 1)
        return host.strip(), int(port.strip())
