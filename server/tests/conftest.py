from __future__ import annotations

from typing import List

import pytest

from server.src.config import Settings


class FakeClock:
    """Millisecond clock the tests move forward by hand."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep developer env vars and .env files out of the Settings under test."""
    for name in (
        "PNODEWATCH_KNOWN_ENDPOINTS",
        "PNODEWATCH_SEED_ENDPOINTS",
        "PNODEWATCH_LOG_OVERRIDES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setitem(Settings.model_config, "env_file", None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        known_endpoints=["10.0.0.1:6000", "10.0.0.2:6000"],
        seed_endpoints=["http://seed-a/rpc", "http://seed-b/rpc", "http://seed-c/rpc"],
        credits_url="http://credits.test/api/pods-credits",
        geolocation_url="http://geo.test/json/{ip}",
    )
