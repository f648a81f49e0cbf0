from __future__ import annotations

import asyncio

import httpx
import pytest

from server.src.services.aggregator import CACHE_KEY_PODS, NetworkAggregator, merge_records
from server.src.services.cache import TTLCache
from server.src.services.enrichment import CreditsService, GeolocationService
from server.src.services.node_poller import NodePoller

from fakes import FakeCredits, FakeGeolocation, FakePoller, make_aggregator, record


def test_merge_keeps_most_recent_report() -> None:
    older = record("pk1", 100, address="1.1.1.1:9001")
    newer = record("pk1", 200, address="2.2.2.2:9001")

    assert merge_records([older, newer]) == [newer]
    assert merge_records([newer, older]) == [newer]


def test_merge_keeps_all_distinct_keys_in_first_seen_order() -> None:
    endpoint_a = [record("pk1", 1), record("pk2", 1)]
    endpoint_b = [record("pk3", 1), record("pk4", 1), record("pk5", 1)]

    merged = merge_records(endpoint_a + endpoint_b)

    assert [r.public_key for r in merged] == ["pk1", "pk2", "pk3", "pk4", "pk5"]


def test_merge_tie_keeps_first_seen() -> None:
    first = record("pk1", 100, address="1.1.1.1:9001")
    second = record("pk1", 100, address="2.2.2.2:9001")

    assert merge_records([first, second])[0].address == "1.1.1.1:9001"
    assert merge_records([second, first])[0].address == "2.2.2.2:9001"


@pytest.mark.asyncio
async def test_end_to_end_dedup_credits_and_failed_geolocation(settings, clock) -> None:
    """Two endpoints report pk1; credits know it; geolocation of its IP fails."""

    def pod(last_seen: int, address: str) -> dict:
        return {
            "address": address,
            "version": "0.7.1",
            "last_seen_timestamp": last_seen,
            "pubkey": "pk1",
            "rpc_port": 6000,
            "is_public": False,
            "uptime": 42,
            "storage_committed": 2048,
            "storage_used": 1024,
            "storage_usage_percent": 50.0,
        }

    requests = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        host = request.url.host
        if host == "10.0.0.1":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"pods": [pod(100, "5.5.5.5:9001")]}})
        if host == "10.0.0.2":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"pods": [pod(200, "6.6.6.6:9001")]}})
        if host == "credits.test":
            return httpx.Response(200, json={"pods_credits": [{"pod_id": "pk1", "credits": 500}]})
        if host == "geo.test":
            return httpx.Response(500, text="rate limited")
        raise AssertionError(f"unexpected request {request.url}")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        aggregator = NetworkAggregator(
            settings,
            TTLCache(clock=clock),
            poller=NodePoller(settings, client=http),
            credits=CreditsService(settings, client=http),
            geolocation=GeolocationService(settings, client=http),
        )
        view = await aggregator.get_current_view()

    assert len(view) == 1
    node = view[0]
    assert node.public_key == "pk1"
    assert node.last_seen_at == 200
    assert node.credits == 500
    assert node.geolocation is None
    assert node.is_online is True
    assert "http://geo.test/json/6.6.6.6" in requests
    assert "geolocation" not in node.model_dump(exclude_none=True)


@pytest.mark.asyncio
async def test_credits_outage_defaults_every_record_to_zero(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1), record("pk2", 1), record("pk3", 1)])
    credits = FakeCredits(fail=True)
    aggregator = make_aggregator(settings, clock, poller, credits=credits)

    view = await aggregator.get_current_view()

    assert [r.public_key for r in view] == ["pk1", "pk2", "pk3"]
    assert all(r.credits == 0 for r in view)

    # a failed credits fetch is not cached; the next cycle tries again
    await aggregator.force_refresh()
    assert credits.calls == 2


@pytest.mark.asyncio
async def test_unknown_keys_default_to_zero_credits(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1), record("pk2", 1)])
    aggregator = make_aggregator(settings, clock, poller, credits=FakeCredits({"pk2": 7}))

    view = await aggregator.get_current_view()

    assert {r.public_key: r.credits for r in view} == {"pk1": 0, "pk2": 7}


@pytest.mark.asyncio
async def test_cache_hit_skips_cycle_until_ttl_expires(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1)])
    aggregator = make_aggregator(settings, clock, poller)

    first = await aggregator.get_current_view()
    second = await aggregator.get_current_view()
    assert poller.calls == 1
    assert first == second

    clock.advance(settings.pods_cache_ttl_ms + 1)
    await aggregator.get_current_view()
    assert poller.calls == 2


@pytest.mark.asyncio
async def test_force_refresh_always_runs_a_cycle(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1)])
    aggregator = make_aggregator(settings, clock, poller)

    await aggregator.get_current_view()
    poller.records = [record("pk1", 1), record("pk9", 5)]
    refreshed = await aggregator.force_refresh()

    assert poller.calls == 2
    assert [r.public_key for r in refreshed] == ["pk1", "pk9"]
    # the refreshed view replaces the cached one
    assert [r.public_key for r in await aggregator.get_current_view()] == ["pk1", "pk9"]
    assert poller.calls == 2


@pytest.mark.asyncio
async def test_credits_cached_longer_than_pods(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1)])
    credits = FakeCredits({"pk1": 3})
    aggregator = make_aggregator(settings, clock, poller, credits=credits)

    await aggregator.get_current_view()
    clock.advance(settings.pods_cache_ttl_ms + 1)
    await aggregator.get_current_view()
    assert poller.calls == 2
    assert credits.calls == 1

    clock.advance(settings.credits_cache_ttl_ms)
    await aggregator.get_current_view()
    assert credits.calls == 2


@pytest.mark.asyncio
async def test_geolocation_runs_in_paced_batches(settings, clock, recording_sleep) -> None:
    poller = FakePoller([record(f"pk{i}", 1, address=f"10.1.0.{i}:9001") for i in range(85)])
    geolocation = FakeGeolocation(failing={"10.1.0.3"})
    aggregator = make_aggregator(settings, clock, poller, geolocation=geolocation, sleep=recording_sleep)

    view = await aggregator.get_current_view()

    assert recording_sleep.calls == [1.5, 1.5]
    assert len(geolocation.looked_up) == 85
    assert geolocation.looked_up[0] == "10.1.0.0"
    located = {r.public_key: r.geolocation for r in view}
    assert located["pk3"] is None
    assert located["pk4"].country_code == "FR"


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_cycle(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1)])
    aggregator = make_aggregator(settings, clock, poller)

    views = await asyncio.gather(*(aggregator.get_current_view() for _ in range(5)))

    assert poller.calls == 1
    assert all(len(v) == 1 for v in views)


@pytest.mark.asyncio
async def test_returned_view_does_not_alias_cache(settings, clock) -> None:
    poller = FakePoller([record("pk1", 1), record("pk2", 1)])
    aggregator = make_aggregator(settings, clock, poller)

    view = await aggregator.get_current_view()
    view.clear()

    assert len(await aggregator.get_current_view()) == 2
    assert poller.calls == 1


@pytest.mark.asyncio
async def test_empty_fleet_publishes_empty_view(settings, clock) -> None:
    poller = FakePoller([])
    geolocation = FakeGeolocation()
    aggregator = make_aggregator(settings, clock, poller, geolocation=geolocation)

    assert await aggregator.get_current_view() == []
    assert geolocation.looked_up == []
    assert aggregator._cache.has(CACHE_KEY_PODS)


@pytest.mark.asyncio
async def test_node_with_unusable_address_is_published_without_geolocation(settings, clock) -> None:
    poller = FakePoller([
        record("good", 1, address="1.2.3.4:9001"),
        record("bad", 1, address="1.2.3.\x01:9001"),
    ])
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            200,
            json={"status": "success", "country": "France", "countryCode": "FR", "city": "Paris", "lat": 48.8, "lon": 2.3},
        )
    )

    async with httpx.AsyncClient(transport=transport) as http:
        aggregator = make_aggregator(
            settings, clock, poller, geolocation=GeolocationService(settings, client=http)
        )
        view = await aggregator.get_current_view()

    by_key = {r.public_key: r for r in view}
    assert list(by_key) == ["good", "bad"]
    assert by_key["good"].geolocation is not None
    assert by_key["good"].geolocation.country_code == "FR"
    assert by_key["bad"].geolocation is None
