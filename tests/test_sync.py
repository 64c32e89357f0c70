from dataclasses import replace
from datetime import timedelta
import http.client
import io

import pytest

from conftest import latest_payload, make_config, quota_payload
from fxengine.core.errors import QuotaExceeded
from fxengine.services import http_client
from fxengine.services.rates.provider import ExchangeRateApiClient
from fxengine.services.rates.sync import RateSyncScheduler

HOUR = timedelta(hours=1)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def scheduler(config, client, store, sleeps):
    return RateSyncScheduler(config, client, store, sleep=sleeps.append)


def _healthy_provider(transport):
    transport.set("quota", quota_payload(1500, 1200))
    transport.set("latest/USD", latest_payload("USD", {"EUR": 0.85, "GBP": 0.73}))
    transport.set("latest/EUR", latest_payload("EUR", {"USD": 1.18}))


def test_full_sync_refreshes_candidates(scheduler, store, transport, clock):
    _healthy_provider(transport)
    summary = scheduler.run_full_sync()

    assert summary.skipped_reason is None
    assert summary.succeeded == ["USD", "EUR"] and summary.failed == []
    assert scheduler.last_sync_time == clock()
    assert store.find_valid(None, "USD", "GBP").source == "api_cached"
    assert transport.calls == ["quota", "latest/USD", "latest/EUR"]
    assert not scheduler.is_running


def test_full_sync_includes_expired_bases_and_counts_failures(
    config, client, store, transport, clock, sleeps
):
    scheduler = RateSyncScheduler(
        replace(config, inter_call_delay_seconds=1.0), client, store, sleep=sleeps.append
    )
    _healthy_provider(transport)
    store.upsert(None, "GBP", "USD", 1.3, "api", HOUR)
    clock.advance(hours=2)

    assert scheduler.currencies_needing_update() == ["GBP", "USD", "EUR"]
    summary = scheduler.run_full_sync()

    # GBP has no canned response, so that one call fails without aborting the run
    assert summary.failed == ["GBP"]
    assert summary.succeeded == ["USD", "EUR"]
    assert sleeps == [1.0, 1.0]


def test_dropped_connections_are_counted_per_currency(config, store, monkeypatch):
    def flaky(request, timeout=None):
        if request.full_url.endswith("/quota"):
            body = b'{"result": "success", "plan_quota": 1500, "requests_remaining": 1200}'
            return io.BytesIO(body)
        raise http.client.RemoteDisconnected("Remote end closed connection")

    monkeypatch.setattr(http_client.urllib.request, "urlopen", flaky)
    scheduler = RateSyncScheduler(
        config, ExchangeRateApiClient(config, store), store, sleep=lambda _: None
    )
    summary = scheduler.run_full_sync()

    assert summary.skipped_reason is None
    assert summary.failed == ["USD", "EUR"] and summary.succeeded == []
    assert not scheduler.is_running


def test_second_trigger_while_running_is_noop(scheduler, transport):
    _healthy_provider(transport)
    assert scheduler.try_start()
    try:
        summary = scheduler.run_full_sync()
        assert summary.skipped_reason == "already_running"
        assert transport.calls == []
        assert scheduler.is_running
    finally:
        scheduler.finish()
    assert not scheduler.is_running


def test_low_quota_aborts_before_any_fetch(scheduler, transport):
    _healthy_provider(transport)
    transport.set("quota", quota_payload(1000, 50))
    summary = scheduler.run_full_sync()
    assert summary.skipped_reason == "low_quota"
    assert transport.calls == ["quota"]
    assert scheduler.last_sync_time is None


def test_unknown_quota_does_not_block_sync(scheduler, transport):
    _healthy_provider(transport)
    transport.set("quota", QuotaExceeded("quota-reached"))
    summary = scheduler.run_full_sync()
    assert summary.skipped_reason is None
    assert summary.succeeded == ["USD", "EUR"]
    assert not scheduler.is_running


def test_full_sync_without_key(store, transport):
    config = make_config(api_key=None)
    client = ExchangeRateApiClient(config, store, fetch_json=transport)
    scheduler = RateSyncScheduler(config, client, store)
    assert scheduler.run_full_sync().skipped_reason == "not_configured"
    assert scheduler.start() is False
    assert transport.calls == []


def test_flag_released_when_sync_crashes(scheduler, monkeypatch):
    def boom():
        raise RuntimeError("unexpected")

    monkeypatch.setattr(scheduler, "currencies_needing_update", boom)
    scheduler.client.fetch_json.set("quota", quota_payload(1000, 900))
    with pytest.raises(RuntimeError):
        scheduler.run_full_sync()
    assert not scheduler.is_running


def test_manual_sync_ignores_running_flag(scheduler, store, transport):
    transport.set("latest/EUR", latest_payload("EUR", {"USD": 1.18}))
    assert scheduler.try_start()
    try:
        assert scheduler.trigger_manual_sync("EUR") is True
    finally:
        scheduler.finish()
    assert store.find_valid(None, "EUR", "USD").rate == 1.18
    assert scheduler.trigger_manual_sync("JPY") is False


def test_janitor_retires_only_expired_api_rows(scheduler, store, clock):
    api_row = store.upsert(None, "USD", "EUR", 0.85, "api", HOUR)
    user_row = store.upsert(3, "USD", "EUR", 0.80, "user", HOUR)
    fresh = store.upsert(None, "USD", "GBP", 0.73, "api", timedelta(days=1))
    clock.advance(hours=2)

    assert scheduler.cleanup_expired() == 1
    assert not store.get(api_row.id).is_active
    assert store.get(user_row.id).is_active
    assert store.get(fresh.id).is_active
    assert scheduler.cleanup_expired() == 0


def test_check_quota_reports_low_quota(scheduler, transport, caplog):
    transport.set("quota", quota_payload(1000, 20))
    with caplog.at_level("WARNING", logger="fxengine.sync"):
        quota = scheduler.check_quota()
    assert quota.remaining == 20
    assert any("low API quota" in r.getMessage() for r in caplog.records)


def test_sync_status(scheduler, store, transport, clock):
    transport.set("quota", quota_payload(1000, 250))
    store.upsert(None, "USD", "EUR", 0.85, "api", HOUR)
    store.upsert(None, "USD", "GBP", 0.73, "api", timedelta(days=1))
    clock.advance(hours=2)

    status = scheduler.get_sync_status()
    assert status["is_running"] is False
    assert status["last_sync_time"] is None
    assert status["total_rates"] == 1
    assert status["expired_rates"] == 1
    assert status["quota"] == {"remaining": 250, "total": 1000, "percentage": 25.0}


def test_sync_status_without_quota(scheduler):
    status = scheduler.get_sync_status()
    assert status["quota"] is None


def test_start_and_stop_threads(scheduler):
    assert scheduler.start() is True
    threads = list(scheduler._threads)
    assert {t.name for t in threads} == {
        "fxengine-full_sync",
        "fxengine-quota_watch",
        "fxengine-janitor",
    }
    scheduler.stop(timeout=2.0)
    assert not any(t.is_alive() for t in threads)
