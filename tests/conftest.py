import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Importing fxengine.main builds a module-level app from the environment; keep it
# away from the working tree and never start background jobs under test.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="fxengine-tests-"))
os.environ.setdefault("ENABLE_SCHEDULER", "false")

import pytest

from fxengine.core.config import EngineConfig
from fxengine.core.errors import ProviderUnavailable
from fxengine.db.dal import Database
from fxengine.db.migrate import apply_migrations
from fxengine.db.rate_store import RateStore
from fxengine.services.rates.provider import ExchangeRateApiClient
from fxengine.services.rates.resolver import RateResolver

BASE_URL = "https://fx.test/v6"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeTransport:
    """Stands in for `get_json`: canned payloads (or exceptions) keyed by path."""

    def __init__(self):
        self.responses: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.headers: List[Dict[str, str]] = []

    def set(self, path: str, response: Any) -> None:
        self.responses[path] = response

    def __call__(self, url: str, *, headers=None, timeout=None, retries=None):
        path = url[len(BASE_URL) + 1 :] if url.startswith(BASE_URL) else url
        self.calls.append(path)
        self.headers.append(dict(headers or {}))
        response = self.responses.get(path)
        if response is None:
            raise ProviderUnavailable(f"no fake response for {path}")
        if isinstance(response, Exception):
            raise response
        return response


def latest_payload(base: str, rates: Dict[str, float]) -> Dict[str, Any]:
    return {
        "result": "success",
        "base_code": base,
        "time_last_update_unix": 1736899201,
        "time_next_update_unix": 1736985601,
        "conversion_rates": {base: 1, **rates},
    }


def pair_payload(base: str, target: str, rate: float, amount: Optional[float] = None):
    payload = {
        "result": "success",
        "base_code": base,
        "target_code": target,
        "conversion_rate": rate,
        "time_last_update_unix": 1736899201,
        "time_next_update_unix": 1736985601,
    }
    if amount is not None:
        payload["conversion_result"] = round(amount * rate, 4)
    return payload


def quota_payload(limit: int, remaining: int) -> Dict[str, Any]:
    return {
        "result": "success",
        "plan_quota": limit,
        "requests_remaining": remaining,
        "refresh_day_of_month": 17,
    }


def make_config(**overrides) -> EngineConfig:
    values = dict(
        api_key="test-key",
        api_base_url=BASE_URL,
        http_timeout_seconds=1.0,
        http_retries=0,
        cache_ttl=timedelta(hours=1),
        quota_threshold=0.1,
        full_sync_interval=timedelta(hours=24),
        quota_check_interval=timedelta(hours=6),
        janitor_interval=timedelta(hours=12),
        inter_call_delay_seconds=0.0,
        common_currencies=("USD", "EUR"),
    )
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "fxengine-test.sqlite3"
    apply_migrations(path)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(db_path, clock):
    return RateStore(db_path, clock=clock)


@pytest.fixture
def records(db_path):
    return Database(db_path)


@pytest.fixture
def client(config, store, transport):
    return ExchangeRateApiClient(config, store, fetch_json=transport)


@pytest.fixture
def resolver(config, store, client, records):
    return RateResolver(config, store, client, records)
