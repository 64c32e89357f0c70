"""Component wiring: build every rate engine service from one configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fastapi import Request

from fxengine.core.config import EngineConfig
from fxengine.db.dal import Database
from fxengine.db.rate_store import RateStore
from fxengine.services.migration import CurrencyMigrationService
from fxengine.services.http_client import get_json
from fxengine.services.rates.provider import ExchangeRateApiClient, FetchJson
from fxengine.services.rates.resolver import RateResolver
from fxengine.services.rates.sync import RateSyncScheduler


@dataclass
class RateEngine:
    config: EngineConfig
    store: RateStore
    records: Database
    client: ExchangeRateApiClient
    resolver: RateResolver
    scheduler: RateSyncScheduler
    migrations: CurrencyMigrationService


def build_engine(
    config: EngineConfig, db_path: Path, fetch_json: FetchJson = get_json
) -> RateEngine:
    store = RateStore(db_path)
    records = Database(db_path)
    client = ExchangeRateApiClient(config, store, fetch_json=fetch_json)
    resolver = RateResolver(config, store, client, records)
    return RateEngine(
        config=config,
        store=store,
        records=records,
        client=client,
        resolver=resolver,
        scheduler=RateSyncScheduler(config, client, store),
        migrations=CurrencyMigrationService(records, resolver),
    )


def get_engine(request: Request) -> RateEngine:
    return request.app.state.engine
