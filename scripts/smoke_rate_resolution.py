"""Smoke script for the rate resolution cascade.

Demonstrates:
 1. Baseline global rows seeded (idempotent) into the configured database.
 2. Conversions through the resolver, showing which tier answered.
 3. A tenant override taking precedence over the global rate.
 4. Scheduler status (quota is only queried when an API key is configured).

NOTE: This is a lightweight diagnostic and not a formal test. Without
EXCHANGE_RATE_API_KEY it runs entirely from the local cache.
"""

from datetime import timedelta
from pprint import pprint

from fxengine.core.config import get_settings
from fxengine.db.migrate import apply_migrations
from fxengine.db.seed import seed_global_rates
from fxengine.services.engine import build_engine


def run():
    settings = get_settings()
    apply_migrations(settings.db_path)
    out = {"seeded": seed_global_rates(settings.db_path), "conversions": {}}

    engine = build_engine(settings.engine_config(), settings.db_path)
    for base, target in (("USD", "EUR"), ("EUR", "USD"), ("USD", "USD"), ("USD", "XOF")):
        result = engine.resolver.convert_detailed(100, base, target)
        out["conversions"][f"{base}->{target}"] = {
            "amount": result.converted_amount,
            "tier": result.tier,
            "converted": result.converted,
        }

    # Tenant override for organization 1 (short TTL so it ages out on its own)
    engine.store.upsert(1, "USD", "EUR", 0.5, "user", timedelta(minutes=5), is_custom=True)
    tenant = engine.resolver.resolve("USD", "EUR", organization_id=1)
    out["tenant_override"] = {"rate": tenant.rate, "tier": tenant.tier}

    out["sync_status"] = engine.scheduler.get_sync_status()
    pprint(out)


if __name__ == "__main__":
    run()
