"""Seeding helpers for baseline global exchange rates.

Provides `seed_global_rates`, which ensures a `system` row exists for each of
the common currency pairs so conversions work before the first provider sync.
Existing rows are left untouched so this can be safely re-run.
"""

from __future__ import annotations
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .dal import connect
from .schema import init_db
from .timestamps import to_db_ts, utcnow

SEED_TTL = timedelta(hours=24)

# Approximate reference quotes; replaced in place by the first successful sync.
COMMON_CURRENCY_PAIRS: Mapping[Tuple[str, str], float] = {
    ("USD", "EUR"): 0.85,
    ("USD", "GBP"): 0.73,
    ("USD", "JPY"): 110.0,
    ("USD", "CAD"): 1.25,
    ("USD", "AUD"): 1.35,
    ("USD", "CHF"): 0.92,
    ("USD", "CNY"): 6.45,
    ("USD", "NGN"): 410.0,
    ("EUR", "USD"): 1.18,
    ("EUR", "GBP"): 0.86,
    ("EUR", "JPY"): 129.5,
    ("GBP", "USD"): 1.37,
    ("GBP", "EUR"): 1.16,
    ("GBP", "JPY"): 150.7,
    ("JPY", "USD"): 0.0091,
    ("JPY", "EUR"): 0.0077,
    ("JPY", "GBP"): 0.0066,
    ("CAD", "USD"): 0.80,
    ("AUD", "USD"): 0.74,
    ("CHF", "USD"): 1.09,
    ("CNY", "USD"): 0.155,
    ("NGN", "USD"): 0.0024,
}


def seed_global_rates(
    db_path: Path,
    pairs: Optional[Mapping[Tuple[str, str], float]] = None,
    ttl: timedelta = SEED_TTL,
) -> int:
    """Insert missing baseline rows; returns how many were created."""
    init_db(db_path)  # ensure tables exist
    now = utcnow()
    stamp, expiry = to_db_ts(now), to_db_ts(now + ttl)
    created = 0
    with connect(db_path) as conn:
        cur = conn.cursor()
        for (base, target), rate in (pairs or COMMON_CURRENCY_PAIRS).items():
            # Insert row if not present; never overwrite a synced or user-set rate
            cur.execute(
                """
                INSERT OR IGNORE INTO exchange_rates (
                    scope, organization_id, base_currency, target_currency, rate,
                    source, is_custom, is_active, is_expired, last_api_update, cache_expiry
                ) VALUES ('global', NULL, ?, ?, ?, 'system', 0, 1, 0, ?, ?)
                """,
                (base.upper(), target.upper(), float(rate), stamp, expiry),
            )
            created += cur.rowcount
    return created
