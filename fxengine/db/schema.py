"""Database schema DDL definitions and initialization utilities.

Tables:
  - exchange_rates: cached directed currency-pair rates, global or per organization,
    with provenance and expiry metadata (never hard-deleted on expiry)
  - organizations: tenants with analytics / default currency preferences
  - users: owners of a display currency, belonging to one organization
  - monetary_records: products / orders whose amounts are re-denominated on a
    currency preference change; original amount/currency preserved
  - metadata: key/value store (schema version)
"""

from __future__ import annotations
import sqlite3
from typing import Sequence
from pathlib import Path

BASIC_UTC_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ','now')"

EXCHANGE_RATES_DDL = f"""
CREATE TABLE IF NOT EXISTS exchange_rates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL DEFAULT 'global', -- 'global' | 'organization:<id>'
    organization_id INTEGER,
    base_currency TEXT NOT NULL CHECK (length(base_currency) = 3),
    target_currency TEXT NOT NULL CHECK (length(target_currency) = 3),
    rate REAL NOT NULL CHECK (rate > 0),
    source TEXT NOT NULL DEFAULT 'system'
        CHECK (source IN ('system','user','api','api_cached','fallback')),
    is_custom INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_expired INTEGER NOT NULL DEFAULT 0,
    last_api_update TEXT,
    cache_expiry TEXT,
    provider_time_last_update TEXT,
    provider_time_next_update TEXT,
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    UNIQUE(scope, base_currency, target_currency)
);
"""

ORGANIZATIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS organizations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    analytics_currency TEXT,
    default_currency TEXT,
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW})
);
"""

USERS_DDL = f"""
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    email TEXT,
    display_currency TEXT,
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);
"""

MONETARY_RECORDS_DDL = f"""
CREATE TABLE IF NOT EXISTS monetary_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id INTEGER NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('product','order')),
    label TEXT,
    amount REAL NOT NULL DEFAULT 0,
    currency TEXT,
    display_currency TEXT,
    original_amount REAL,
    original_currency TEXT,
    created_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW}),
    FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
);
"""

METADATA_DDL = f"""
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT ({BASIC_UTC_NOW})
);
"""

RATES_EXPIRY_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_rates_expiry ON exchange_rates(cache_expiry, is_expired);"
)
RATES_SOURCE_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_rates_source ON exchange_rates(source, last_api_update);"
)
RATES_ACTIVE_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_rates_active ON exchange_rates(is_active, source);"
)
RATES_ORG_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_rates_org ON exchange_rates(organization_id);"
)
USERS_ORG_INDEX_DDL = "CREATE INDEX IF NOT EXISTS idx_users_org ON users(organization_id);"
RECORDS_ORG_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_records_org ON monetary_records(organization_id, currency);"
)

RATE_INDEXES: Sequence[str] = (
    RATES_EXPIRY_INDEX_DDL,
    RATES_SOURCE_INDEX_DDL,
    RATES_ACTIVE_INDEX_DDL,
    RATES_ORG_INDEX_DDL,
)

DDL_ORDER: Sequence[str] = (
    EXCHANGE_RATES_DDL,
    ORGANIZATIONS_DDL,
    USERS_DDL,
    MONETARY_RECORDS_DDL,
    METADATA_DDL,
)


def init_db(path: Path) -> None:
    """Create all tables idempotently.

    Parameters
    ----------
    path: Path to SQLite database file.
    """
    conn = sqlite3.connect(path)
    try:
        cur = conn.cursor()
        for ddl in DDL_ORDER:
            cur.execute(ddl)
        _ensure_indexes(cur)
        conn.commit()
    finally:
        conn.close()


def _ensure_indexes(cur: sqlite3.Cursor) -> None:
    """Create indexes, tolerating legacy schemas missing cache columns."""
    for ddl in (*RATE_INDEXES, USERS_ORG_INDEX_DDL, RECORDS_ORG_INDEX_DDL):
        try:
            cur.execute(ddl)
        except sqlite3.OperationalError:
            # Legacy tables may lack columns; migration handles re-creation.
            continue
