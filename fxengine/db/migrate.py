"""Database migration utilities.

Handles schema evolution by applying idempotent migrations keyed by an integer
`schema_version` stored in the metadata table. Each migration upgrades the
SQLite schema in-place while preserving existing rate history.
"""

from __future__ import annotations
from pathlib import Path
import logging
import sqlite3
from typing import List, Optional

from . import schema as schema_def
from .schema import init_db

CURRENT_SCHEMA_VERSION = 2
SCHEMA_VERSION_KEY = "schema_version"

logger = logging.getLogger("fxengine.db.migrate")


def _get_schema_version(conn: sqlite3.Connection) -> Optional[int]:
    try:
        cur = conn.cursor()
        cur.execute("SELECT value FROM metadata WHERE key=?", (SCHEMA_VERSION_KEY,))
        row = cur.fetchone()
        if row:
            return int(row[0])
    except sqlite3.OperationalError:
        # metadata table may not exist yet (first run before init_db)
        return None
    return None


def apply_migrations(db_path: Path) -> int:
    """Apply required migrations and return resulting schema version."""
    init_db(db_path)
    conn = sqlite3.connect(db_path)
    try:
        version = _get_schema_version(conn) or 1
        if version < 2:
            _migrate_to_v2(conn)
            version = 2
        _set_schema_version(conn, version)
        conn.commit()
        return version
    finally:
        conn.close()


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO metadata (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
        f"updated_at=({schema_def.BASIC_UTC_NOW})",
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Upgrade schema to version 2 (rate cache management columns).

    Version 1 rate tables held only organization-scoped manual rates
    (organization_id, base/target, rate). They are rebuilt with scope, source,
    expiry and provenance columns; legacy rows become `system` rows that never
    expire on their own.
    """
    conn.execute("PRAGMA foreign_keys=OFF")
    cur = conn.cursor()
    try:
        _rebuild_exchange_rates(cur)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.execute("PRAGMA foreign_keys=ON")


def _rebuild_exchange_rates(cur: sqlite3.Cursor) -> None:
    if not _table_exists(cur, "exchange_rates"):
        cur.execute(schema_def.EXCHANGE_RATES_DDL)
        _create_rate_indexes(cur)
        return
    if _column_exists(cur, "exchange_rates", "cache_expiry"):
        return
    legacy_columns = _columns(cur, "exchange_rates")
    logger.info("rebuilding legacy exchange_rates table (columns=%s)", legacy_columns)
    cur.execute("ALTER TABLE exchange_rates RENAME TO exchange_rates_legacy")
    cur.execute(schema_def.EXCHANGE_RATES_DDL)

    org_expr = "organization_id" if "organization_id" in legacy_columns else "NULL"
    custom_expr = "COALESCE(is_custom, 0)" if "is_custom" in legacy_columns else "0"
    created_expr = (
        "COALESCE(created_at, ({now}))" if "created_at" in legacy_columns else "({now})"
    ).format(now=schema_def.BASIC_UTC_NOW)
    # INSERT OR IGNORE: legacy data had no uniqueness guarantee per scope
    cur.execute(
        f"""
        INSERT OR IGNORE INTO exchange_rates (
            scope, organization_id, base_currency, target_currency, rate,
            source, is_custom, is_active, is_expired, created_at, updated_at
        )
        SELECT
            CASE WHEN {org_expr} IS NULL THEN 'global'
                 ELSE 'organization:' || {org_expr} END,
            {org_expr}, UPPER(TRIM(base_currency)), UPPER(TRIM(target_currency)), rate,
            'system', {custom_expr}, 1, 0, {created_expr}, ({schema_def.BASIC_UTC_NOW})
        FROM exchange_rates_legacy
        WHERE rate > 0
          AND length(TRIM(base_currency)) = 3
          AND length(TRIM(target_currency)) = 3
        ORDER BY id DESC
        """
    )
    cur.execute("DROP TABLE exchange_rates_legacy")
    _create_rate_indexes(cur)


def _create_rate_indexes(cur: sqlite3.Cursor) -> None:
    for ddl in schema_def.RATE_INDEXES:
        cur.execute(ddl)


def _table_exists(cur: sqlite3.Cursor, name: str) -> bool:
    cur.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (name,),
    )
    return cur.fetchone() is not None


def _columns(cur: sqlite3.Cursor, table: str) -> List[str]:
    cur.execute(f"PRAGMA table_info({table})")
    return [row[1] for row in cur.fetchall()]


def _column_exists(cur: sqlite3.Cursor, table: str, column: str) -> bool:
    return column in _columns(cur, table)
