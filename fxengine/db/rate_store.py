"""Persistent cache of directed currency-pair rates.

One row per (scope, base, target); refreshes update the row in place. Expired
rows are kept (flagged, never deleted) so they can serve as a stale fallback
and as an audit trail.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from fxengine.models.constants import API_SOURCES, RATE_SOURCES
from fxengine.models.currency import CurrencyCode, parse_pair, validate_rate
from fxengine.models.rates import Provenance, RateRecord, scope_for
from fxengine.core.errors import RateNotFound, RateValidationError
from .dal import connect
from .timestamps import to_db_ts, utcnow

logger = logging.getLogger("fxengine.db.rates")

MAX_WRITE_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 0.05

_UPSERT_SQL = """
INSERT INTO exchange_rates (
    scope, organization_id, base_currency, target_currency, rate, source,
    is_custom, is_active, is_expired, last_api_update, cache_expiry,
    provider_time_last_update, provider_time_next_update, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?, ?, ?, ?, ?)
ON CONFLICT(scope, base_currency, target_currency) DO UPDATE SET
    rate = excluded.rate,
    source = excluded.source,
    is_custom = excluded.is_custom,
    is_active = 1,
    is_expired = 0,
    last_api_update = excluded.last_api_update,
    cache_expiry = excluded.cache_expiry,
    provider_time_last_update = excluded.provider_time_last_update,
    provider_time_next_update = excluded.provider_time_next_update,
    updated_at = excluded.updated_at
"""

# Tenant row first (when one was asked for), then the most recently refreshed.
_PREFERENCE_ORDER = """
ORDER BY CASE WHEN scope = ? THEN 0 ELSE 1 END,
         COALESCE(last_api_update, updated_at) DESC,
         id DESC
"""


def _is_retryable(exc: sqlite3.Error) -> bool:
    if isinstance(exc, sqlite3.IntegrityError):
        return True
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


class RateStore:
    def __init__(self, db_path: Path, clock: Callable[[], datetime] = utcnow):
        self.db_path = db_path
        self._clock = clock

    def _connect(self):
        return connect(self.db_path)

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Writes
    def upsert(
        self,
        organization_id: Optional[int],
        base: str,
        target: str,
        rate: float,
        source: str,
        ttl: timedelta,
        provenance: Optional[Provenance] = None,
        is_custom: bool = False,
    ) -> RateRecord:
        """Insert or refresh one rate row; the row comes back active and unexpired."""
        b, t = parse_pair(base, target)
        value = validate_rate(rate)
        _check_source(source)
        scope = scope_for(organization_id)
        params = self._row_params(
            scope, organization_id, b, t, value, source, ttl, provenance, is_custom
        )

        def _write(conn: sqlite3.Connection) -> None:
            conn.execute(_UPSERT_SQL, params)

        self._write_with_retry(_write)
        record = self._fetch_one(
            "SELECT * FROM exchange_rates WHERE scope = ? AND base_currency = ? "
            "AND target_currency = ?",
            (scope, b, t),
        )
        if record is None:
            raise RateNotFound(b, t)
        return record

    def upsert_many(
        self,
        organization_id: Optional[int],
        base: str,
        rates: Mapping[str, float],
        source: str,
        ttl: timedelta,
        provenance: Optional[Provenance] = None,
    ) -> int:
        """Bulk refresh every `target -> rate` of one base in a single transaction.

        Entries for the base itself or with unusable codes/rates are skipped.
        Returns the number of rows written.
        """
        b = CurrencyCode.parse(base)
        _check_source(source)
        scope = scope_for(organization_id)
        batch = []
        for target, rate in rates.items():
            try:
                t = CurrencyCode.parse(target)
                value = validate_rate(rate)
            except RateValidationError:
                logger.debug("skipping unusable quote %s -> %r", target, rate)
                continue
            if t == b:
                continue
            batch.append(
                self._row_params(
                    scope, organization_id, b, t, value, source, ttl, provenance, False
                )
            )
        if not batch:
            return 0

        def _write(conn: sqlite3.Connection) -> None:
            conn.executemany(_UPSERT_SQL, batch)

        self._write_with_retry(_write)
        return len(batch)

    def create_many(
        self,
        organization_id: Optional[int],
        entries: Iterable[Mapping[str, Any]],
        source: str,
        ttl: timedelta,
        is_custom: bool = True,
    ) -> Tuple[List[RateRecord], List[str]]:
        """Create rows for pairs the scope does not hold yet.

        Each entry is validated on its own; an unusable entry or one whose pair
        already exists in the scope is reported in the error list and the rest
        are still written.
        """
        _check_source(source)
        scope = scope_for(organization_id)
        created: List[RateRecord] = []
        errors: List[str] = []
        for index, entry in enumerate(entries):
            try:
                b, t = parse_pair(entry.get("base_currency"), entry.get("target_currency"))
                validate_rate(entry.get("rate"))
            except RateValidationError as exc:
                errors.append(f"entry {index}: {exc}")
                continue
            if self._fetch_one(
                "SELECT * FROM exchange_rates WHERE scope = ? AND base_currency = ? "
                "AND target_currency = ?",
                (scope, b, t),
            ):
                errors.append(f"entry {index}: rate already exists for {b} -> {t}")
                continue
            created.append(
                self.upsert(
                    organization_id, b, t, entry["rate"], source, ttl, is_custom=is_custom
                )
            )
        return created, errors

    def deactivate(self, ids: Iterable[int]) -> int:
        """Soft-delete rows: flag inactive and expired, keep them for history."""
        id_list = [int(i) for i in ids]
        if not id_list:
            return 0
        placeholders = ",".join("?" for _ in id_list)
        now_ts = to_db_ts(self.now())
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE exchange_rates
                SET is_active = 0, is_expired = 1, updated_at = ?
                WHERE id IN ({placeholders})
                """,
                (now_ts, *id_list),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Reads
    def get(self, rate_id: int) -> Optional[RateRecord]:
        return self._fetch_one("SELECT * FROM exchange_rates WHERE id = ?", (rate_id,))

    def find_valid(
        self, organization_id: Optional[int], base: str, target: str
    ) -> Optional[RateRecord]:
        """Freshest usable row for the pair, tenant row preferred over global."""
        b, t = CurrencyCode.parse(base), CurrencyCode.parse(target)
        scope = scope_for(organization_id)
        return self._fetch_one(
            f"""
            SELECT * FROM exchange_rates
            WHERE base_currency = ? AND target_currency = ?
              AND scope IN ('global', ?)
              AND is_active = 1 AND is_expired = 0
              AND (cache_expiry IS NULL OR cache_expiry > ?)
            {_PREFERENCE_ORDER}
            LIMIT 1
            """,
            (b, t, scope, to_db_ts(self.now()), scope),
        )

    def find_tenant(
        self, organization_id: int, base: str, target: str
    ) -> Optional[RateRecord]:
        b, t = CurrencyCode.parse(base), CurrencyCode.parse(target)
        return self._fetch_one(
            """
            SELECT * FROM exchange_rates
            WHERE scope = ? AND base_currency = ? AND target_currency = ?
              AND is_active = 1 AND is_expired = 0
              AND (cache_expiry IS NULL OR cache_expiry > ?)
            LIMIT 1
            """,
            (scope_for(organization_id), b, t, to_db_ts(self.now())),
        )

    def find_any(
        self, base: str, target: str, organization_id: Optional[int] = None
    ) -> Optional[RateRecord]:
        """Most recent row for the pair, expired or inactive included."""
        b, t = CurrencyCode.parse(base), CurrencyCode.parse(target)
        scope = scope_for(organization_id)
        return self._fetch_one(
            f"""
            SELECT * FROM exchange_rates
            WHERE base_currency = ? AND target_currency = ?
              AND scope IN ('global', ?)
            {_PREFERENCE_ORDER}
            LIMIT 1
            """,
            (b, t, scope, scope),
        )

    def find_expired(self, include_inactive: bool = False) -> List[RateRecord]:
        """API-sourced rows whose cache lifetime has passed.

        By default only rows still active (the janitor's work list). With
        `include_inactive` retired rows are returned too, so their base
        currencies keep being refreshed by the full sync.
        """
        sources = sorted(API_SOURCES)
        placeholders = ",".join("?" for _ in sources)
        active_clause = "" if include_inactive else "AND is_active = 1"
        return self._fetch_all(
            f"""
            SELECT * FROM exchange_rates
            WHERE cache_expiry IS NOT NULL AND cache_expiry < ?
              AND source IN ({placeholders})
              {active_clause}
            ORDER BY cache_expiry, id
            """,
            (to_db_ts(self.now()), *sources),
        )

    def count_active(self) -> int:
        return self._count(
            """
            SELECT COUNT(*) FROM exchange_rates
            WHERE is_active = 1 AND is_expired = 0
              AND (cache_expiry IS NULL OR cache_expiry > ?)
            """,
            (to_db_ts(self.now()),),
        )

    def count_expired(self) -> int:
        return self._count(
            """
            SELECT COUNT(*) FROM exchange_rates
            WHERE is_expired = 1
               OR (cache_expiry IS NOT NULL AND cache_expiry <= ?)
            """,
            (to_db_ts(self.now()),),
        )

    def history(
        self,
        base: Optional[str] = None,
        target: Optional[str] = None,
        organization_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[RateRecord]:
        clauses: List[str] = []
        params: List[object] = []
        if base:
            clauses.append("base_currency = ?")
            params.append(str(CurrencyCode.parse(base)))
        if target:
            clauses.append("target_currency = ?")
            params.append(str(CurrencyCode.parse(target)))
        if organization_id is not None:
            clauses.append("scope = ?")
            params.append(scope_for(organization_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), 500)))
        return self._fetch_all(
            f"""
            SELECT * FROM exchange_rates
            {where}
            ORDER BY COALESCE(last_api_update, updated_at) DESC, id DESC
            LIMIT ?
            """,
            tuple(params),
        )

    # ------------------------------------------------------------------
    # Internals
    def _row_params(
        self,
        scope: str,
        organization_id: Optional[int],
        base: str,
        target: str,
        rate: float,
        source: str,
        ttl: timedelta,
        provenance: Optional[Provenance],
        is_custom: bool,
    ) -> Sequence[object]:
        now = self.now()
        now_ts = to_db_ts(now)
        prov = provenance or Provenance()
        return (
            scope,
            organization_id,
            str(base),
            str(target),
            rate,
            source,
            1 if is_custom else 0,
            now_ts,
            to_db_ts(now + ttl),
            to_db_ts(prov.time_last_update) if prov.time_last_update else None,
            to_db_ts(prov.time_next_update) if prov.time_next_update else None,
            now_ts,
            now_ts,
        )

    def _write_with_retry(self, write: Callable[[sqlite3.Connection], None]) -> None:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                with self._connect() as conn:
                    write(conn)
                return
            except sqlite3.Error as exc:
                if not _is_retryable(exc) or attempt == MAX_WRITE_ATTEMPTS:
                    raise
                logger.debug("rate write conflict (attempt %s): %s", attempt, exc)
                time.sleep(RETRY_DELAY_SECONDS * attempt)

    def _fetch_one(self, sql: str, params: Sequence[object]) -> Optional[RateRecord]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            row = cur.fetchone()
            return RateRecord.from_row(row) if row else None

    def _fetch_all(self, sql: str, params: Sequence[object]) -> List[RateRecord]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [RateRecord.from_row(r) for r in cur.fetchall()]

    def _count(self, sql: str, params: Sequence[object]) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            row = cur.fetchone()
            return int(row[0] if row and row[0] is not None else 0)


def _check_source(source: str) -> None:
    if source not in RATE_SOURCES:
        raise RateValidationError(f"unsupported rate source '{source}'")
