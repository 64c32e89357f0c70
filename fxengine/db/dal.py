"""Data Access Layer for the platform records the rate engine consumes.

Responsibilities
----------------
- Provide the shared sqlite connection helper (one connection per operation, so
  background sync threads never share a handle with request-path code).
- Read organizations / users (owners of a display currency).
- Read and re-denominate monetary records (products, orders) for currency
  migration, never overwriting an already captured original amount/currency.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
import sqlite3
from typing import Iterator, List, Optional

from fxengine.models.constants import RECORD_KINDS
from fxengine.models.records import MonetaryRecord, Organization, Owner
from .schema import BASIC_UTC_NOW

UTC_NOW_SQL = BASIC_UTC_NOW
BUSY_TIMEOUT_SECONDS = 5.0


@contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection, commit on success, roll back on error, always close."""
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    # ------------------------------------------------------------------
    # Connection helpers
    def _connect(self):
        return connect(self.db_path)

    # ------------------------------------------------------------------
    # Organizations & owners
    def create_organization(
        self,
        name: str,
        analytics_currency: Optional[str] = None,
        default_currency: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO organizations (name, analytics_currency, default_currency)
                VALUES (?, ?, ?)
                """,
                (name, analytics_currency, default_currency),
            )
            return int(cur.lastrowid)

    def get_organization(self, organization_id: int) -> Optional[Organization]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM organizations WHERE id = ?", (organization_id,))
            row = cur.fetchone()
            if not row:
                return None
            return Organization(
                id=int(row["id"]),
                name=row["name"],
                analytics_currency=row["analytics_currency"],
                default_currency=row["default_currency"],
            )

    def set_organization_analytics_currency(
        self, organization_id: int, currency: str
    ) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE organizations
                SET analytics_currency = ?, updated_at = ({UTC_NOW_SQL})
                WHERE id = ?
                """,
                (currency, organization_id),
            )
            if cur.rowcount == 0:
                raise ValueError("Organization not found")

    def create_user(
        self,
        organization_id: int,
        email: Optional[str] = None,
        display_currency: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO users (organization_id, email, display_currency)
                VALUES (?, ?, ?)
                """,
                (organization_id, email, display_currency),
            )
            return int(cur.lastrowid)

    def get_user(self, user_id: int) -> Optional[Owner]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
            return _row_to_owner(row) if row else None

    def list_users(self, organization_id: int) -> List[Owner]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM users WHERE organization_id = ? ORDER BY id",
                (organization_id,),
            )
            return [_row_to_owner(r) for r in cur.fetchall()]

    def set_user_display_currency(self, user_id: int, currency: str) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE users
                SET display_currency = ?, updated_at = ({UTC_NOW_SQL})
                WHERE id = ?
                """,
                (currency, user_id),
            )
            if cur.rowcount == 0:
                raise ValueError("User not found")

    # ------------------------------------------------------------------
    # Monetary records
    def insert_record(
        self,
        organization_id: int,
        kind: str,
        amount: float,
        currency: Optional[str],
        label: Optional[str] = None,
    ) -> int:
        if kind not in RECORD_KINDS:
            raise ValueError(f"Unsupported record kind '{kind}'")
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                INSERT INTO monetary_records (
                    organization_id, kind, label, amount, currency, display_currency,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ({UTC_NOW_SQL}), ({UTC_NOW_SQL}))
                """,
                (organization_id, kind, label, amount, currency, currency),
            )
            return int(cur.lastrowid)

    def get_record(self, record_id: int) -> Optional[MonetaryRecord]:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM monetary_records WHERE id = ?", (record_id,))
            row = cur.fetchone()
            return MonetaryRecord.from_row(row) if row else None

    def list_convertible_records(self, organization_id: int) -> List[MonetaryRecord]:
        """Records carrying a positive amount (zero-priced rows are never migrated)."""
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT * FROM monetary_records
                WHERE organization_id = ?
                  AND (amount > 0 OR COALESCE(original_amount, 0) > 0)
                ORDER BY id
                """,
                (organization_id,),
            )
            return [MonetaryRecord.from_row(r) for r in cur.fetchall()]

    def count_records_needing_conversion(
        self, organization_id: int, target_currency: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT COUNT(*) FROM monetary_records
                WHERE organization_id = ?
                  AND (amount > 0 OR COALESCE(original_amount, 0) > 0)
                  AND (currency IS NULL OR currency != ?)
                """,
                (organization_id, target_currency),
            )
            row = cur.fetchone()
            return int(row[0] if row and row[0] is not None else 0)

    def update_record_denomination(
        self,
        record_id: int,
        amount: float,
        currency: str,
        original_amount: float,
        original_currency: str,
    ) -> None:
        """Persist a conversion; an existing original baseline always wins."""
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE monetary_records
                SET amount = ?,
                    currency = ?,
                    display_currency = ?,
                    original_amount = COALESCE(original_amount, ?),
                    original_currency = COALESCE(original_currency, ?),
                    updated_at = ({UTC_NOW_SQL})
                WHERE id = ?
                """,
                (
                    amount,
                    currency,
                    currency,
                    original_amount,
                    original_currency,
                    record_id,
                ),
            )
            if cur.rowcount == 0:
                raise ValueError("record not found")


def _row_to_owner(row: sqlite3.Row) -> Owner:
    return Owner(
        id=int(row["id"]),
        organization_id=int(row["organization_id"]),
        email=row["email"],
        display_currency=row["display_currency"],
    )


__all__ = ["Database", "connect"]
