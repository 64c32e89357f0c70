"""Monetary records and their owners, as consumed by currency migration.

These rows belong to the wider platform (products, orders, users); the rate
engine only reads them and rewrites their denomination.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional


@dataclass
class MonetaryRecord:
    id: int
    organization_id: int
    kind: str
    label: Optional[str]
    amount: float
    currency: Optional[str]
    display_currency: Optional[str]
    original_amount: Optional[float]
    original_currency: Optional[str]

    @property
    def has_original(self) -> bool:
        return self.original_amount is not None and bool(self.original_currency)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MonetaryRecord":
        original = row["original_amount"]
        return cls(
            id=int(row["id"]),
            organization_id=int(row["organization_id"]),
            kind=row["kind"],
            label=row["label"],
            amount=float(row["amount"]),
            currency=row["currency"],
            display_currency=row["display_currency"],
            original_amount=float(original) if original is not None else None,
            original_currency=row["original_currency"],
        )


@dataclass(frozen=True)
class Owner:
    id: int
    organization_id: int
    email: Optional[str]
    display_currency: Optional[str]


@dataclass(frozen=True)
class Organization:
    id: int
    name: str
    analytics_currency: Optional[str]
    default_currency: Optional[str]
