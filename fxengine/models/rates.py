from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from fxengine.db.timestamps import parse_db_ts
from .constants import ORG_SCOPE_PREFIX, RATE_SOURCES, SCOPE_GLOBAL
from .currency import CurrencyCode


def scope_for(organization_id: Optional[int]) -> str:
    """Scope key for a rate row: `global` or `organization:<id>`."""
    if organization_id is None:
        return SCOPE_GLOBAL
    return f"{ORG_SCOPE_PREFIX}{int(organization_id)}"


class Provenance(BaseModel):
    """Provider's stated update window for the quote a row was built from."""

    time_last_update: Optional[datetime] = None
    time_next_update: Optional[datetime] = None


class RateRecord(BaseModel):
    id: int
    scope: str
    organization_id: Optional[int] = None
    base_currency: str
    target_currency: str
    rate: float = Field(..., gt=0)
    source: str
    is_custom: bool = False
    is_active: bool = True
    is_expired: bool = False
    last_api_update: Optional[datetime] = None
    cache_expiry: Optional[datetime] = None
    provenance: Provenance = Field(default_factory=Provenance)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("base_currency", "target_currency")
    @classmethod
    def valid_currency(cls, v: str) -> str:
        return str(CurrencyCode.parse(v))

    @field_validator("source")
    @classmethod
    def valid_source(cls, v: str) -> str:
        if v not in RATE_SOURCES:
            raise ValueError(f"unsupported rate source '{v}'")
        return v

    @property
    def is_global(self) -> bool:
        return self.scope == SCOPE_GLOBAL

    def needs_refresh(self, now: datetime) -> bool:
        if self.is_expired:
            return True
        if self.cache_expiry is None:
            return False
        return now > self.cache_expiry

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RateRecord":
        return cls(
            id=int(row["id"]),
            scope=row["scope"],
            organization_id=row["organization_id"],
            base_currency=row["base_currency"],
            target_currency=row["target_currency"],
            rate=float(row["rate"]),
            source=row["source"],
            is_custom=bool(row["is_custom"]),
            is_active=bool(row["is_active"]),
            is_expired=bool(row["is_expired"]),
            last_api_update=parse_db_ts(row["last_api_update"]),
            cache_expiry=parse_db_ts(row["cache_expiry"]),
            provenance=Provenance(
                time_last_update=parse_db_ts(row["provider_time_last_update"]),
                time_next_update=parse_db_ts(row["provider_time_next_update"]),
            ),
            created_at=parse_db_ts(row["created_at"]),
            updated_at=parse_db_ts(row["updated_at"]),
        )
