"""Currency migration: re-denominate an owner's monetary records.

Every conversion starts from the record's first-ever original amount and
currency (captured on the first migration, never overwritten), so chains of
preference changes (A -> B -> C) never compound rounding or rate error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import List, Optional, Set

from fxengine.core.errors import OwnerNotFound, RateNotFound
from fxengine.db.dal import Database
from fxengine.models.currency import CurrencyCode
from fxengine.models.records import MonetaryRecord, Owner
from fxengine.services.rates.resolver import RateResolver

logger = logging.getLogger("fxengine.migration")


@dataclass
class MigrationResult:
    converted: int = 0
    failed: int = 0
    total: int = 0

    def add(self, other: "MigrationResult") -> None:
        self.converted += other.converted
        self.failed += other.failed
        self.total += other.total


@dataclass
class UserMigration:
    user_id: int
    result: MigrationResult
    error: str | None = None


@dataclass
class OrganizationMigrationResult(MigrationResult):
    users: List[UserMigration] = field(default_factory=list)
    failed_users: int = 0


@dataclass(frozen=True)
class MigrationPreview:
    user_id: int
    target_currency: str
    records_to_convert: int


class CurrencyMigrationService:
    def __init__(self, records: Database, resolver: RateResolver):
        self.records = records
        self.resolver = resolver

    def preview(self, user_id: int, target_currency: str) -> MigrationPreview:
        target = CurrencyCode.parse(target_currency)
        owner = self._owner(user_id)
        count = self.records.count_records_needing_conversion(owner.organization_id, target)
        return MigrationPreview(
            user_id=owner.id, target_currency=str(target), records_to_convert=count
        )

    def migrate_user(self, user_id: int, target_currency: str) -> MigrationResult:
        return self._migrate_owner(user_id, CurrencyCode.parse(target_currency))

    def _migrate_owner(
        self, user_id: int, target: str, seen: Optional[Set[int]] = None
    ) -> MigrationResult:
        """Convert the owner's records; ids in `seen` were handled earlier in a cascade."""
        owner = self._owner(user_id)
        result = MigrationResult()
        for record in self.records.list_convertible_records(owner.organization_id):
            if seen is not None:
                if record.id in seen:
                    continue
                seen.add(record.id)
            result.total += 1
            if record.currency == target:
                continue
            try:
                self._convert_record(record, target, owner.organization_id)
            except Exception:
                result.failed += 1
                logger.exception(
                    "failed to convert record %s to %s",
                    record.id,
                    target,
                    extra={"owner": owner.id, "organization_id": owner.organization_id},
                )
                continue
            result.converted += 1
        self.records.set_user_display_currency(owner.id, target)
        logger.info(
            "migrated user %s to %s: %s converted, %s failed, %s total",
            owner.id,
            target,
            result.converted,
            result.failed,
            result.total,
            extra={"owner": owner.id, "organization_id": owner.organization_id},
        )
        return result

    def migrate_organization(
        self, organization_id: int, target_currency: str
    ) -> OrganizationMigrationResult:
        target = CurrencyCode.parse(target_currency)
        if self.records.get_organization(organization_id) is None:
            raise OwnerNotFound("organization", organization_id)
        aggregate = OrganizationMigrationResult()
        # users share the organization's records; each record is attempted once
        seen: Set[int] = set()
        for owner in self.records.list_users(organization_id):
            try:
                user_result = self._migrate_owner(owner.id, target, seen)
            except Exception as exc:
                aggregate.failed_users += 1
                aggregate.users.append(
                    UserMigration(owner.id, MigrationResult(), error=str(exc))
                )
                logger.exception(
                    "currency migration failed for user %s",
                    owner.id,
                    extra={"owner": owner.id, "organization_id": organization_id},
                )
                continue
            aggregate.add(user_result)
            aggregate.users.append(UserMigration(owner.id, user_result))
        self.records.set_organization_analytics_currency(organization_id, target)
        return aggregate

    # ------------------------------------------------------------------
    def _owner(self, user_id: int) -> Owner:
        owner = self.records.get_user(user_id)
        if owner is None:
            raise OwnerNotFound("user", user_id)
        return owner

    def _convert_record(
        self, record: MonetaryRecord, target: str, organization_id: int
    ) -> None:
        if record.has_original:
            original_amount = record.original_amount
            original_currency = record.original_currency
        else:
            original_amount = record.amount
            original_currency = record.currency or self.resolver.config.fallback_currency
        conversion = self.resolver.convert_detailed(
            original_amount, original_currency, target, organization_id
        )
        if not conversion.converted:
            # leave the record in its current currency rather than relabel it
            raise RateNotFound(original_currency, target)
        self.records.update_record_denomination(
            record.id,
            amount=conversion.converted_amount,
            currency=target,
            original_amount=original_amount,
            original_currency=original_currency,
        )
