from __future__ import annotations

"""Rate resolution cascade and amount conversion.

Cascade (first hit wins): identity, tenant direct, tenant reverse, global
cached, live provider fetch (written through), stale cached row, none.
Failures at each tier are absorbed by moving to the next tier; callers of
`convert` only ever see an unconverted amount, never an exception.
"""
from dataclasses import dataclass
import logging
from typing import Iterable, List, Optional, Tuple

from fxengine.core.config import EngineConfig
from fxengine.core.errors import RateEngineError, RateNotFound, RateValidationError
from fxengine.db.dal import Database
from fxengine.db.rate_store import RateStore
from fxengine.models.constants import (
    SOURCE_API,
    TIER_GLOBAL,
    TIER_IDENTITY,
    TIER_LIVE,
    TIER_NONE,
    TIER_STALE,
    TIER_TENANT_DIRECT,
    TIER_TENANT_REVERSE,
)
from fxengine.models.currency import CurrencyCode
from fxengine.models.rates import Provenance
from fxengine.services.money import round2
from .provider import ExchangeRateApiClient

logger = logging.getLogger("fxengine.resolver")


@dataclass(frozen=True)
class Resolution:
    rate: Optional[float]
    tier: str
    source: Optional[str] = None
    degraded: bool = False

    @property
    def failed(self) -> bool:
        return self.rate is None


@dataclass(frozen=True)
class ConversionResult:
    original_amount: float
    original_currency: str
    converted_amount: float
    target_currency: str
    rate: Optional[float]
    tier: str
    converted: bool


@dataclass(frozen=True)
class BatchConversion:
    amount: float
    from_currency: str
    to_currency: str
    result: Optional[ConversionResult] = None
    error: Optional[str] = None


class RateResolver:
    def __init__(
        self,
        config: EngineConfig,
        store: RateStore,
        client: Optional[ExchangeRateApiClient],
        records: Optional[Database] = None,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.records = records

    # ------------------------------------------------------------------
    def resolve(
        self, base: str, target: str, organization_id: Optional[int] = None
    ) -> Resolution:
        b, t = CurrencyCode.parse(base), CurrencyCode.parse(target)
        if b == t:
            return Resolution(rate=1.0, tier=TIER_IDENTITY)

        if organization_id is not None:
            direct = self.store.find_tenant(organization_id, b, t)
            if direct:
                return Resolution(direct.rate, TIER_TENANT_DIRECT, direct.source)
            reverse = self.store.find_tenant(organization_id, t, b)
            if reverse:
                return Resolution(1.0 / reverse.rate, TIER_TENANT_REVERSE, reverse.source)

        cached = self.store.find_valid(None, b, t)
        if cached:
            return Resolution(cached.rate, TIER_GLOBAL, cached.source)

        live = self._fetch_live(b, t)
        if live is not None:
            return live

        stale = self.store.find_any(b, t, organization_id)
        if stale:
            logger.warning(
                "serving stale %s rate %s->%s (expired %s)",
                stale.source,
                b,
                t,
                stale.cache_expiry,
                extra={"base": b, "target": t, "tier": TIER_STALE},
            )
            return Resolution(stale.rate, TIER_STALE, stale.source, degraded=True)

        logger.warning(
            "no exchange rate available for %s->%s",
            b,
            t,
            extra={"base": b, "target": t, "tier": TIER_NONE},
        )
        return Resolution(rate=None, tier=TIER_NONE, degraded=True)

    def get_rate(
        self, base: str, target: str, organization_id: Optional[int] = None
    ) -> float:
        """Strict lookup: raise `RateNotFound` instead of degrading."""
        resolution = self.resolve(base, target, organization_id)
        if resolution.rate is None:
            raise RateNotFound(base, target)
        return resolution.rate

    # ------------------------------------------------------------------
    def convert(
        self,
        amount: float,
        base: str,
        target: str,
        organization_id: Optional[int] = None,
    ) -> float:
        return self.convert_detailed(amount, base, target, organization_id).converted_amount

    def convert_detailed(
        self,
        amount: float,
        base: str,
        target: str,
        organization_id: Optional[int] = None,
    ) -> ConversionResult:
        try:
            resolution = self.resolve(base, target, organization_id)
        except RateValidationError:
            raise
        except Exception:
            logger.exception("rate resolution crashed for %s->%s", base, target)
            resolution = Resolution(rate=None, tier=TIER_NONE, degraded=True)
        if resolution.rate is None:
            logger.warning(
                "conversion %s->%s left unconverted", base, target,
                extra={"base": base, "target": target},
            )
            return ConversionResult(
                original_amount=amount,
                original_currency=str(base),
                converted_amount=amount,
                target_currency=str(target),
                rate=None,
                tier=resolution.tier,
                converted=False,
            )
        return ConversionResult(
            original_amount=amount,
            original_currency=str(base),
            converted_amount=round2(amount * resolution.rate),
            target_currency=str(target),
            rate=resolution.rate,
            tier=resolution.tier,
            converted=True,
        )

    def convert_many(
        self,
        items: Iterable[Tuple[float, Optional[str]]],
        target: str,
        organization_id: Optional[int] = None,
    ) -> float:
        """Sum `(amount, currency)` pairs into one total in `target`.

        Items without a currency are taken to be in the target already.
        """
        total = 0.0
        for amount, currency in items:
            if not amount:
                continue
            try:
                total += self.convert(amount, currency or target, target, organization_id)
            except RateEngineError as exc:
                logger.warning("skipping item %s %s: %s", amount, currency, exc)
                total += amount
        return round2(total)

    def convert_batch(
        self,
        conversions: Iterable[Tuple[float, str, str]],
        organization_id: Optional[int] = None,
    ) -> List[BatchConversion]:
        """Convert each `(amount, from, to)` independently; bad entries carry an error."""
        results: List[BatchConversion] = []
        for amount, base, target in conversions:
            try:
                result = self.convert_detailed(amount, base, target, organization_id)
            except RateValidationError as exc:
                results.append(BatchConversion(amount, base, target, error=str(exc)))
                continue
            results.append(BatchConversion(amount, base, target, result=result))
        logger.info(
            "batch conversion: %s/%s converted",
            sum(1 for r in results if r.result and r.result.converted),
            len(results),
        )
        return results

    def display_currency_for(
        self, user_id: Optional[int], organization_id: Optional[int] = None
    ) -> str:
        """User preference, then organization analytics/default, then fallback."""
        fallback = self.config.fallback_currency
        if self.records is None:
            return fallback
        if user_id is not None:
            owner = self.records.get_user(user_id)
            if owner is not None:
                if owner.display_currency:
                    return owner.display_currency
                if organization_id is None:
                    organization_id = owner.organization_id
        if organization_id is not None:
            org = self.records.get_organization(organization_id)
            if org is not None:
                return org.analytics_currency or org.default_currency or fallback
        return fallback

    # ------------------------------------------------------------------
    def _fetch_live(self, base: str, target: str) -> Optional[Resolution]:
        if self.client is None:
            return None
        try:
            pair = self.client.fetch_pair(base, target)
        except RateEngineError as exc:
            logger.warning(
                "live fetch failed for %s->%s: %s: %s",
                base,
                target,
                type(exc).__name__,
                exc,
                extra={"base": base, "target": target, "tier": TIER_LIVE},
            )
            return None
        try:
            self.store.upsert(
                None,
                base,
                target,
                pair.rate,
                SOURCE_API,
                self.config.cache_ttl,
                provenance=Provenance(
                    time_last_update=pair.time_last_update,
                    time_next_update=pair.time_next_update,
                ),
            )
        except Exception:
            # the fresh rate is still good even if caching it failed
            logger.exception("could not cache live rate %s->%s", base, target)
        return Resolution(pair.rate, TIER_LIVE, SOURCE_API)
