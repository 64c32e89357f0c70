from __future__ import annotations

"""ExchangeRate-API (v6) client.

Every call is bounded by the configured timeout and fails with a typed
`ProviderError` subclass instead of a silent default, so callers (resolver,
scheduler, routers) decide how to degrade. `fetch_latest` also writes the full
rate table through to the store as global rows.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from fxengine.core.config import EngineConfig
from fxengine.core.errors import ConfigurationError, InvalidResponse, QuotaExceeded
from fxengine.db.rate_store import RateStore
from fxengine.models.constants import SOURCE_API
from fxengine.models.currency import CurrencyCode
from fxengine.models.rates import Provenance
from fxengine.services.http_client import get_json

logger = logging.getLogger("fxengine.provider")

FetchJson = Callable[..., Dict[str, Any]]


@dataclass(frozen=True)
class LatestRates:
    base: str
    rates: Dict[str, float]
    time_last_update: Optional[datetime] = None
    time_next_update: Optional[datetime] = None
    cached: int = 0


@dataclass(frozen=True)
class PairRate:
    base: str
    target: str
    rate: float
    converted_amount: Optional[float] = None
    time_last_update: Optional[datetime] = None
    time_next_update: Optional[datetime] = None


@dataclass(frozen=True)
class QuotaInfo:
    limit: int
    remaining: int
    refresh_day_of_month: Optional[int] = None

    @property
    def remaining_fraction(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit

    def as_status(self) -> Dict[str, Any]:
        return {
            "remaining": self.remaining,
            "total": self.limit,
            "percentage": round(self.remaining_fraction * 100, 1),
        }


@dataclass
class ExchangeRateApiClient:
    config: EngineConfig
    store: RateStore
    fetch_json: FetchJson = field(default=get_json)

    # ------------------------------------------------------------------
    def fetch_latest(self, base: str, source: str = SOURCE_API) -> LatestRates:
        code = CurrencyCode.parse(base)
        payload = self._call(f"latest/{code}")
        raw_rates = payload.get("conversion_rates")
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise InvalidResponse("latest response carries no conversion_rates")
        rates: Dict[str, float] = {}
        for target, value in raw_rates.items():
            if isinstance(value, (int, float)) and value > 0:
                rates[str(target).upper()] = float(value)
        if not rates:
            raise InvalidResponse("latest response carries no positive rates")
        latest = LatestRates(
            base=str(code),
            rates=rates,
            time_last_update=_provider_time(payload, "time_last_update"),
            time_next_update=_provider_time(payload, "time_next_update"),
        )
        written = self.store.upsert_many(
            None,
            latest.base,
            latest.rates,
            source=source,
            ttl=self.config.cache_ttl,
            provenance=Provenance(
                time_last_update=latest.time_last_update,
                time_next_update=latest.time_next_update,
            ),
        )
        logger.info(
            "cached %s rates for %s", written, latest.base, extra={"base": latest.base}
        )
        return replace(latest, cached=written)

    def fetch_pair(
        self, base: str, target: str, amount: Optional[float] = None
    ) -> PairRate:
        b, t = CurrencyCode.parse(base), CurrencyCode.parse(target)
        path = f"pair/{b}/{t}"
        if amount is not None:
            path = f"{path}/{amount}"
        payload = self._call(path)
        rate = payload.get("conversion_rate")
        if not isinstance(rate, (int, float)) or rate <= 0:
            raise InvalidResponse(f"pair response has no usable rate for {b}->{t}")
        converted = payload.get("conversion_result")
        return PairRate(
            base=str(b),
            target=str(t),
            rate=float(rate),
            converted_amount=float(converted)
            if isinstance(converted, (int, float))
            else None,
            time_last_update=_provider_time(payload, "time_last_update"),
            time_next_update=_provider_time(payload, "time_next_update"),
        )

    def fetch_supported_codes(self) -> List[Tuple[str, str]]:
        payload = self._call("codes")
        codes = payload.get("supported_codes")
        if not isinstance(codes, list):
            raise InvalidResponse("codes response carries no supported_codes")
        result: List[Tuple[str, str]] = []
        for entry in codes:
            if isinstance(entry, (list, tuple)) and len(entry) >= 2:
                result.append((str(entry[0]), str(entry[1])))
        return result

    def fetch_quota(self) -> QuotaInfo:
        payload = self._call("quota")
        limit = payload.get("plan_quota", payload.get("quota_limit"))
        remaining = payload.get("requests_remaining")
        if remaining is None and "quota_used" in payload and limit is not None:
            remaining = _as_int(limit) - _as_int(payload["quota_used"])
        if limit is None or remaining is None:
            raise InvalidResponse("quota response is missing plan_quota / remaining")
        refresh = payload.get("refresh_day_of_month")
        return QuotaInfo(
            limit=_as_int(limit),
            remaining=max(0, _as_int(remaining)),
            refresh_day_of_month=_as_int(refresh) if refresh is not None else None,
        )

    # ------------------------------------------------------------------
    def _call(self, path: str) -> Dict[str, Any]:
        if not self.config.has_api_key:
            raise ConfigurationError("EXCHANGE_RATE_API_KEY is not configured")
        url = f"{self.config.api_base_url}/{path}"
        payload = self.fetch_json(
            url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Accept": "application/json",
            },
            timeout=self.config.http_timeout_seconds,
            retries=self.config.http_retries,
        )
        result = payload.get("result")
        if result != "success":
            error_type = payload.get("error-type") or "unknown-error"
            if error_type == "quota-reached":
                raise QuotaExceeded("provider request quota reached")
            raise InvalidResponse(f"provider error: {error_type}")
        return payload


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidResponse(f"expected an integer, got {value!r}") from exc


def _provider_time(payload: Mapping[str, Any], prefix: str) -> Optional[datetime]:
    unix = payload.get(f"{prefix}_unix")
    if isinstance(unix, (int, float)):
        return datetime.fromtimestamp(unix, tz=timezone.utc)
    text = payload.get(f"{prefix}_utc")
    if isinstance(text, str) and text:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None
