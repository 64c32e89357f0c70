from __future__ import annotations

import re

from fxengine.core.errors import RateValidationError

_CODE_RE = re.compile(r"^[A-Z]{3}$")


class CurrencyCode(str):
    """Normalized ISO-4217 style code ("usd " -> "USD").

    Construct through `CurrencyCode.parse` at the system boundary; everything
    downstream can then trust the value without re-validating it.
    """

    __slots__ = ()

    @classmethod
    def parse(cls, value: object) -> "CurrencyCode":
        if isinstance(value, CurrencyCode):
            return value
        if not isinstance(value, str):
            raise RateValidationError(f"currency code must be a string, got {value!r}")
        normalized = value.strip().upper()
        if not _CODE_RE.match(normalized):
            raise RateValidationError(
                f"invalid currency code {value!r}: expected 3 letters"
            )
        return cls(normalized)


def parse_pair(base: object, target: object) -> tuple[CurrencyCode, CurrencyCode]:
    """Validate a directed pair for storage (base and target must differ)."""
    b, t = CurrencyCode.parse(base), CurrencyCode.parse(target)
    if b == t:
        raise RateValidationError("base and target currency cannot be the same")
    return b, t


def validate_rate(rate: object) -> float:
    try:
        value = float(rate)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise RateValidationError(f"rate must be numeric, got {rate!r}") from exc
    if not (0 < value < float("inf")):
        raise RateValidationError(f"rate must be a positive finite number, got {rate!r}")
    return value
