"""Domain models for the exchange-rate engine."""

from .constants import (
    API_SOURCES,
    RATE_SOURCES,
    SCOPE_GLOBAL,
)  # re-export
from .currency import CurrencyCode, parse_pair, validate_rate
from .rates import Provenance, RateRecord, scope_for
from .records import MonetaryRecord, Organization, Owner

__all__ = [
    "API_SOURCES",
    "RATE_SOURCES",
    "SCOPE_GLOBAL",
    "CurrencyCode",
    "parse_pair",
    "validate_rate",
    "Provenance",
    "RateRecord",
    "scope_for",
    "MonetaryRecord",
    "Organization",
    "Owner",
]
