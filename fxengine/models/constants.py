"""Domain constants for rate rows and monetary records.

Kept as plain sets/strings so SQL CHECK constraints and validators share one
source of truth.
"""

from typing import FrozenSet

SCOPE_GLOBAL = "global"
ORG_SCOPE_PREFIX = "organization:"

SOURCE_SYSTEM = "system"
SOURCE_USER = "user"
SOURCE_API = "api"
SOURCE_API_CACHED = "api_cached"
SOURCE_FALLBACK = "fallback"

RATE_SOURCES: FrozenSet[str] = frozenset(
    {SOURCE_SYSTEM, SOURCE_USER, SOURCE_API, SOURCE_API_CACHED, SOURCE_FALLBACK}
)
# Rows the janitor is allowed to retire; user / system rows never expire on their own.
API_SOURCES: FrozenSet[str] = frozenset({SOURCE_API, SOURCE_API_CACHED})

RECORD_KINDS: FrozenSet[str] = frozenset({"product", "order"})

# Resolution tiers, in cascade order
TIER_IDENTITY = "identity"
TIER_TENANT_DIRECT = "tenant_direct"
TIER_TENANT_REVERSE = "tenant_reverse"
TIER_GLOBAL = "global"
TIER_LIVE = "live"
TIER_STALE = "stale"
TIER_NONE = "none"
