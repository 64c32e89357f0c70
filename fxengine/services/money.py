"""Money / rounding helpers.

Centralized so conversions, migrations and totals use identical rounding
semantics (two decimals, half-up).
"""

from __future__ import annotations
from decimal import Decimal, ROUND_HALF_UP


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
