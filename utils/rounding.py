from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# Fixed-point helpers. Values travel as floats; rounding goes through Decimal
# so 2.675 -> 2.68 the way the stored numbers expect.

def round_half_up(value: Optional[float], places: int = 4) -> Optional[float]:
    if value is None:
        return None
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))

def safe_div(numerator: float, denominator: float) -> float:
    """Division where a zero denominator yields 0.0 instead of raising."""
    if denominator == 0:
        return 0.0
    return numerator / denominator

def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
