"""Shared utility functions for services."""
import math
import re
from typing import Optional


def is_finite_number(value) -> bool:
    """True for real ints/floats that are not NaN or infinite (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def positive_or_none(value) -> Optional[float]:
    """Return ``value`` as a float when it is a finite number above zero."""
    if is_finite_number(value) and value > 0:
        return float(value)
    return None


def median(values: list[float]) -> float:
    """Median of a list; 0.0 when empty."""
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def mean(values: list[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def parse_count(value) -> Optional[int]:
    """Parse review/rating counts into an int.

    Handles formats like '1.2K', '10K+', '500', '1,000', etc.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.lower().replace(",", "").strip()
        if not cleaned:
            return None
        # Handle "1K+", "1.2k" style
        if "k" in cleaned:
            num_part = cleaned.split("k")[0].strip().rstrip("+").strip()
            try:
                return int(float(num_part) * 1000)
            except (ValueError, TypeError):
                return None
        # Extract first number
        match = re.search(r"(\d+)", cleaned)
        if match:
            return int(match.group(1))
    return None


def normalize_keyword(keyword: str | None) -> str:
    """Lower-case and collapse whitespace so equivalent keywords group together."""
    return " ".join((keyword or "").lower().split())
