"""
Core Utility Functions.

Small helpers shared across the search pipeline.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import numpy as np


# =============================================================================
# Numbers
# =============================================================================

_NUMBER_NOISE = re.compile(r"[£$€,\s]")


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]. NaN collapses to low."""
    if math.isnan(value):
        return low
    return max(low, min(high, float(value)))


def parse_number(value: Any) -> float:
    """
    Parse a user-facing numeric value.

    Accepts plain numbers and strings with currency symbols, thousands
    separators and a trailing ``k`` ("£15,000", "15k", "2.0").

    Raises:
        ValueError: If the value is not numeric or not finite ("nan", "inf").
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, (int, float, np.integer, np.floating)):
        number = float(value)
    elif isinstance(value, str):
        text = _NUMBER_NOISE.sub("", value).lower()
        multiplier = 1.0
        if text.endswith("k"):
            multiplier = 1000.0
            text = text[:-1]
        number = float(text) * multiplier
    else:
        raise ValueError(f"Not a number: {value!r}")

    if not math.isfinite(number):
        raise ValueError(f"Not a finite number: {value!r}")
    return number


def mean(values: Iterable[float]) -> float:
    """Arithmetic mean, 0.0 for an empty input."""
    arr = np.fromiter(values, dtype=float)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


# =============================================================================
# Dates
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Vectors
# =============================================================================

def to_float_list(vector: Any) -> List[float]:
    """Convert an embedding (numpy array or sequence) to a JSON-safe list."""
    if isinstance(vector, np.ndarray):
        return vector.astype(float).tolist()
    return [float(v) for v in vector]
