"""Confidence score normalization.

The matching engine reports candidate scores in three shapes: a number on
the 0-100 scale, a tier label (``high``/``medium``/``low``), or a breakdown
object carrying a ``total``. Everything that sorts or filters on confidence
goes through ``normalize`` so all three land on one ordered scale.

``normalize`` never raises: it is called from sort keys and filters.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Union

# Tier midpoints. Fixed so tier and numeric scores stay comparable when sorting.
TIER_SCORES = {
    "high": 85.0,
    "medium": 70.0,
    "low": 50.0,
}

HIGH_THRESHOLD = 90.0
MEDIUM_THRESHOLD = 70.0

MIN_SCORE = 0.0
MAX_SCORE = 100.0


@dataclass(frozen=True)
class NumericScore:
    value: float


@dataclass(frozen=True)
class TierScore:
    tier: str


@dataclass(frozen=True)
class BreakdownScore:
    total: float


Score = Union[NumericScore, TierScore, BreakdownScore]


def _round_half_up(value: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _clamp(value: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def _as_number(value: Any) -> float | None:
    """Return a finite-or-infinite float for real numbers, None otherwise."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if math.isnan(number):
        return None
    return number


def parse_score(raw: Any) -> Score | None:
    """Classify a raw score payload into its tagged variant.

    Args:
        raw: Number, tier label, mapping or object with ``total``, or None

    Returns:
        The score variant, or None when the payload carries no usable score
    """
    if raw is None:
        return None
    if isinstance(raw, (NumericScore, TierScore, BreakdownScore)):
        return raw

    number = _as_number(raw)
    if number is not None:
        return NumericScore(number)

    if isinstance(raw, str):
        label = raw.strip().lower()
        if label in TIER_SCORES:
            return TierScore(label)
        try:
            number = float(label)
        except ValueError:
            return None
        return None if math.isnan(number) else NumericScore(number)

    total = raw.get("total") if isinstance(raw, dict) else getattr(raw, "total", None)
    total = _as_number(total)
    if total is not None:
        return BreakdownScore(total)

    return None


def normalize(raw: Any) -> float:
    """Map any score representation onto [0, 100].

    - Numbers are rounded to one decimal and clamped, with no
      rescaling of values below 1.
    - Tier labels map to fixed midpoints (high 85, medium 70, low 50).
    - Breakdowns use their ``total`` rounded to an integer.
    - Missing or unrecognised input is 0.0.
    """
    score = parse_score(raw)

    if isinstance(score, NumericScore):
        value = score.value
        if math.isinf(value):
            return _clamp(value)
        return _clamp(_round_half_up(value, 1))

    if isinstance(score, TierScore):
        return TIER_SCORES[score.tier]

    if isinstance(score, BreakdownScore):
        if math.isinf(score.total):
            return _clamp(score.total)
        return _clamp(_round_half_up(score.total, 0))

    return 0.0


def confidence_tier(score: float) -> str:
    """Bucket a normalized score: high >= 90, medium [70, 90), low < 70."""
    if score >= HIGH_THRESHOLD:
        return "high"
    if score >= MEDIUM_THRESHOLD:
        return "medium"
    return "low"
