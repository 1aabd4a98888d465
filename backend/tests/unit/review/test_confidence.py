"""Unit tests for confidence score normalization.

Run with: pytest backend/tests/unit/review/test_confidence.py -v
"""

import math

import pytest

from matchdesk.review.confidence import (
    BreakdownScore,
    NumericScore,
    TierScore,
    confidence_tier,
    normalize,
    parse_score,
)


class TestParseScore:
    """Tests for classifying raw score payloads."""

    def test_number(self):
        assert parse_score(87) == NumericScore(87.0)

    def test_tier_label_is_case_insensitive(self):
        assert parse_score(" High ") == TierScore("high")

    def test_numeric_string(self):
        assert parse_score("77.5") == NumericScore(77.5)

    def test_breakdown_mapping(self):
        assert parse_score({"total": 81.4, "name": 40}) == BreakdownScore(81.4)

    def test_breakdown_object(self):
        class Breakdown:
            total = 66

        assert parse_score(Breakdown()) == BreakdownScore(66.0)

    @pytest.mark.parametrize("raw", [None, True, "excellent", float("nan"), {"name": 40}, []])
    def test_unusable_payloads(self, raw):
        assert parse_score(raw) is None


class TestNormalize:
    """Tests for mapping every representation onto [0, 100]."""

    def test_numeric_rounds_half_up_to_one_decimal(self):
        assert normalize(72.25) == 72.3
        assert normalize(72.35) == 72.4

    def test_values_below_one_are_not_rescaled(self):
        assert normalize(0.93) == 0.9
        assert normalize(0.5) == 0.5
        assert normalize(1) == 1.0
        assert confidence_tier(normalize(0.93)) == "low"

    def test_out_of_range_is_clamped(self):
        assert normalize(140) == 100.0
        assert normalize(-3) == 0.0
        assert normalize(math.inf) == 100.0
        assert normalize(-math.inf) == 0.0

    def test_tier_midpoints(self):
        assert normalize("high") == 85.0
        assert normalize("medium") == 70.0
        assert normalize("low") == 50.0

    def test_breakdown_rounds_to_integer(self):
        assert normalize({"total": 64.5}) == 65.0
        assert normalize({"total": 64.4}) == 64.0

    def test_unrecognized_input_is_zero(self):
        assert normalize(None) == 0.0
        assert normalize("excellent") == 0.0
        assert normalize(float("nan")) == 0.0

    def test_never_raises(self):
        for raw in [object(), b"90", {"total": "x"}, [1, 2], set()]:
            assert normalize(raw) == 0.0

    def test_monotonic_over_numbers(self):
        values = [0, 12.5, 50, 69.99, 70, 89.94, 90, 100]
        normalized = [normalize(v) for v in values]
        assert normalized == sorted(normalized)


class TestConfidenceTier:
    """Tests for tier bucketing boundaries."""

    @pytest.mark.parametrize(
        "score,tier",
        [(100, "high"), (90, "high"), (89.9, "medium"), (70, "medium"), (69.9, "low"), (0, "low")],
    )
    def test_boundaries(self, score, tier):
        assert confidence_tier(score) == tier

    def test_tier_midpoints_land_in_their_tier_except_high(self):
        """The high midpoint (85) sits below the high threshold (90)."""
        assert confidence_tier(normalize("high")) == "medium"
        assert confidence_tier(normalize("medium")) == "medium"
        assert confidence_tier(normalize("low")) == "low"
