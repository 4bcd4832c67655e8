"""
Tests for the weighted fraud composite.

Weights: context 0.40, keyword 0.20, behavioral 0.30, transaction 0.10.
A transaction passes when composite >= 0.70.
"""
import math
import pytest

from app.config import ConfigurationError
from app.services.fraud.scoring import (
    FraudScorer, invert_risk_score, risk_level_for, recommendation_for, primary_reason_for,
)
from app.services.errors import InvalidScoreRangeError, ValidationError


# =============================================================================
# TEST: COMPOSITE
# =============================================================================

class TestComposite:
    """Full four-component scoring."""

    def test_all_clean_scores_one(self):
        result = FraudScorer().score(1.0, 1.0, 1.0, 1.0)

        assert result.composite == 1.0
        assert result.passed is True
        assert result.risk_level == "low"
        assert result.degraded is False

    def test_weighted_sum(self):
        """0.4 * 0.75 + 0.2 + 0.3 + 0.1 = 0.9"""
        result = FraudScorer().score(0.75, 1.0, 1.0, 1.0)

        assert result.composite == 0.9
        assert result.breakdown["context"] == 0.3

    def test_threshold_is_inclusive(self):
        """0.4 * 0.25 + 0.2 + 0.3 + 0.1 = 0.70 exactly."""
        result = FraudScorer().score(0.25, 1.0, 1.0, 1.0)

        assert result.composite == 0.7
        assert result.passed is True

    def test_below_threshold_fails(self):
        result = FraudScorer().score(0.0, 1.0, 1.0, 0.5)

        assert result.composite == pytest.approx(0.55)
        assert result.passed is False

    @pytest.mark.parametrize("component", ["context", "keyword", "behavioral", "transaction"])
    def test_monotonic_in_every_component(self, component):
        scorer = FraudScorer()
        base = {"context_score": 0.5, "keyword_score": 0.5, "behavioral_score": 0.5, "transaction_score": 0.5}
        higher = dict(base, **{f"{component}_score": 0.9})

        assert scorer.score(**higher).composite > scorer.score(**base).composite

    def test_custom_threshold(self):
        result = FraudScorer(threshold=0.95).score(0.75, 1.0, 1.0, 1.0)

        assert result.passed is False
        assert result.threshold == 0.95


# =============================================================================
# TEST: RANGE CHECKS
# =============================================================================

class TestScoreRange:
    """Scores outside [0, 1] are upstream bugs and are never clamped."""

    @pytest.mark.parametrize("bad", [1.1, -0.01, math.nan, None, True])
    def test_out_of_range_raises(self, bad):
        with pytest.raises(InvalidScoreRangeError):
            FraudScorer().score(bad, 1.0, 1.0, 1.0)

    def test_range_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            FraudScorer().score(1.0, 1.0, 2.0, 1.0)

    def test_invert_risk_score(self):
        assert invert_risk_score(0.2) == 0.8
        assert invert_risk_score(0.0) == 1.0

        with pytest.raises(InvalidScoreRangeError):
            invert_risk_score(1.5)


# =============================================================================
# TEST: WEIGHTS
# =============================================================================

class TestWeights:

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationError) as exc_info:
            FraudScorer(weights={"context": 0.5, "keyword": 0.2, "behavioral": 0.3, "transaction": 0.1})

        assert "sum to 1.0" in str(exc_info.value)

    def test_weights_must_name_every_component(self):
        with pytest.raises(ConfigurationError):
            FraudScorer(weights={"context": 0.6, "keyword": 0.4})

    def test_alternative_weight_set(self):
        scorer = FraudScorer(weights={"context": 0.25, "keyword": 0.25, "behavioral": 0.25, "transaction": 0.25})

        assert scorer.score(1.0, 0.0, 1.0, 0.0).composite == 0.5


# =============================================================================
# TEST: DEGRADED SCORING
# =============================================================================

class TestDegradedScoring:
    """Missing components re-normalize the remaining weights."""

    def test_missing_behavioral_renormalizes(self):
        result = FraudScorer().score_available({
            "context": 0.75, "keyword": 1.0, "behavioral": None, "transaction": 1.0,
        })

        # (0.3 + 0.2 + 0.1) / 0.7
        assert result.composite == pytest.approx(0.857143)
        assert result.degraded is True
        assert result.missing_components == ["behavioral"]
        assert sum(result.weights.values()) == pytest.approx(1.0, abs=1e-5)
        assert "behavioral" not in result.weights

    def test_all_components_present_is_not_degraded(self):
        result = FraudScorer().score_available({
            "context": 0.75, "keyword": 1.0, "behavioral": 1.0, "transaction": 1.0,
        })

        assert result.degraded is False
        assert result.composite == 0.9

    def test_no_components_raises(self):
        with pytest.raises(ValidationError):
            FraudScorer().score_available({"context": None, "behavioral": None})

    def test_unknown_component_raises(self):
        with pytest.raises(ValidationError):
            FraudScorer().score_available({"context": 1.0, "sentiment": 0.5})


# =============================================================================
# TEST: RISK LEVELS
# =============================================================================

@pytest.mark.parametrize("composite,expected", [
    (1.0, "low"),
    (0.9, "low"),
    (0.7, "medium"),
    (0.45, "high"),
    (0.3, "critical"),
    (0.0, "critical"),
])
def test_risk_level_bands(composite, expected):
    assert risk_level_for(composite) == expected


# =============================================================================
# TEST: ADVISORY DECISION
# =============================================================================

class TestRecommendation:
    """Recommendation from the risk band, reason from the weakest component."""

    def test_clean_result_is_allowed(self):
        result = FraudScorer().score(1.0, 1.0, 1.0, 1.0)

        assert result.recommendation == "allow"
        assert result.primary_reason == "low_risk_profile"

    def test_medium_risk_names_the_context(self):
        """Context shortfall 0.4 outweighs transaction shortfall 0.05."""
        result = FraudScorer().score(0.0, 1.0, 1.0, 0.5)

        assert result.risk_level == "medium"
        assert result.recommendation == "monitor_closely"
        assert result.primary_reason == "suspicious_context_patterns"

    def test_high_risk_names_the_behavior(self):
        """Composite 0.4; behavioral shortfall 0.3 is the largest."""
        result = FraudScorer().score(1.0, 0.0, 0.0, 0.0)

        assert result.risk_level == "high"
        assert result.recommendation == "manual_review"
        assert result.primary_reason == "abnormal_behavioral_patterns"

    def test_critical_risk_is_blocked(self):
        result = FraudScorer().score(0.0, 0.0, 0.0, 0.0)

        assert result.recommendation == "block_immediately"

    def test_degraded_result_always_goes_to_review(self):
        result = FraudScorer().score_available({
            "context": 0.75, "keyword": 1.0, "behavioral": None, "transaction": 1.0,
        })

        assert result.risk_level == "low"
        assert result.recommendation == "manual_review"

    def test_keyword_reason(self):
        reason = primary_reason_for(
            {"context": 1.0, "keyword": 0.0, "behavioral": 1.0, "transaction": 1.0},
            {"context": 0.4, "keyword": 0.2, "behavioral": 0.3, "transaction": 0.1},
            "high",
        )

        assert reason == "red_flag_keywords_detected"

    def test_no_shortfall_is_insufficient_data(self):
        reason = primary_reason_for({"context": 1.0}, {"context": 1.0}, "medium")

        assert reason == "insufficient_data"

    @pytest.mark.parametrize("level,expected", [
        ("critical", "block_immediately"),
        ("high", "manual_review"),
        ("medium", "monitor_closely"),
        ("low", "allow"),
    ])
    def test_bands(self, level, expected):
        assert recommendation_for(level) == expected
