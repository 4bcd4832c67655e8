"""
Fraud Scorer

Weighted legitimacy composite over four sub-scores:

    context      0.40   AI analysis of the feedback transcript
    keyword      0.20   red-flag keyword cleanliness
    behavioral   0.30   customer behavior cleanliness
    transaction  0.10   POS reconciliation confidence

PRECONDITION: every sub-score is legitimacy-oriented, 1.0 = clean.
Keyword and behavioral detectors produce risk scores; callers pass them
through invert_risk_score() first.

Out-of-range inputs are caller bugs and raise InvalidScoreRangeError.
They are never clamped.
"""
import math
from typing import Dict, Optional

from ...config import FRAUD_WEIGHTS, SCORE_COMPONENTS, validate_weights
from ...models.verification import FraudResult
from ..errors import InvalidScoreRangeError, ValidationError


DEFAULT_THRESHOLD = 0.70

# Risk bands over (1 - composite), highest first
RISK_LEVELS = [
    (0.70, "critical"),
    (0.55, "high"),
    (0.30, "medium"),
]

RECOMMENDATIONS = {
    "critical": "block_immediately",
    "high": "manual_review",
    "medium": "monitor_closely",
    "low": "allow",
}

# Reason named after the component that costs the most legitimacy
PRIMARY_REASONS = {
    "context": "suspicious_context_patterns",
    "keyword": "red_flag_keywords_detected",
    "behavioral": "abnormal_behavioral_patterns",
    "transaction": "transaction_anomalies",
}


def _check_score(name: str, value) -> float:
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidScoreRangeError(f"{name} score must be a number in [0, 1], got {value!r}")
    if math.isnan(value) or value < 0.0 or value > 1.0:
        raise InvalidScoreRangeError(f"{name} score must be in [0, 1], got {value}")
    return float(value)


def invert_risk_score(risk_score: float) -> float:
    """Turn a risk score (1.0 = worst) into a legitimacy score (1.0 = clean)."""
    return round(1.0 - _check_score("risk", risk_score), 6)


def risk_level_for(composite: float) -> str:
    """Risk level derived from the fraud probability 1 - composite."""
    risk = 1.0 - composite
    for floor, level in RISK_LEVELS:
        if risk >= floor - 1e-9:
            return level
    return "low"


def recommendation_for(risk_level: str, degraded: bool = False) -> str:
    if degraded:
        return "manual_review"
    return RECOMMENDATIONS[risk_level]


def primary_reason_for(components: Dict[str, float], weights: Dict[str, float], risk_level: str) -> str:
    """
    Component with the largest weighted shortfall from a clean 1.0.

    Low-risk results report low_risk_profile; a result where no
    component falls short reports insufficient_data.
    """
    if risk_level == "low":
        return "low_risk_profile"

    shortfall = {name: weights[name] * (1.0 - components[name]) for name in components}
    worst = max(shortfall, key=shortfall.get)
    if shortfall[worst] <= 0:
        return "insufficient_data"
    return PRIMARY_REASONS[worst]


class FraudScorer:
    """
    Stateless composite calculator.

    Weights are validated on construction; an inconsistent set raises
    ConfigurationError so a misconfigured process fails at startup.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None, threshold: float = DEFAULT_THRESHOLD):
        self.weights = validate_weights(weights if weights is not None else FRAUD_WEIGHTS)
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be within [0, 1]")
        self.threshold = threshold

    @classmethod
    def from_settings(cls, settings) -> "FraudScorer":
        return cls(weights=settings.fraud_weights, threshold=settings.fraud_threshold)

    def score(
        self,
        context_score: float,
        keyword_score: float,
        behavioral_score: float,
        transaction_score: float,
    ) -> FraudResult:
        """Composite over all four components."""
        components = {
            "context": _check_score("context", context_score),
            "keyword": _check_score("keyword", keyword_score),
            "behavioral": _check_score("behavioral", behavioral_score),
            "transaction": _check_score("transaction", transaction_score),
        }
        return self._compose(components, dict(self.weights), missing=[])

    def score_available(self, components: Dict[str, Optional[float]]) -> FraudResult:
        """
        Degraded composite over whichever components are present.

        Missing (None) components are dropped and the remaining weights
        are re-normalized to sum to 1.0. The result is flagged degraded;
        callers must route it to manual review instead of acting on
        passed directly.
        """
        unknown = set(components) - set(SCORE_COMPONENTS)
        if unknown:
            raise ValidationError(f"Unknown score components: {sorted(unknown)}")

        available = {}
        missing = []
        for name in SCORE_COMPONENTS:
            value = components.get(name)
            if value is None:
                missing.append(name)
            else:
                available[name] = _check_score(name, value)

        if not available:
            raise ValidationError("At least one score component is required")

        if not missing:
            return self._compose(available, dict(self.weights), missing=[])

        available_weight = sum(self.weights[name] for name in available)
        if available_weight <= 0:
            raise ValidationError("Available components carry no weight")

        weights = {name: self.weights[name] / available_weight for name in available}
        return self._compose(available, weights, missing=missing)

    def _compose(self, components: Dict[str, float], weights: Dict[str, float], missing) -> FraudResult:
        breakdown = {name: components[name] * weights[name] for name in components}
        composite = round(min(1.0, max(0.0, sum(breakdown.values()))), 6)
        risk_level = risk_level_for(composite)

        return FraudResult(
            composite=composite,
            passed=composite >= self.threshold,
            threshold=self.threshold,
            risk_level=risk_level,
            components=components,
            weights={name: round(w, 6) for name, w in weights.items()},
            breakdown={name: round(v, 6) for name, v in breakdown.items()},
            degraded=bool(missing),
            missing_components=list(missing),
            recommendation=recommendation_for(risk_level, degraded=bool(missing)),
            primary_reason=primary_reason_for(components, weights, risk_level),
        )
