"""Vocilia Verification - Fraud Scoring"""
from .keyword_detector import KeywordDetector, KeywordService, DEFAULT_KEYWORDS
from .scoring import FraudScorer, invert_risk_score, risk_level_for, recommendation_for, primary_reason_for
from .providers import (
    ContextScoreProvider, BehavioralScoreProvider,
    HttpContextScoreProvider, HttpBehavioralScoreProvider,
    build_providers,
)

__all__ = [
    "KeywordDetector", "KeywordService", "DEFAULT_KEYWORDS",
    "FraudScorer", "invert_risk_score", "risk_level_for", "recommendation_for", "primary_reason_for",
    "ContextScoreProvider", "BehavioralScoreProvider",
    "HttpContextScoreProvider", "HttpBehavioralScoreProvider",
    "build_providers",
]
