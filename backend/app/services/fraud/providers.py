"""
External Score Providers

Contracts for the AI context scorer and the behavioral pattern scorer,
plus HTTP implementations. Every call carries a timeout; any transport
failure, bad status or malformed body surfaces as ExternalDependencyError.

Providers never retry. Retry and degradation belong to the cycle
orchestrator.
"""
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from ..errors import ExternalDependencyError

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 10.0


class ContextScoreProvider(ABC):
    """
    AI analysis of the feedback transcript.

    Returns a LEGITIMACY score in [0, 1] (1.0 = authentic feedback).
    """

    name = "context"

    @abstractmethod
    def get_context_score(self, feedback_text: Optional[str], transaction_meta: Dict[str, Any]) -> float:
        raise NotImplementedError


class BehavioralScoreProvider(ABC):
    """
    Customer behavior pattern analysis.

    Returns a RISK score in [0, 1] (1.0 = strongest fraud pattern).
    The orchestrator inverts it before scoring.
    """

    name = "behavioral"

    @abstractmethod
    def get_behavioral_score(self, customer_history: Dict[str, Any]) -> float:
        raise NotImplementedError


class UnconfiguredContextProvider(ContextScoreProvider):
    """Stand-in when no context scorer is configured. Always unavailable."""

    def get_context_score(self, feedback_text, transaction_meta) -> float:
        raise ExternalDependencyError(self.name, "no context provider configured")


class UnconfiguredBehavioralProvider(BehavioralScoreProvider):
    """Stand-in when no behavioral scorer is configured. Always unavailable."""

    def get_behavioral_score(self, customer_history) -> float:
        raise ExternalDependencyError(self.name, "no behavioral provider configured")


def _post_for_score(dependency: str, url: str, payload: Dict[str, Any], timeout_s: float) -> float:
    try:
        r = requests.post(url, json=payload, timeout=timeout_s)
        r.raise_for_status()
        body = r.json()
    except requests.Timeout:
        raise ExternalDependencyError(dependency, f"timed out after {timeout_s}s")
    except requests.RequestException as e:
        raise ExternalDependencyError(dependency, f"request failed: {e}")
    except ValueError:
        raise ExternalDependencyError(dependency, "response was not valid JSON")

    score = body.get("score") if isinstance(body, dict) else None
    if isinstance(score, bool) or not isinstance(score, (int, float)) or math.isnan(score) or not 0.0 <= score <= 1.0:
        raise ExternalDependencyError(dependency, f"response carried no score in [0, 1]: {score!r}")

    return float(score)


class HttpContextScoreProvider(ContextScoreProvider):
    """POSTs {feedback_text, transaction} and expects {"score": float}."""

    def __init__(self, url: str, timeout_s: float = DEFAULT_TIMEOUT_SECONDS):
        self.url = url
        self.timeout_s = timeout_s

    def get_context_score(self, feedback_text, transaction_meta) -> float:
        payload = {"feedback_text": feedback_text or "", "transaction": transaction_meta}
        return _post_for_score(self.name, self.url, payload, self.timeout_s)


class HttpBehavioralScoreProvider(BehavioralScoreProvider):
    """POSTs {customer_history} and expects {"score": float} (risk)."""

    def __init__(self, url: str, timeout_s: float = DEFAULT_TIMEOUT_SECONDS):
        self.url = url
        self.timeout_s = timeout_s

    def get_behavioral_score(self, customer_history) -> float:
        payload = {"customer_history": customer_history}
        return _post_for_score(self.name, self.url, payload, self.timeout_s)


def build_providers(settings):
    """Context and behavioral providers for the configured URLs."""
    if settings.context_provider_url:
        context = HttpContextScoreProvider(settings.context_provider_url, settings.provider_timeout_seconds)
    else:
        logger.warning("VOCILIA_CONTEXT_PROVIDER_URL not set; every assessment will be degraded")
        context = UnconfiguredContextProvider()

    if settings.behavioral_provider_url:
        behavioral = HttpBehavioralScoreProvider(settings.behavioral_provider_url, settings.provider_timeout_seconds)
    else:
        logger.warning("VOCILIA_BEHAVIORAL_PROVIDER_URL not set; every assessment will be degraded")
        behavioral = UnconfiguredBehavioralProvider()

    return context, behavioral
