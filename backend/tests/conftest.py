"""
Shared fixtures: in-memory SQLite session, settings, mocked score
providers and an orchestrator wired to all of them.
"""
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from app.database import build_engine, build_session_factory, init_db
from app.services.fraud.providers import ContextScoreProvider, BehavioralScoreProvider


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    db = build_session_factory(engine)()
    yield db
    db.close()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", provider_backoff_seconds=0.0, provider_timeout_seconds=2.0)


@pytest.fixture
def context_provider():
    """AI context scorer returning a legitimacy of 0.75."""
    provider = MagicMock(spec=ContextScoreProvider)
    provider.get_context_score.return_value = 0.75
    return provider


@pytest.fixture
def behavioral_provider():
    """Behavioral scorer returning a risk of 0.0 (clean)."""
    provider = MagicMock(spec=BehavioralScoreProvider)
    provider.get_behavioral_score.return_value = 0.0
    return provider


@pytest.fixture
def orchestrator(session, settings, context_provider, behavioral_provider):
    from app.services.verification import CycleOrchestrator

    return CycleOrchestrator(
        session,
        settings=settings,
        context_provider=context_provider,
        behavioral_provider=behavioral_provider,
        sleep=lambda seconds: None,
    )
