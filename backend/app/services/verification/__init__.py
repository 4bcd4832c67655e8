"""
Vocilia Verification - Weekly Verification Cycle

Tolerance matching, verification database lifecycle, deadlines and the
cycle orchestrator that ties them to fraud scoring and invoicing.
"""
from ..errors import (
    VerificationError, ValidationError, InvalidInputError, RecordNotFoundError,
    InvalidStateTransitionError, DuplicateError, ExternalDependencyError,
    InvalidScoreRangeError, ConfigurationError,
)
from .tolerance_matcher import match, build_tolerance_window
from .state_machine import DatabaseStateMachine, CycleStateMachine
from .repository import VerificationDatabaseRepository, VerificationCycleRepository
from .database_manager import VerificationDatabaseManager
from .deadline_engine import DeadlineEngine, DeadlineScheduler, calculate_deadline
from .cycle_orchestrator import CycleOrchestrator, CycleLockRegistry, parse_cycle_week

__all__ = [
    # Errors
    "VerificationError", "ValidationError", "InvalidInputError", "RecordNotFoundError",
    "InvalidStateTransitionError", "DuplicateError", "ExternalDependencyError",
    "InvalidScoreRangeError", "ConfigurationError",
    # Matching
    "match", "build_tolerance_window",
    # State machines and persistence
    "DatabaseStateMachine", "CycleStateMachine",
    "VerificationDatabaseRepository", "VerificationCycleRepository",
    # Services
    "VerificationDatabaseManager",
    "DeadlineEngine", "DeadlineScheduler", "calculate_deadline",
    "CycleOrchestrator", "CycleLockRegistry", "parse_cycle_week",
]
