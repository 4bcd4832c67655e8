"""
Verification State Machines

Deterministic state machines for weekly verification cycles and their
per-store verification databases. Transitions are forward-only and
every transition is written to the append-only cycle event trail.

Databases:
    PREPARING → READY → DOWNLOADED → SUBMITTED → PROCESSED
    READY | DOWNLOADED → EXPIRED  (deadline sweep)

Cycles:
    PENDING → PREPARING → READY → IN_PROGRESS → COMPLETED
    any non-terminal state → CANCELLED
"""
import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from ...models.db_models import (
    CycleStatus, DatabaseStatus, ActorType,
    VerificationCycleDB, CycleEventDB, utcnow,
)
from ..errors import InvalidStateTransitionError

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# - BUSINESS: the business downloads and submits its verification database
# - SYSTEM: preparation, processing and deadline expiry run automatically
# - ADMIN: cancellation and manual review resolution
#
# timestamp_field is stamped when the state is entered.
#
# =============================================================================

DATABASE_STATE_CONFIG = {
    DatabaseStatus.PREPARING: {
        "description": "Database created, transactions being batched",
        "allowed_transitions": [DatabaseStatus.READY],
        "entry_authority": "SYSTEM",
        "timestamp_field": None,
    },
    DatabaseStatus.READY: {
        "description": "Export files built, awaiting business download",
        "allowed_transitions": [
            DatabaseStatus.DOWNLOADED,
            DatabaseStatus.SUBMITTED,
            DatabaseStatus.EXPIRED,
        ],
        "entry_authority": "SYSTEM",
        "timestamp_field": "ready_at",
    },
    DatabaseStatus.DOWNLOADED: {
        "description": "Business downloaded the database, reconciliation in progress",
        "allowed_transitions": [
            DatabaseStatus.SUBMITTED,
            DatabaseStatus.EXPIRED,
        ],
        "entry_authority": "BUSINESS",
        "timestamp_field": "downloaded_at",
    },
    DatabaseStatus.SUBMITTED: {
        "description": "Business submitted verification decisions",
        "allowed_transitions": [DatabaseStatus.PROCESSED],
        "entry_authority": "BUSINESS",
        "timestamp_field": "submitted_at",
    },
    DatabaseStatus.PROCESSED: {
        "description": "All transactions classified",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "SYSTEM",
        "timestamp_field": "processed_at",
    },
    DatabaseStatus.EXPIRED: {
        "description": "Deadline passed without submission, transactions forfeited",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "SYSTEM",
        "timestamp_field": "expired_at",
    },
}


CYCLE_STATE_CONFIG = {
    CycleStatus.PENDING: {
        "description": "Cycle opened for the week",
        "allowed_transitions": [CycleStatus.PREPARING, CycleStatus.CANCELLED],
        "entry_authority": "SYSTEM",
        "timestamp_field": None,
    },
    CycleStatus.PREPARING: {
        "description": "Creating verification databases per store",
        "allowed_transitions": [CycleStatus.READY, CycleStatus.CANCELLED],
        "entry_authority": "SYSTEM",
        "timestamp_field": None,
    },
    CycleStatus.READY: {
        "description": "Every created database is ready for download",
        "allowed_transitions": [
            CycleStatus.IN_PROGRESS,
            CycleStatus.COMPLETED,  # Every database expired untouched
            CycleStatus.CANCELLED,
        ],
        "entry_authority": "SYSTEM",
        "timestamp_field": "prepared_at",
    },
    CycleStatus.IN_PROGRESS: {
        "description": "Businesses are downloading and submitting",
        "allowed_transitions": [CycleStatus.COMPLETED, CycleStatus.CANCELLED],
        "entry_authority": "BUSINESS",
        "timestamp_field": None,
    },
    CycleStatus.COMPLETED: {
        "description": "Every database processed or expired, invoice issued",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "SYSTEM",
        "timestamp_field": "completed_at",
    },
    CycleStatus.CANCELLED: {
        "description": "Cycle cancelled before completion",
        "allowed_transitions": [],  # Terminal state
        "entry_authority": "ADMIN",
        "timestamp_field": "cancelled_at",
    },
}


# =============================================================================
# STATE MACHINES
# =============================================================================

class _StateMachine:
    entity = ""
    config: Dict[Any, Dict[str, Any]] = {}

    def __init__(self, db_session):
        """Initialize with database session."""
        self.db = db_session

    def get_state_config(self, state) -> Dict[str, Any]:
        """Get configuration for a state."""
        return self.config.get(state, {})

    def can_transition(self, from_state, to_state) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        allowed_transitions = self.get_state_config(from_state).get("allowed_transitions", [])
        if to_state in allowed_transitions:
            return True, "Transition allowed"

        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def ensure_transition(self, from_state, to_state, entity_id: Optional[str] = None):
        """Raise InvalidStateTransitionError unless the transition is allowed."""
        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            logger.warning(f"Rejected {self.entity} {entity_id or ''} transition: {reason}")
            raise InvalidStateTransitionError(self.entity, from_state.value, to_state.value, entity_id)

    def is_terminal_state(self, state) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return len(self.get_state_config(state).get("allowed_transitions", [])) == 0

    def get_next_states(self, state) -> List:
        """Get possible next states from current state."""
        return self.get_state_config(state).get("allowed_transitions", [])

    def timestamp_field(self, state) -> Optional[str]:
        return self.get_state_config(state).get("timestamp_field")

    def log_event(
        self,
        cycle_id: str,
        event_type: str,
        actor: ActorType,
        description: str,
        database_id: Optional[str] = None,
        from_state=None,
        to_state=None,
        trigger: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CycleEventDB:
        """Append an event to the cycle trail (immutable)."""
        event = CycleEventDB(
            id=str(uuid4()),
            cycle_id=cycle_id,
            verification_database_id=database_id,
            event_type=event_type,
            actor=actor,
            from_state=from_state.value if from_state is not None else None,
            to_state=to_state.value if to_state is not None else None,
            trigger=trigger,
            description=description,
            event_metadata=metadata or {},
        )
        self.db.add(event)
        return event


class DatabaseStateMachine(_StateMachine):
    """
    Verification database lifecycle.

    Status writes go through the repository's conditional update; this
    class validates the edge and records the trail entry.
    """
    entity = "VerificationDatabase"
    config = DATABASE_STATE_CONFIG

    def record_transition(
        self,
        cycle_id: str,
        database_id: str,
        from_state: DatabaseStatus,
        to_state: DatabaseStatus,
        trigger: str,
        actor: ActorType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CycleEventDB:
        return self.log_event(
            cycle_id=cycle_id,
            database_id=database_id,
            event_type="state_transition",
            actor=actor,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            description=f"Database changed from {from_state.value} to {to_state.value}. Trigger: {trigger}",
            metadata=metadata,
        )


class CycleStateMachine(_StateMachine):
    """
    Weekly cycle lifecycle.

    Callers hold the cycle row lock, so the status is written directly
    on the loaded row.
    """
    entity = "VerificationCycle"
    config = CYCLE_STATE_CONFIG

    def transition(
        self,
        cycle: VerificationCycleDB,
        to_state: CycleStatus,
        trigger: str,
        actor: ActorType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CycleStatus:
        """
        Execute a state transition.

        Raises InvalidStateTransitionError if the edge is not allowed.
        """
        from_state = cycle.status
        self.ensure_transition(from_state, to_state, cycle.id)

        now = utcnow()
        stamp = self.timestamp_field(to_state)
        if stamp:
            setattr(cycle, stamp, now)
        cycle.status = to_state
        cycle.updated_at = now

        self.log_event(
            cycle_id=cycle.id,
            event_type="state_transition",
            actor=actor,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            description=f"Cycle changed from {from_state.value} to {to_state.value}. Trigger: {trigger}",
            metadata=metadata,
        )
        logger.info(f"Cycle {cycle.id} {from_state.value} -> {to_state.value} ({trigger})")
        return to_state
