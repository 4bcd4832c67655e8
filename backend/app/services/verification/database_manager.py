"""
Verification Database Manager

Owns the lifecycle of per-store verification databases:

    PREPARING → READY → DOWNLOADED → SUBMITTED → PROCESSED
    READY | DOWNLOADED → EXPIRED

Every transition is validated against the state machine, applied as a
conditional update and recorded on the cycle event trail. Invalid
transitions raise InvalidStateTransitionError; nothing is forced.

The manager flushes but never commits. The orchestrator, the scheduler
and the HTTP layer own the unit of work.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import DatabaseStatus, ActorType, VerificationDatabaseDB, utcnow
from ...models.verification import BusinessSummary
from ..errors import InvalidStateTransitionError, ValidationError
from .repository import VerificationDatabaseRepository, OPEN_DATABASE_STATES
from .state_machine import DatabaseStateMachine

logger = logging.getLogger(__name__)


class VerificationDatabaseManager:
    """
    Per-store verification database operations.

    Constructed with a session; the repository and state machine are
    built over the same session unless injected.
    """

    def __init__(
        self,
        db_session: Session,
        repository: Optional[VerificationDatabaseRepository] = None,
        state_machine: Optional[DatabaseStateMachine] = None,
    ):
        self.db = db_session
        self.repository = repository or VerificationDatabaseRepository(db_session)
        self.state_machine = state_machine or DatabaseStateMachine(db_session)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create(
        self,
        cycle_id: str,
        store_id: str,
        business_id: str,
        deadline_at: datetime,
        transaction_count: int = 0,
    ) -> VerificationDatabaseDB:
        """
        Create a database in PREPARING.

        Raises DuplicateError for an existing (cycle, store) pair and
        ValidationError for a negative transaction count.
        """
        if isinstance(transaction_count, bool) or not isinstance(transaction_count, int) or transaction_count < 0:
            raise ValidationError("transaction_count must be a non-negative integer")
        if deadline_at is None:
            raise ValidationError("deadline_at is required")

        row = self.repository.create(cycle_id, store_id, business_id, deadline_at, transaction_count)
        self.state_machine.log_event(
            cycle_id=cycle_id,
            database_id=row.id,
            event_type="database_created",
            actor=ActorType.SYSTEM,
            to_state=DatabaseStatus.PREPARING,
            trigger="cycle_preparation",
            description=f"Verification database created for store {store_id} with {transaction_count} transactions",
            metadata={"store_id": store_id, "deadline_at": deadline_at.isoformat()},
        )
        self.db.flush()
        logger.info(f"Created verification database {row.id} for store {store_id} (cycle {cycle_id})")
        return row

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _transition(
        self,
        database_id: str,
        to_state: DatabaseStatus,
        trigger: str,
        actor: ActorType,
        fields: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> VerificationDatabaseDB:
        row = self.repository.get(database_id)
        from_state = row.status
        self.state_machine.ensure_transition(from_state, to_state, database_id)

        values = dict(fields or {})
        stamp = self.state_machine.timestamp_field(to_state)
        if stamp:
            values[stamp] = utcnow()

        updated = self.repository.update_status(database_id, [from_state], to_state, values)
        if updated == 0:
            # Another writer moved the row between our read and the update
            self.db.refresh(row)
            logger.warning(
                f"Database {database_id} changed concurrently to {row.status.value}; "
                f"{from_state.value} -> {to_state.value} not applied"
            )
            raise InvalidStateTransitionError(
                self.state_machine.entity, row.status.value, to_state.value, database_id
            )

        self.state_machine.record_transition(
            cycle_id=row.cycle_id,
            database_id=database_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            actor=actor,
            metadata=metadata,
        )
        self.db.flush()
        logger.info(f"Database {database_id} {from_state.value} -> {to_state.value} ({trigger})")
        return row

    def mark_ready(self, database_id: str, file_urls: Optional[Dict[str, str]] = None) -> VerificationDatabaseDB:
        """PREPARING → READY. file_urls may carry csv, excel and json export URLs."""
        fields = {}
        for key, column in (("csv", "csv_file_url"), ("excel", "excel_file_url"), ("json", "json_file_url")):
            if file_urls and file_urls.get(key):
                fields[column] = file_urls[key]
        return self._transition(database_id, DatabaseStatus.READY, "export_built", ActorType.SYSTEM, fields)

    def mark_downloaded(self, database_id: str) -> VerificationDatabaseDB:
        """READY → DOWNLOADED."""
        return self._transition(database_id, DatabaseStatus.DOWNLOADED, "business_download", ActorType.BUSINESS)

    def mark_submitted(self, database_id: str) -> VerificationDatabaseDB:
        """READY | DOWNLOADED → SUBMITTED."""
        return self._transition(database_id, DatabaseStatus.SUBMITTED, "business_submission", ActorType.BUSINESS)

    def mark_processed(self, database_id: str, trigger: str = "decisions_processed") -> VerificationDatabaseDB:
        """SUBMITTED → PROCESSED."""
        return self._transition(database_id, DatabaseStatus.PROCESSED, trigger, ActorType.SYSTEM)

    # -------------------------------------------------------------------------
    # Counts
    # -------------------------------------------------------------------------

    def update_verification_counts(
        self, database_id: str, verified: int, fake: int, unverified: int
    ) -> VerificationDatabaseDB:
        """
        Overwrite the classification counts.

        Rejects any split that does not add up to transaction_count.
        """
        row = self.repository.update_counts(database_id, verified, fake, unverified)
        logger.info(
            f"Database {database_id} counts: verified={verified} fake={fake} unverified={unverified}"
        )
        return row

    # -------------------------------------------------------------------------
    # Deadline sweep
    # -------------------------------------------------------------------------

    def sweep_expired_databases(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire every ready/downloaded database past its deadline.

        Returns the ids this call expired. Each row is expired with its own
        conditional update, so a concurrent or repeated sweep never expires
        a row twice.
        """
        now = now or utcnow()
        expired = []

        for database_id in self.repository.find_overdue_ids(now):
            if self.repository.expire_if_overdue(database_id, now) != 1:
                continue

            row = self.repository.get(database_id)
            self.state_machine.log_event(
                cycle_id=row.cycle_id,
                database_id=database_id,
                event_type="deadline_expired",
                actor=ActorType.SYSTEM,
                to_state=DatabaseStatus.EXPIRED,
                trigger="deadline_sweep",
                description=f"Deadline {row.deadline_at.isoformat()} passed without submission",
                metadata={"deadline_at": row.deadline_at.isoformat(), "swept_at": now.isoformat()},
            )
            expired.append(database_id)

        if expired:
            self.db.flush()
            logger.info(f"Deadline sweep expired {len(expired)} verification databases")
        return expired

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire overdue databases and return how many this call affected."""
        return len(self.sweep_expired_databases(now))

    # -------------------------------------------------------------------------
    # Read-side projections
    # -------------------------------------------------------------------------

    def business_summary(self, business_id: str, now: Optional[datetime] = None) -> BusinessSummary:
        """
        Dashboard projection of a business's databases. Never mutates.

        overdue_databases counts ready/downloaded rows past their deadline
        that the sweep has not expired yet.
        """
        now = now or utcnow()
        summary = BusinessSummary(
            business_id=business_id,
            by_status={status.value: 0 for status in DatabaseStatus},
        )

        for row in self.repository.find_by_business(business_id):
            summary.total_databases += 1
            summary.by_status[row.status.value] += 1
            summary.total_transactions += row.transaction_count or 0
            summary.verified_transactions += row.verified_count or 0
            summary.fake_transactions += row.fake_count or 0
            summary.unverified_transactions += row.unverified_count or 0
            if row.status in OPEN_DATABASE_STATES and row.deadline_at < now:
                summary.overdue_databases += 1

        return summary

    def get_upcoming_deadlines(self, hours_ahead: int = 48, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open databases with a deadline in the next N hours."""
        if hours_ahead <= 0:
            raise ValidationError("hours_ahead must be positive")
        now = now or utcnow()

        return [
            {
                "database_id": row.id,
                "cycle_id": row.cycle_id,
                "store_id": row.store_id,
                "business_id": row.business_id,
                "status": row.status.value,
                "deadline_at": row.deadline_at.isoformat(),
                "hours_remaining": round((row.deadline_at - now).total_seconds() / 3600, 1),
            }
            for row in self.repository.find_deadlines_between(now, now + timedelta(hours=hours_ahead))
        ]
