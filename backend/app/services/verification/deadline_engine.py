"""
Deadline Engine

AUTHORITY: SYSTEM
Calculates verification deadlines and runs the periodic deadline sweep.

Key behaviors:
- Deadlines are N business days (default 5) after preparation; weekends are skipped
- Reminder windows open 24 hours and 2 hours before a deadline
- The sweep expires ready/downloaded databases past their deadline and
  forfeits their transactions

The sweep is safe to run from several replicas at once: every expiry
is a conditional update.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dateutil.rrule import rrule, DAILY, MO, TU, WE, TH, FR
from sqlalchemy.orm import Session

from ...models.db_models import utcnow
from ..errors import ValidationError
from .repository import VerificationDatabaseRepository

logger = logging.getLogger(__name__)


# =============================================================================
# DEADLINE CONFIGURATION
# =============================================================================

DEADLINE_BUSINESS_DAYS = 5

# Reminder label -> hours before deadline
REMINDER_WINDOWS = {
    "24h": 24,
    "2h": 2,
}

BUSINESS_WEEKDAYS = (MO, TU, WE, TH, FR)


def calculate_deadline(start: datetime, business_days: int = DEADLINE_BUSINESS_DAYS) -> datetime:
    """
    Deadline N business days after start, at the same time of day.

    Saturdays and Sundays are skipped. Microseconds are dropped.
    """
    if business_days < 1:
        raise ValidationError("business_days must be at least 1")

    days = list(rrule(
        DAILY,
        dtstart=start + timedelta(days=1),
        byweekday=BUSINESS_WEEKDAYS,
        count=business_days,
    ))
    return days[-1]


# =============================================================================
# DEADLINE ENGINE
# =============================================================================

class DeadlineEngine:
    """Read-side deadline queries for reminders and dashboards."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.repository = VerificationDatabaseRepository(db_session)

    def get_due_reminders(self, now: Optional[datetime] = None, interval_minutes: int = 60) -> List[Dict[str, Any]]:
        """
        Reminders whose window opens within the next check interval.

        A database with a deadline at D is due for its 24h reminder when
        D - 24h falls in [now, now + interval). Running the check every
        interval therefore sends each reminder once.
        """
        now = now or utcnow()
        interval = timedelta(minutes=interval_minutes)
        due = []

        for label, hours in REMINDER_WINDOWS.items():
            start = now + timedelta(hours=hours)
            for row in self.repository.find_deadlines_between(start, start + interval):
                due.append({
                    "reminder": label,
                    "database_id": row.id,
                    "cycle_id": row.cycle_id,
                    "store_id": row.store_id,
                    "business_id": row.business_id,
                    "deadline_at": row.deadline_at.isoformat(),
                })

        return due


# =============================================================================
# DEADLINE SCHEDULER (SYSTEM-AUTHORITATIVE)
# =============================================================================
#
# This scheduler runs AUTOMATICALLY via cron/scheduled job.
# Expired databases forfeit every transaction they hold; businesses are
# informed through the cycle event trail only.
#
# =============================================================================

class DeadlineScheduler:
    """
    Periodic scheduler for deadline-related tasks.

    AUTHORITY: SYSTEM - Runs automatically, no user intervention required.
    """

    def __init__(self, db_session: Session, orchestrator):
        """Initialize with database session and the cycle orchestrator."""
        self.db = db_session
        self.orchestrator = orchestrator
        self.engine = DeadlineEngine(db_session)

    def run_deadline_sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Expire overdue databases, forfeit their transactions and complete
        any cycle whose databases are now all terminal.
        """
        now = now or utcnow()
        result = self.orchestrator.sweep_deadlines(now)

        logger.info(
            f"Deadline sweep at {now.isoformat()}: {result.expired_count} expired, "
            f"{result.forfeited_transactions} transactions forfeited, "
            f"{len(result.completed_cycles)} cycles completed, {len(result.errors)} errors"
        )

        return {
            "run_date": now.isoformat(),
            "databases_expired": result.expired_count,
            "transactions_forfeited": result.forfeited_transactions,
            "cycles_completed": len(result.completed_cycles),
            "errors": len(result.errors),
            "details": {
                "expired": result.expired_database_ids,
                "completed_cycles": result.completed_cycles,
                "errors": result.errors,
            },
        }

    def run_reminder_check(self, now: Optional[datetime] = None, interval_minutes: int = 60) -> Dict[str, Any]:
        """Collect reminders due in this interval for notification fan-out."""
        now = now or utcnow()
        reminders = self.engine.get_due_reminders(now, interval_minutes)

        return {
            "run_date": now.isoformat(),
            "reminders_due": len(reminders),
            "details": reminders,
        }
