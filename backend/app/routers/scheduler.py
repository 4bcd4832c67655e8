"""
Scheduler API Routes

Internal endpoints for system-automatic tasks:
deadline sweep, reminder windows and deadline monitoring.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_orchestrator, verify_internal_key
from ..services.verification import (
    CycleOrchestrator, DeadlineScheduler, VerificationDatabaseManager,
)


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/deadline-sweep", response_model=dict)
def run_deadline_sweep(
    db: Session = Depends(get_db),
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_internal_key),
):
    """
    Expire verification databases past their deadline.

    System-automatic - forfeits their transactions and completes any
    cycle whose databases are all processed or expired.
    Safe to call from several replicas.
    """
    scheduler = DeadlineScheduler(db, orchestrator)

    result = scheduler.run_deadline_sweep()

    return result


@router.post("/deadline-reminders", response_model=dict)
async def run_reminder_check(
    interval_minutes: int = Query(60, gt=0),
    db: Session = Depends(get_db),
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_internal_key),
):
    """
    Reminders whose 24h / 2h window opens in this interval.

    Call once per interval; notification delivery happens downstream.
    """
    scheduler = DeadlineScheduler(db, orchestrator)

    return scheduler.run_reminder_check(interval_minutes=interval_minutes)


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/deadlines", response_model=dict)
async def get_upcoming_deadlines(
    hours_ahead: int = Query(48, gt=0),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Get upcoming deadlines for monitoring.
    """
    manager = VerificationDatabaseManager(db)

    deadlines = manager.get_upcoming_deadlines(hours_ahead=hours_ahead)

    return {
        "hours_ahead": hours_ahead,
        "count": len(deadlines),
        "deadlines": deadlines,
    }
