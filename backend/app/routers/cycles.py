"""
Verification Cycle API Routes

Open, prepare, inspect and cancel weekly verification cycles.
"""
from dataclasses import asdict
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_orchestrator, http_error
from ..models.db_models import CycleEventDB, PaymentInvoiceDB
from ..services.verification import CycleOrchestrator
from ..services.errors import VerificationError


router = APIRouter(prefix="/cycles", tags=["cycles"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class OpenCycleRequest(BaseModel):
    """Request to open a verification cycle."""
    business_id: str = Field(..., description="Business the cycle belongs to")
    cycle_week: str = Field(..., description="ISO week, e.g. 2026-W43")


class CancelCycleRequest(BaseModel):
    """Request to cancel a cycle."""
    reason: Optional[str] = Field(None, description="Why the cycle was cancelled")


def serialize_cycle(cycle) -> dict:
    return {
        "cycle_id": cycle.id,
        "business_id": cycle.business_id,
        "cycle_week": cycle.cycle_week,
        "status": cycle.status.value,
        "total_databases": cycle.total_databases,
        "prepared_databases": cycle.prepared_databases,
        "submitted_databases": cycle.submitted_databases,
        "total_transactions": cycle.total_transactions,
        "verified_transactions": cycle.verified_transactions,
        "fake_transactions": cycle.fake_transactions,
        "manual_review_count": cycle.manual_review_count,
        "total_rewards": cycle.total_rewards,
        "total_invoices": cycle.total_invoices,
        "failed_stores": cycle.failed_stores or [],
        "created_at": cycle.created_at.isoformat() if cycle.created_at else None,
        "prepared_at": cycle.prepared_at.isoformat() if cycle.prepared_at else None,
        "completed_at": cycle.completed_at.isoformat() if cycle.completed_at else None,
    }


def serialize_database(database) -> dict:
    return {
        "database_id": database.id,
        "cycle_id": database.cycle_id,
        "store_id": database.store_id,
        "status": database.status.value,
        "deadline_at": database.deadline_at.isoformat(),
        "transaction_count": database.transaction_count,
        "verified_count": database.verified_count,
        "fake_count": database.fake_count,
        "unverified_count": database.unverified_count,
        "files": {
            "csv": database.csv_file_url,
            "excel": database.excel_file_url,
            "json": database.json_file_url,
        },
    }


# =============================================================================
# CYCLE ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
async def open_cycle(
    request: OpenCycleRequest,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Open a PENDING cycle for a business and week."""
    try:
        cycle = orchestrator.open_cycle(request.business_id, request.cycle_week)
    except VerificationError as e:
        raise http_error(e)
    return serialize_cycle(cycle)


@router.post("/{cycle_id}/prepare", response_model=dict)
def prepare_cycle(
    cycle_id: str,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """
    Create one verification database per active store.

    Store failures do not fail the request; they are listed in failed_stores.
    """
    try:
        result = orchestrator.prepare_cycle(cycle_id)
    except VerificationError as e:
        raise http_error(e)
    return asdict(result)


@router.post("/{cycle_id}/cancel", response_model=dict)
def cancel_cycle(
    cycle_id: str,
    request: CancelCycleRequest,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Cancel a non-terminal cycle."""
    try:
        cycle = orchestrator.cancel_cycle(cycle_id, reason=request.reason)
    except VerificationError as e:
        raise http_error(e)
    return serialize_cycle(cycle)


@router.get("/{cycle_id}", response_model=dict)
async def get_cycle(
    cycle_id: str,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Cycle status with per-database status."""
    try:
        cycle = orchestrator.get_cycle(cycle_id)
        databases = orchestrator.get_cycle_databases(cycle_id)
    except VerificationError as e:
        raise http_error(e)

    return {
        **serialize_cycle(cycle),
        "databases": [serialize_database(d) for d in databases],
    }


@router.get("/{cycle_id}/events", response_model=dict)
async def get_cycle_events(
    cycle_id: str,
    db: Session = Depends(get_db),
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Event trail of a cycle, oldest first."""
    try:
        orchestrator.get_cycle(cycle_id)
    except VerificationError as e:
        raise http_error(e)

    events = db.query(CycleEventDB).filter(
        CycleEventDB.cycle_id == cycle_id
    ).order_by(CycleEventDB.created_at).all()

    return {
        "cycle_id": cycle_id,
        "events": [
            {
                "id": e.id,
                "event_type": e.event_type,
                "actor": e.actor.value,
                "database_id": e.verification_database_id,
                "from_state": e.from_state,
                "to_state": e.to_state,
                "trigger": e.trigger,
                "description": e.description,
                "timestamp": e.created_at.isoformat() if e.created_at else None,
                "metadata": e.event_metadata,
            }
            for e in events
        ],
    }


@router.get("/{cycle_id}/invoice", response_model=dict)
async def get_cycle_invoice(
    cycle_id: str,
    db: Session = Depends(get_db),
):
    """Invoice issued when the cycle completed."""
    invoice = db.query(PaymentInvoiceDB).filter(PaymentInvoiceDB.cycle_id == cycle_id).first()
    if not invoice:
        raise HTTPException(status_code=404, detail="No invoice for this cycle")

    return {
        "invoice_id": invoice.id,
        "cycle_id": invoice.cycle_id,
        "business_id": invoice.business_id,
        "line_items": invoice.line_items,
        "reward_subtotal": invoice.reward_subtotal,
        "admin_fee": invoice.admin_fee,
        "total_amount": invoice.total_amount,
        "payment_status": invoice.payment_status.value,
    }
