"""
Verification Database API Routes

Business-facing endpoints: download a store's verification database,
submit reconciliation decisions, and read the dashboard summary.
"""
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional, List
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_orchestrator, http_error
from ..models.db_models import TransactionDB
from ..models.verification import VerificationDecision
from ..services.verification import CycleOrchestrator, VerificationDatabaseManager
from ..services.errors import VerificationError
from .cycles import serialize_database


router = APIRouter(prefix="/verification-databases", tags=["verification-databases"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class DecisionRequest(BaseModel):
    """Business verdict on one transaction."""
    transaction_id: str = Field(..., description="Transaction being verified")
    is_legitimate: bool = Field(..., description="False marks the transaction fake")
    actual_amount: Optional[float] = Field(None, description="POS amount in SEK")
    actual_time: Optional[datetime] = Field(None, description="POS timestamp (UTC)")
    notes: Optional[str] = Field(None, description="Free-text business notes")


class SubmitDecisionsRequest(BaseModel):
    """Decisions for a whole verification database."""
    decisions: List[DecisionRequest] = Field(default_factory=list)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# BUSINESS ENDPOINTS
# =============================================================================

@router.get("/businesses/{business_id}/summary", response_model=dict)
async def get_business_summary(
    business_id: str,
    db: Session = Depends(get_db),
):
    """Counts per status plus databases past their deadline but not yet swept."""
    summary = VerificationDatabaseManager(db).business_summary(business_id)
    return asdict(summary)


@router.get("/{database_id}", response_model=dict)
async def get_database(
    database_id: str,
    db: Session = Depends(get_db),
):
    """Database status with its transactions."""
    manager = VerificationDatabaseManager(db)
    try:
        database = manager.repository.get(database_id)
    except VerificationError as e:
        raise http_error(e)

    transactions = db.query(TransactionDB).filter(
        TransactionDB.verification_database_id == database_id
    ).order_by(TransactionDB.customer_time).all()

    return {
        **serialize_database(database),
        "transactions": [
            {
                "transaction_id": t.id,
                "customer_time": t.customer_time.isoformat(),
                "customer_amount": t.customer_amount,
                "time_window": [t.customer_time_start.isoformat(), t.customer_time_end.isoformat()],
                "amount_window": [t.customer_amount_min, t.customer_amount_max],
                "verification_status": t.verification_status.value,
                "requires_manual_review": t.requires_manual_review,
                "reward_amount": t.reward_amount,
            }
            for t in transactions
        ],
    }


@router.post("/{database_id}/download", response_model=dict)
def record_download(
    database_id: str,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Mark the database downloaded by the business."""
    try:
        database = orchestrator.record_download(database_id)
    except VerificationError as e:
        raise http_error(e)
    return serialize_database(database)


@router.post("/{database_id}/submit", response_model=dict)
def submit_decisions(
    database_id: str,
    request: SubmitDecisionsRequest,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """
    Submit verification decisions.

    Runs tolerance matching and fraud scoring; transactions whose
    scoring was degraded come back flagged for manual review.
    """
    decisions = [
        VerificationDecision(
            transaction_id=d.transaction_id,
            is_legitimate=d.is_legitimate,
            actual_amount=d.actual_amount,
            actual_time=_naive_utc(d.actual_time),
            notes=d.notes,
        )
        for d in request.decisions
    ]
    try:
        result = orchestrator.submit_decisions(database_id, decisions)
    except VerificationError as e:
        raise http_error(e)
    return asdict(result)

