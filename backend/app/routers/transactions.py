"""
Transaction API Routes

Customer-reported purchases and manual review of degraded assessments.
"""
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_orchestrator, http_error
from ..models.db_models import TransactionDB, FraudAssessmentDB
from ..services.verification import CycleOrchestrator
from ..services.errors import VerificationError


router = APIRouter(prefix="/transactions", tags=["transactions"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class RecordTransactionRequest(BaseModel):
    """Customer-reported purchase."""
    store_id: str = Field(..., description="Store where the purchase was made")
    customer_time: datetime = Field(..., description="Reported purchase time (UTC)")
    customer_amount: float = Field(..., ge=0, description="Reported amount in SEK")
    feedback_text: Optional[str] = Field(None, description="Feedback call transcript")
    phone_hash: Optional[str] = Field(None, description="Hashed customer phone number")
    language_code: Optional[str] = Field(None, description="Feedback language, defaults to sv")


class ManualReviewRequest(BaseModel):
    """Resolution of a transaction held for manual review."""
    approve: bool = Field(..., description="True verifies the transaction, False marks it fake")
    notes: Optional[str] = Field(None, description="Reviewer notes")


def serialize_transaction(tx: TransactionDB) -> dict:
    return {
        "transaction_id": tx.id,
        "store_id": tx.store_id,
        "business_id": tx.business_id,
        "verification_database_id": tx.verification_database_id,
        "customer_time": tx.customer_time.isoformat(),
        "customer_amount": tx.customer_amount,
        "time_window": [tx.customer_time_start.isoformat(), tx.customer_time_end.isoformat()],
        "amount_window": [tx.customer_amount_min, tx.customer_amount_max],
        "verification_status": tx.verification_status.value,
        "requires_manual_review": tx.requires_manual_review,
        "rejection_reason": tx.rejection_reason,
        "fraud_composite": tx.fraud_composite,
        "reward_percentage": tx.reward_percentage,
        "reward_amount": tx.reward_amount,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict, status_code=201)
async def record_transaction(
    request: RecordTransactionRequest,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Store a customer-reported purchase with its ±2 min / ±2 SEK window."""
    customer_time = request.customer_time
    if customer_time.tzinfo is not None:
        customer_time = customer_time.astimezone(timezone.utc).replace(tzinfo=None)

    try:
        tx = orchestrator.record_transaction(
            store_id=request.store_id,
            customer_time=customer_time,
            customer_amount=request.customer_amount,
            feedback_text=request.feedback_text,
            phone_hash=request.phone_hash,
            language_code=request.language_code,
        )
    except VerificationError as e:
        raise http_error(e)
    return serialize_transaction(tx)


@router.get("/{transaction_id}", response_model=dict)
async def get_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
):
    """Transaction with its fraud assessments, newest first."""
    tx = db.query(TransactionDB).filter(TransactionDB.id == transaction_id).first()
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found")

    assessments = db.query(FraudAssessmentDB).filter(
        FraudAssessmentDB.transaction_id == transaction_id
    ).order_by(FraudAssessmentDB.created_at.desc()).all()

    return {
        **serialize_transaction(tx),
        "assessments": [
            {
                "composite_score": a.composite_score,
                "passed": a.passed,
                "degraded": a.degraded,
                "missing_components": a.missing_components or [],
                "risk_level": a.risk_level,
                "recommendation": a.recommendation,
                "primary_reason": a.primary_reason,
                "scores": {
                    "context": a.context_score,
                    "keyword": a.keyword_score,
                    "behavioral": a.behavioral_score,
                    "transaction": a.transaction_score,
                },
                "keyword_matches": a.keyword_matches or [],
            }
            for a in assessments
        ],
    }


@router.post("/{transaction_id}/review", response_model=dict)
def resolve_manual_review(
    transaction_id: str,
    request: ManualReviewRequest,
    orchestrator: CycleOrchestrator = Depends(get_orchestrator),
):
    """Approve or reject a transaction held for manual review."""
    try:
        tx = orchestrator.resolve_manual_review(transaction_id, request.approve, notes=request.notes)
    except VerificationError as e:
        raise http_error(e)
    return serialize_transaction(tx)
