"""
Fraud API Routes

Composite scoring, keyword scans and red-flag keyword administration.
"""
from dataclasses import asdict
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import Settings
from ..database import get_db
from ..dependencies import get_settings, http_error
from ..models.db_models import KeywordCategory
from ..services.fraud import FraudScorer, KeywordDetector, KeywordService
from ..services.errors import VerificationError, InvalidScoreRangeError


router = APIRouter(prefix="/fraud", tags=["fraud"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class ScoreRequest(BaseModel):
    """Legitimacy-oriented sub-scores (1.0 = clean). Omit a score to get a degraded result."""
    context: Optional[float] = Field(None, description="AI context legitimacy")
    keyword: Optional[float] = Field(None, description="Keyword cleanliness")
    behavioral: Optional[float] = Field(None, description="Behavioral cleanliness")
    transaction: Optional[float] = Field(None, description="POS match confidence")


class ScanRequest(BaseModel):
    """Text to scan for red-flag keywords."""
    text: str = Field(..., description="Feedback text")
    language_code: Optional[str] = Field(None, description="Language of the text")


class CreateKeywordRequest(BaseModel):
    """New red-flag keyword."""
    keyword: str = Field(..., description="Keyword or phrase")
    category: KeywordCategory = Field(..., description="profanity, threats, nonsensical or impossible")
    severity_level: int = Field(..., description="Severity 1-10")
    language_code: str = Field(default="sv", description="Language of the keyword")
    detection_pattern: Optional[str] = Field(None, description="Regex; defaults to the word-bounded keyword")
    created_by: str = Field(default="admin", description="Who added the keyword")


class UpdateKeywordRequest(BaseModel):
    """Changes to an existing keyword."""
    keyword: Optional[str] = None
    category: Optional[KeywordCategory] = None
    severity_level: Optional[int] = None
    detection_pattern: Optional[str] = None
    is_active: Optional[bool] = None


def serialize_keyword(row) -> dict:
    return {
        "id": row.id,
        "keyword": row.keyword,
        "category": row.category.value,
        "severity_level": row.severity_level,
        "language_code": row.language_code,
        "detection_pattern": row.detection_pattern,
        "is_active": row.is_active,
        "created_by": row.created_by,
    }


# =============================================================================
# SCORING ENDPOINTS
# =============================================================================

@router.post("/score", response_model=dict)
async def score(
    request: ScoreRequest,
    settings: Settings = Depends(get_settings),
):
    """Weighted composite. Missing sub-scores re-normalize the remaining weights."""
    scorer = FraudScorer.from_settings(settings)
    components = {
        "context": request.context,
        "keyword": request.keyword,
        "behavioral": request.behavioral,
        "transaction": request.transaction,
    }
    try:
        if all(v is not None for v in components.values()):
            result = scorer.score(**{f"{name}_score": value for name, value in components.items()})
        else:
            result = scorer.score_available(components)
    except InvalidScoreRangeError as e:
        # Out-of-range scores here are request input, not an upstream bug
        raise HTTPException(status_code=400, detail=str(e))
    except VerificationError as e:
        raise http_error(e)
    return asdict(result)


@router.post("/keywords/scan", response_model=dict)
async def scan_text(
    request: ScanRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Red-flag scan. score is a risk score; 1 - score feeds the composite."""
    detector = KeywordDetector.from_session(
        db, severity_cap=settings.keyword_severity_cap, default_language=settings.default_language,
    )
    return asdict(detector.scan(request.text, request.language_code))


# =============================================================================
# KEYWORD ADMINISTRATION
# =============================================================================

@router.get("/keywords", response_model=dict)
async def list_keywords(
    language_code: Optional[str] = None,
    category: Optional[KeywordCategory] = None,
    active_only: bool = True,
    db: Session = Depends(get_db),
):
    rows = KeywordService(db).list_keywords(
        language_code=language_code,
        category=category.value if category else None,
        active_only=active_only,
    )
    return {"count": len(rows), "keywords": [serialize_keyword(r) for r in rows]}


@router.post("/keywords", response_model=dict, status_code=201)
async def create_keyword(
    request: CreateKeywordRequest,
    db: Session = Depends(get_db),
):
    try:
        row = KeywordService(db).create(
            keyword=request.keyword,
            category=request.category,
            severity_level=request.severity_level,
            language_code=request.language_code,
            detection_pattern=request.detection_pattern,
            created_by=request.created_by,
        )
    except VerificationError as e:
        raise http_error(e)
    return serialize_keyword(row)


@router.patch("/keywords/{keyword_id}", response_model=dict)
async def update_keyword(
    keyword_id: str,
    request: UpdateKeywordRequest,
    db: Session = Depends(get_db),
):
    changes = request.model_dump(exclude_none=True)
    try:
        row = KeywordService(db).update(keyword_id, **changes)
    except VerificationError as e:
        db.rollback()
        raise http_error(e)
    return serialize_keyword(row)


@router.delete("/keywords/{keyword_id}", response_model=dict)
async def deactivate_keyword(
    keyword_id: str,
    db: Session = Depends(get_db),
):
    """Keywords are deactivated, never deleted."""
    try:
        row = KeywordService(db).deactivate(keyword_id)
    except VerificationError as e:
        raise http_error(e)
    return serialize_keyword(row)


@router.post("/keywords/seed", response_model=dict)
async def seed_keywords(
    db: Session = Depends(get_db),
):
    """Load the built-in Swedish/English keyword set."""
    created = KeywordService(db).seed_default_keywords()
    return {"created": created}
