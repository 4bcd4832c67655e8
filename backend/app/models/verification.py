"""
Vocilia Verification - Value Objects

Plain data carried between the verification core components.
Calculators return these; the orchestrator aggregates them into
its per-operation result objects.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any


# =============================================================================
# TOLERANCE MATCHING
# =============================================================================

@dataclass
class MatchResult:
    """Outcome of comparing a customer report with a POS record."""
    is_match: bool
    time_delta_minutes: float
    amount_delta: float
    confidence: float


@dataclass
class ToleranceWindow:
    """Stored tolerance window around a customer-reported purchase."""
    time_start: datetime
    time_end: datetime
    amount_min: float
    amount_max: float


# =============================================================================
# KEYWORD DETECTION
# =============================================================================

@dataclass
class KeywordMatch:
    keyword_id: str
    keyword: str
    category: str
    severity: int


@dataclass
class KeywordScanResult:
    """
    Red-flag scan of one feedback text.

    score is a risk score (0 = clean, 1 = capped severity); invert it
    before feeding the fraud scorer.
    """
    matches: List[KeywordMatch] = field(default_factory=list)
    total_severity: int = 0
    score: float = 0.0
    language_used: str = "sv"
    fallback_applied: bool = False


# =============================================================================
# FRAUD SCORING
# =============================================================================

@dataclass
class FraudResult:
    """
    Weighted legitimacy composite.

    components holds the legitimacy-oriented sub-scores that took part;
    weights holds the (possibly re-normalized) weights actually applied.
    recommendation and primary_reason are advisory, for the review queue.
    """
    composite: float
    passed: bool
    threshold: float
    risk_level: str
    components: Dict[str, float] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)
    breakdown: Dict[str, float] = field(default_factory=dict)
    degraded: bool = False
    missing_components: List[str] = field(default_factory=list)
    recommendation: str = "allow"
    primary_reason: str = "low_risk_profile"


# =============================================================================
# BUSINESS DECISIONS
# =============================================================================

@dataclass
class VerificationDecision:
    """A business's verdict on one transaction, with optional POS values."""
    transaction_id: str
    is_legitimate: bool
    actual_amount: Optional[float] = None
    actual_time: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def has_pos_values(self) -> bool:
        return self.actual_amount is not None and self.actual_time is not None


# =============================================================================
# INVOICING
# =============================================================================

@dataclass
class InvoiceLineItem:
    transaction_id: str
    store_id: str
    purchase_amount: float
    composite_score: float
    reward_percentage: float
    reward_amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "store_id": self.store_id,
            "purchase_amount": self.purchase_amount,
            "composite_score": self.composite_score,
            "reward_percentage": self.reward_percentage,
            "reward_amount": self.reward_amount,
        }


@dataclass
class Invoice:
    """Per-business invoice for one completed cycle."""
    business_id: str
    cycle_id: str
    line_items: List[InvoiceLineItem] = field(default_factory=list)
    reward_subtotal: float = 0.0
    admin_fee: float = 0.0
    total: float = 0.0
    invoice_id: Optional[str] = None


# =============================================================================
# PROJECTIONS AND OPERATION RESULTS
# =============================================================================

@dataclass
class BusinessSummary:
    """Read-only dashboard projection of a business's verification databases."""
    business_id: str
    total_databases: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    overdue_databases: int = 0
    total_transactions: int = 0
    verified_transactions: int = 0
    fake_transactions: int = 0
    unverified_transactions: int = 0


@dataclass
class PreparationResult:
    """Outcome of fanning out database creation over a business's stores."""
    cycle_id: str
    cycle_status: str
    created_databases: List[str] = field(default_factory=list)
    failed_stores: List[Dict[str, str]] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class TransactionOutcome:
    transaction_id: str
    status: str
    composite: Optional[float] = None
    requires_manual_review: bool = False
    reason: Optional[str] = None


@dataclass
class SubmissionResult:
    """Outcome of processing one database's verification decisions."""
    database_id: str
    database_status: str
    verified: int = 0
    fake: int = 0
    manual_review: int = 0
    unverified: int = 0
    outcomes: List[TransactionOutcome] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    cycle_completed: bool = False


@dataclass
class SweepResult:
    """Outcome of a deadline sweep and its forfeiture follow-up."""
    expired_database_ids: List[str] = field(default_factory=list)
    forfeited_transactions: int = 0
    completed_cycles: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def expired_count(self) -> int:
        return len(self.expired_database_ids)
