"""
Vocilia Verification - SQLAlchemy ORM Models
Persistent storage for weekly verification cycles, per-store verification
databases, reconciled transactions, fraud assessments and invoices
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp. All stored datetimes are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS FOR THE VERIFICATION SYSTEM
# =============================================================================

class CycleStatus(str, Enum):
    """States of a weekly verification cycle, in lifecycle order."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DatabaseStatus(str, Enum):
    """States of a per-store verification database, in lifecycle order."""
    PREPARING = "preparing"
    READY = "ready"
    DOWNLOADED = "downloaded"
    SUBMITTED = "submitted"
    PROCESSED = "processed"
    EXPIRED = "expired"


class TransactionStatus(str, Enum):
    """Verification status of a customer-reported transaction."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class KeywordCategory(str, Enum):
    """Red-flag keyword categories. Category never affects scoring."""
    PROFANITY = "profanity"
    THREATS = "threats"
    NONSENSICAL = "nonsensical"
    IMPOSSIBLE = "impossible"


class InvoiceStatus(str, Enum):
    """Payment status of a business invoice."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class ActorType(str, Enum):
    """Actor types for the cycle event trail."""
    SYSTEM = "SYSTEM"
    BUSINESS = "BUSINESS"
    ADMIN = "ADMIN"


# =============================================================================
# STORE DIRECTORY
# =============================================================================

class StoreDB(Base):
    """Store belonging to a business. Active stores get a verification database each week."""
    __tablename__ = "stores"

    id = Column(String(36), primary_key=True)  # UUID
    business_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=utcnow)


# =============================================================================
# VERIFICATION CYCLE
# =============================================================================

class VerificationCycleDB(Base):
    """
    One verification cycle per business per ISO week.

    Status moves forward through CycleStatus order; CANCELLED is reachable
    from any non-terminal state. Counts are recomputed from child databases.
    """
    __tablename__ = "verification_cycles"
    __table_args__ = (
        UniqueConstraint("business_id", "cycle_week", name="uq_cycle_business_week"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    business_id = Column(String(36), nullable=False, index=True)
    cycle_week = Column(String(8), nullable=False)  # YYYY-Www
    status = Column(SQLEnum(CycleStatus), default=CycleStatus.PENDING, nullable=False)

    # Database counts
    total_databases = Column(Integer, default=0, nullable=False)
    prepared_databases = Column(Integer, default=0, nullable=False)
    submitted_databases = Column(Integer, default=0, nullable=False)

    # Transaction counts
    total_transactions = Column(Integer, default=0, nullable=False)
    verified_transactions = Column(Integer, default=0, nullable=False)
    fake_transactions = Column(Integer, default=0, nullable=False)
    manual_review_count = Column(Integer, default=0, nullable=False)

    # Rewards and invoices
    total_rewards = Column(Float, default=0.0, nullable=False)
    total_invoices = Column(Integer, default=0, nullable=False)
    paid_invoices = Column(Integer, default=0, nullable=False)

    # Stores whose database could not be created: [{"store_id": ..., "error": ...}]
    failed_stores = Column(JSON, nullable=True, default=list)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    prepared_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Relationships
    databases = relationship("VerificationDatabaseDB", back_populates="cycle", cascade="all, delete-orphan")
    events = relationship("CycleEventDB", back_populates="cycle", cascade="all, delete-orphan")
    invoices = relationship("PaymentInvoiceDB", back_populates="cycle", cascade="all, delete-orphan")


# =============================================================================
# VERIFICATION DATABASE
# =============================================================================

class VerificationDatabaseDB(Base):
    """
    One store's batch of transactions for a cycle.

    Invariant: verified_count + fake_count + unverified_count == transaction_count.
    """
    __tablename__ = "verification_databases"
    __table_args__ = (
        UniqueConstraint("cycle_id", "store_id", name="uq_database_cycle_store"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    cycle_id = Column(String(36), ForeignKey("verification_cycles.id", ondelete="CASCADE"), nullable=False, index=True)
    store_id = Column(String(36), nullable=False, index=True)
    business_id = Column(String(36), nullable=False, index=True)

    deadline_at = Column(DateTime, nullable=False, index=True)
    status = Column(SQLEnum(DatabaseStatus), default=DatabaseStatus.PREPARING, nullable=False, index=True)

    transaction_count = Column(Integer, default=0, nullable=False)
    verified_count = Column(Integer, default=0, nullable=False)
    fake_count = Column(Integer, default=0, nullable=False)
    unverified_count = Column(Integer, default=0, nullable=False)

    # Export artifacts (presentation layer owns the contents)
    csv_file_url = Column(String(500), nullable=True)
    excel_file_url = Column(String(500), nullable=True)
    json_file_url = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    ready_at = Column(DateTime, nullable=True)
    downloaded_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    # Relationships
    cycle = relationship("VerificationCycleDB", back_populates="databases")
    transactions = relationship("TransactionDB", back_populates="verification_database")


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionDB(Base):
    """
    Customer-reported purchase.

    The customer reports a point time and amount; the tolerance window
    around it (±2 minutes, ±2 SEK, amount floor 0) is stored alongside.
    actual_time / actual_amount are filled in when the business reconciles.
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True)  # UUID
    store_id = Column(String(36), nullable=False, index=True)
    business_id = Column(String(36), nullable=False, index=True)
    verification_database_id = Column(
        String(36), ForeignKey("verification_databases.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Customer report
    phone_hash = Column(String(64), nullable=True, index=True)
    customer_time = Column(DateTime, nullable=False)
    customer_amount = Column(Float, nullable=False)
    customer_time_start = Column(DateTime, nullable=False)
    customer_time_end = Column(DateTime, nullable=False)
    customer_amount_min = Column(Float, nullable=False)
    customer_amount_max = Column(Float, nullable=False)
    feedback_text = Column(Text, nullable=True)
    language_code = Column(String(8), default="sv")

    # Business reconciliation
    actual_amount = Column(Float, nullable=True)
    actual_time = Column(DateTime, nullable=True)
    business_notes = Column(Text, nullable=True)

    # Outcome
    verification_status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False)
    requires_manual_review = Column(Boolean, default=False, nullable=False)
    rejection_reason = Column(String(100), nullable=True)
    fraud_composite = Column(Float, nullable=True)
    reward_percentage = Column(Float, nullable=True)
    reward_amount = Column(Float, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    verification_database = relationship("VerificationDatabaseDB", back_populates="transactions")
    assessments = relationship("FraudAssessmentDB", back_populates="transaction", cascade="all, delete-orphan")


class FraudAssessmentDB(Base):
    """
    Persisted fraud assessment for auditability.

    Sub-scores are legitimacy-oriented (1.0 = clean). A NULL sub-score
    means the provider was unavailable and the composite was re-normalized.
    """
    __tablename__ = "fraud_assessments"

    id = Column(String(36), primary_key=True)  # UUID
    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    context_score = Column(Float, nullable=True)
    keyword_score = Column(Float, nullable=True)
    behavioral_score = Column(Float, nullable=True)
    transaction_score = Column(Float, nullable=True)

    composite_score = Column(Float, nullable=False)
    passed = Column(Boolean, nullable=False)
    degraded = Column(Boolean, default=False, nullable=False)
    missing_components = Column(JSON, nullable=True, default=list)
    risk_level = Column(String(20), nullable=False)
    recommendation = Column(String(30), nullable=True)  # allow, monitor_closely, manual_review, block_immediately
    primary_reason = Column(String(50), nullable=True)
    keyword_matches = Column(JSON, nullable=True, default=list)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    transaction = relationship("TransactionDB", back_populates="assessments")


# =============================================================================
# RED FLAG KEYWORDS
# =============================================================================

class RedFlagKeywordDB(Base):
    """Admin-maintained red-flag keyword. Read-only for the keyword detector."""
    __tablename__ = "red_flag_keywords"
    __table_args__ = (
        UniqueConstraint("keyword", "language_code", name="uq_keyword_language"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    keyword = Column(String(255), nullable=False)
    category = Column(SQLEnum(KeywordCategory), nullable=False)
    severity_level = Column(Integer, nullable=False)  # 1-10
    language_code = Column(String(8), nullable=False, default="sv")
    detection_pattern = Column(String(500), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(100), nullable=False, default="system")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# INVOICES
# =============================================================================

class PaymentInvoiceDB(Base):
    """Business invoice for one completed cycle: rewards plus admin fee."""
    __tablename__ = "payment_invoices"

    id = Column(String(36), primary_key=True)  # UUID
    cycle_id = Column(String(36), ForeignKey("verification_cycles.id", ondelete="CASCADE"), nullable=False, index=True)
    business_id = Column(String(36), nullable=False, index=True)

    # [{"transaction_id", "store_id", "purchase_amount", "composite_score", "reward_percentage", "reward_amount"}]
    line_items = Column(JSON, nullable=False, default=list)
    reward_subtotal = Column(Float, nullable=False, default=0.0)
    admin_fee = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    payment_status = Column(SQLEnum(InvoiceStatus), default=InvoiceStatus.PENDING, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime, nullable=True)

    # Relationships
    cycle = relationship("VerificationCycleDB", back_populates="invoices")


# =============================================================================
# EVENT TRAIL
# =============================================================================

class CycleEventDB(Base):
    """
    Append-only trail of state transitions for a cycle and its databases.

    Never updated or deleted.
    """
    __tablename__ = "cycle_events"

    id = Column(String(36), primary_key=True)  # UUID
    cycle_id = Column(String(36), ForeignKey("verification_cycles.id", ondelete="CASCADE"), nullable=False, index=True)
    verification_database_id = Column(String(36), nullable=True, index=True)  # NULL for cycle-level events

    event_type = Column(String(50), nullable=False)  # state_transition, store_failed, deadline_expired, ...
    actor = Column(SQLEnum(ActorType), nullable=False)
    from_state = Column(String(20), nullable=True)
    to_state = Column(String(20), nullable=True)
    trigger = Column(String(100), nullable=True)
    description = Column(Text, nullable=False)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    cycle = relationship("VerificationCycleDB", back_populates="events")
