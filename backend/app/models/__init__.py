"""Vocilia Verification - Data Models"""
from .verification import (
    # Tolerance matching
    MatchResult, ToleranceWindow,
    # Keyword detection
    KeywordMatch, KeywordScanResult,
    # Fraud scoring
    FraudResult,
    # Business decisions
    VerificationDecision,
    # Invoicing
    Invoice, InvoiceLineItem,
    # Projections and results
    BusinessSummary, PreparationResult, TransactionOutcome, SubmissionResult, SweepResult,
)

__all__ = [
    "MatchResult", "ToleranceWindow",
    "KeywordMatch", "KeywordScanResult",
    "FraudResult",
    "VerificationDecision",
    "Invoice", "InvoiceLineItem",
    "BusinessSummary", "PreparationResult", "TransactionOutcome", "SubmissionResult", "SweepResult",
]
