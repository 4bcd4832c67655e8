"""
Tests for the weekly verification cycle orchestrator.

Covers the full week for one business:
1. Customer reports batched into one database per active store
2. Business decisions → tolerance match → fraud scoring
3. Degraded scoring routed to manual review
4. Deadline expiry forfeits unsubmitted stores
5. Completion issues the invoice
6. Cancellation and store-level failure isolation
"""
import time

import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from sqlalchemy.exc import SQLAlchemyError

from app.config import Settings

from app.models.db_models import (
    CycleStatus, DatabaseStatus, TransactionStatus,
    StoreDB, TransactionDB, FraudAssessmentDB, PaymentInvoiceDB, CycleEventDB,
)
from app.models.verification import VerificationDecision
from app.services.verification import CycleOrchestrator, parse_cycle_week
from app.services.errors import (
    DuplicateError, ExternalDependencyError, InvalidScoreRangeError,
    InvalidStateTransitionError, RecordNotFoundError, ValidationError,
)


WEEK = "2026-W43"
PURCHASE_TIME = datetime(2026, 10, 20, 12, 0)
PREPARED_AT = datetime(2026, 10, 26, 8, 0)
DEADLINE = datetime(2026, 11, 2, 8, 0)


def _store(session, store_id, business_id="biz-1", active=True):
    session.add(StoreDB(id=store_id, business_id=business_id, name=f"Store {store_id}", is_active=active))
    session.commit()


def _report(orchestrator, store_id, count, amount=100.0, feedback="Trevlig personal och snabb kassa"):
    return [
        orchestrator.record_transaction(
            store_id,
            PURCHASE_TIME + timedelta(minutes=i),
            amount,
            feedback_text=feedback,
            phone_hash=f"{store_id}-customer-{i}",
        )
        for i in range(count)
    ]


def _prepared(orchestrator, business_id="biz-1"):
    cycle = orchestrator.open_cycle(business_id, WEEK)
    orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)
    databases = {d.store_id: d for d in orchestrator.get_cycle_databases(cycle.id)}
    return cycle.id, databases


def _approve_all(transactions):
    return [VerificationDecision(transaction_id=tx.id, is_legitimate=True) for tx in transactions]


# =============================================================================
# TEST: CYCLE WEEK PARSING
# =============================================================================

class TestCycleWeek:

    def test_week_bounds(self):
        assert parse_cycle_week("2026-W43") == (datetime(2026, 10, 19), datetime(2026, 10, 26))

    def test_long_year_has_week_53(self):
        assert parse_cycle_week("2026-W53")[0] == datetime(2026, 12, 28)

    @pytest.mark.parametrize("week", ["2026-43", "2026-W54", "", "W43-2026", "2026-W00"])
    def test_invalid_week_rejected(self, week):
        with pytest.raises(ValidationError):
            parse_cycle_week(week)


# =============================================================================
# TEST: INTAKE AND OPENING
# =============================================================================

class TestOpenCycle:

    def test_record_transaction_stores_window(self, session, orchestrator):
        _store(session, "store-a")

        tx = orchestrator.record_transaction("store-a", PURCHASE_TIME, 1.0, feedback_text="ok")

        assert tx.business_id == "biz-1"
        assert tx.customer_amount_min == 0.0
        assert tx.customer_amount_max == 3.0
        assert tx.customer_time_end == PURCHASE_TIME + timedelta(minutes=2)
        assert tx.verification_status == TransactionStatus.PENDING
        assert tx.language_code == "sv"

    def test_record_transaction_unknown_store(self, orchestrator):
        with pytest.raises(RecordNotFoundError):
            orchestrator.record_transaction("nowhere", PURCHASE_TIME, 100.0)

    def test_open_cycle_is_pending(self, orchestrator):
        cycle = orchestrator.open_cycle("biz-1", WEEK)

        assert cycle.status == CycleStatus.PENDING
        assert cycle.cycle_week == WEEK

    def test_duplicate_week_rejected(self, orchestrator):
        orchestrator.open_cycle("biz-1", WEEK)

        with pytest.raises(DuplicateError):
            orchestrator.open_cycle("biz-1", WEEK)

    def test_same_week_for_another_business(self, orchestrator):
        orchestrator.open_cycle("biz-1", WEEK)

        assert orchestrator.open_cycle("biz-2", WEEK).status == CycleStatus.PENDING

    def test_malformed_week_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.open_cycle("biz-1", "2026-43")


# =============================================================================
# TEST: PREPARATION
# =============================================================================

class TestPrepareCycle:
    """One database per active store, store failures isolated."""

    def test_one_database_per_active_store(self, session, orchestrator):
        _store(session, "store-a")
        _store(session, "store-b")
        _store(session, "store-c", active=False)
        _report(orchestrator, "store-a", 2)
        _report(orchestrator, "store-b", 1)

        cycle = orchestrator.open_cycle("biz-1", WEEK)
        result = orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)

        assert result.cycle_status == "ready"
        assert len(result.created_databases) == 2
        assert result.failed_stores == []

        databases = {d.store_id: d for d in orchestrator.get_cycle_databases(cycle.id)}
        assert set(databases) == {"store-a", "store-b"}
        assert databases["store-a"].status == DatabaseStatus.READY
        assert databases["store-a"].transaction_count == 2
        assert databases["store-a"].deadline_at == DEADLINE
        assert databases["store-a"].csv_file_url.endswith(".csv")

        cycle = orchestrator.get_cycle(cycle.id)
        assert cycle.total_databases == 2
        assert cycle.prepared_databases == 2
        assert cycle.total_transactions == 3
        assert cycle.prepared_at is not None

    def test_transactions_outside_the_week_are_not_batched(self, session, orchestrator):
        _store(session, "store-a")
        _report(orchestrator, "store-a", 1)
        late = orchestrator.record_transaction("store-a", datetime(2026, 10, 27, 9, 0), 50.0)

        _, databases = _prepared(orchestrator)

        assert databases["store-a"].transaction_count == 1
        assert session.get(TransactionDB, late.id).verification_database_id is None

    def test_failing_store_is_isolated(self, session, orchestrator, monkeypatch):
        _store(session, "store-a")
        _store(session, "store-b")
        _report(orchestrator, "store-a", 1)
        b_txs = _report(orchestrator, "store-b", 1)
        create = orchestrator.manager.create

        def create_or_fail(cycle_id, store_id, *args, **kwargs):
            if store_id == "store-b":
                raise ValidationError("export service rejected store")
            return create(cycle_id, store_id, *args, **kwargs)

        monkeypatch.setattr(orchestrator.manager, "create", create_or_fail)

        cycle = orchestrator.open_cycle("biz-1", WEEK)
        result = orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)

        assert result.cycle_status == "ready"
        assert len(result.created_databases) == 1
        assert result.failed_stores == [{"store_id": "store-b", "error": "export service rejected store"}]
        assert orchestrator.get_cycle(cycle.id).failed_stores == result.failed_stores
        assert session.get(TransactionDB, b_txs[0].id).verification_database_id is None

        events = session.query(CycleEventDB).filter(CycleEventDB.event_type == "stores_failed").all()
        assert len(events) == 1

    def test_business_without_stores_completes_immediately(self, session, orchestrator):
        cycle = orchestrator.open_cycle("biz-1", WEEK)

        result = orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)

        assert result.cycle_status == "completed"
        invoice = session.query(PaymentInvoiceDB).filter(PaymentInvoiceDB.cycle_id == cycle.id).one()
        assert invoice.total_amount == 0.0

    def test_prepare_twice_rejected(self, session, orchestrator):
        _store(session, "store-a")
        cycle_id, _ = _prepared(orchestrator)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.prepare_cycle(cycle_id, now=PREPARED_AT)


# =============================================================================
# TEST: SUBMISSION
# =============================================================================

class TestSubmitDecisions:
    """Business verdicts, tolerance matching and fraud scoring."""

    def test_all_legitimate_transactions_verified(self, session, orchestrator, context_provider):
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 3)
        cycle_id, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id

        orchestrator.record_download(database_id)
        result = orchestrator.submit_decisions(database_id, _approve_all(txs))

        assert result.verified == 3
        assert result.fake == 0
        assert result.database_status == "processed"
        assert result.cycle_completed is True
        assert all(o.composite == 0.9 for o in result.outcomes)

        # Providers only ever see plain data
        text, meta = context_provider.get_context_score.call_args[0]
        assert isinstance(meta, dict)
        assert meta["store_id"] == "store-a"

        assessment = session.query(FraudAssessmentDB).filter(FraudAssessmentDB.transaction_id == txs[0].id).one()
        assert assessment.context_score == 0.75
        assert assessment.behavioral_score == 1.0
        assert assessment.passed is True
        assert assessment.degraded is False

    def test_mixed_outcomes(self, session, orchestrator):
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 5)
        _, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id

        decisions = [
            VerificationDecision(txs[0].id, True),
            VerificationDecision(txs[1].id, False, notes="No such purchase"),
            VerificationDecision(txs[2].id, True, actual_amount=103.0, actual_time=txs[2].customer_time),
            VerificationDecision(
                txs[3].id, True, actual_amount=102.0, actual_time=txs[3].customer_time + timedelta(minutes=2),
            ),
            # txs[4] left undecided
        ]
        result = orchestrator.submit_decisions(database_id, decisions)

        assert (result.verified, result.fake, result.unverified) == (2, 2, 1)
        assert result.database_status == "processed"

        reasons = {o.transaction_id: o.reason for o in result.outcomes}
        assert reasons[txs[1].id] == "business_rejected"
        assert reasons[txs[2].id] == "tolerance_mismatch"

        boundary = session.get(TransactionDB, txs[3].id)
        assert boundary.verification_status == TransactionStatus.VERIFIED
        assert boundary.fraud_composite == 0.8
        assert boundary.actual_amount == 102.0

        undecided = session.get(TransactionDB, txs[4].id)
        assert undecided.verification_status == TransactionStatus.PENDING

        database = orchestrator.databases.get(database_id)
        assert database.verified_count + database.fake_count + database.unverified_count == database.transaction_count

    def test_red_flag_keywords_fail_scoring(self, session, orchestrator, context_provider):
        from app.services.fraud import KeywordService

        KeywordService(session).seed_default_keywords()
        context_provider.get_context_score.return_value = 0.5
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1, feedback="En bomb i helvete, jag vill ha miljoner kronor")
        _, databases = _prepared(orchestrator)

        result = orchestrator.submit_decisions(databases["store-a"].id, _approve_all(txs))

        # 0.4 * 0.5 + 0.2 * 0 + 0.3 + 0.1 = 0.6
        assert result.fake == 1
        assert result.outcomes[0].reason == "fraud_score_below_threshold"
        assert result.outcomes[0].composite == pytest.approx(0.6)

    def test_partial_pos_values_rejected(self, session, orchestrator):
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        _, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.submit_decisions(database_id, [VerificationDecision(txs[0].id, True, actual_amount=100.0)])

        assert "together" in str(exc_info.value)
        assert orchestrator.databases.get(database_id).status == DatabaseStatus.READY

    def test_foreign_transaction_rejected(self, session, orchestrator):
        _store(session, "store-a")
        _report(orchestrator, "store-a", 1)
        _, databases = _prepared(orchestrator)

        with pytest.raises(ValidationError):
            orchestrator.submit_decisions(databases["store-a"].id, [VerificationDecision("not-here", True)])

    def test_second_submission_rejected(self, session, orchestrator):
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        _, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id
        orchestrator.submit_decisions(database_id, _approve_all(txs))

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.submit_decisions(database_id, _approve_all(txs))

    def test_out_of_range_provider_score_rolls_back(self, session, orchestrator, context_provider):
        context_provider.get_context_score.return_value = 1.5
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        cycle_id, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id

        with pytest.raises(InvalidScoreRangeError):
            orchestrator.submit_decisions(database_id, _approve_all(txs))

        assert orchestrator.databases.get(database_id).status == DatabaseStatus.READY
        assert orchestrator.get_cycle(cycle_id).status == CycleStatus.READY
        assert session.get(TransactionDB, txs[0].id).verification_status == TransactionStatus.PENDING

    def test_transient_provider_failure_is_retried(self, session, orchestrator, context_provider):
        context_provider.get_context_score.side_effect = [ExternalDependencyError("context", "503"), 0.75]
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        _, databases = _prepared(orchestrator)

        result = orchestrator.submit_decisions(databases["store-a"].id, _approve_all(txs))

        assert context_provider.get_context_score.call_count == 2
        assert result.verified == 1
        assert result.errors == []


# =============================================================================
# TEST: DEGRADED SCORING AND MANUAL REVIEW
# =============================================================================

class TestManualReview:
    """An unavailable provider never auto-passes or auto-fails."""

    def test_unavailable_provider_routes_to_manual_review(self, session, orchestrator, behavioral_provider):
        behavioral_provider.get_behavioral_score.side_effect = ExternalDependencyError("behavioral", "timed out")
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 2)
        cycle_id, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id

        result = orchestrator.submit_decisions(database_id, _approve_all(txs))

        # One attempt plus two retries per transaction
        assert behavioral_provider.get_behavioral_score.call_count == 6
        assert result.manual_review == 2
        assert result.database_status == "submitted"
        assert len(result.errors) == 2
        assert orchestrator.get_cycle(cycle_id).manual_review_count == 2

        tx = session.get(TransactionDB, txs[0].id)
        assert tx.verification_status == TransactionStatus.PENDING
        assert tx.requires_manual_review is True
        assert tx.fraud_composite == pytest.approx(0.857143)

        assessment = session.query(FraudAssessmentDB).filter(FraudAssessmentDB.transaction_id == tx.id).one()
        assert assessment.degraded is True
        assert assessment.missing_components == ["behavioral"]
        assert assessment.behavioral_score is None

    def test_resolving_every_review_completes_the_cycle(self, session, orchestrator, behavioral_provider):
        behavioral_provider.get_behavioral_score.side_effect = ExternalDependencyError("behavioral", "timed out")
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 2)
        cycle_id, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id
        orchestrator.submit_decisions(database_id, _approve_all(txs))

        approved = orchestrator.resolve_manual_review(txs[0].id, approve=True, notes="Receipt checked")
        assert approved.verification_status == TransactionStatus.VERIFIED
        assert orchestrator.databases.get(database_id).status == DatabaseStatus.SUBMITTED

        rejected = orchestrator.resolve_manual_review(txs[1].id, approve=False)
        assert rejected.rejection_reason == "manual_review_rejected"

        assert orchestrator.databases.get(database_id).status == DatabaseStatus.PROCESSED
        cycle = orchestrator.get_cycle(cycle_id)
        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.verified_transactions == 1
        assert cycle.fake_transactions == 1
        assert cycle.manual_review_count == 0

        invoice = session.query(PaymentInvoiceDB).filter(PaymentInvoiceDB.cycle_id == cycle_id).one()
        assert len(invoice.line_items) == 1

    def test_resolving_unflagged_transaction_rejected(self, session, orchestrator):
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        _prepared(orchestrator)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.resolve_manual_review(txs[0].id, approve=True)

    def test_resolving_unknown_transaction(self, orchestrator):
        with pytest.raises(RecordNotFoundError):
            orchestrator.resolve_manual_review("missing", approve=True)


# =============================================================================
# TEST: FULL WEEK WITH DEADLINE EXPIRY
# =============================================================================

class TestFullWeek:
    """Store A submits; store B misses its deadline and forfeits."""

    def test_two_store_week(self, session, orchestrator):
        sink = MagicMock()
        orchestrator.invoice_sink = sink
        _store(session, "store-a")
        _store(session, "store-b")
        a_txs = _report(orchestrator, "store-a", 10)
        _report(orchestrator, "store-b", 3)

        cycle_id, databases = _prepared(orchestrator)
        db_a, db_b = databases["store-a"], databases["store-b"]
        assert db_b.deadline_at == DEADLINE

        orchestrator.record_download(db_a.id)
        assert orchestrator.get_cycle(cycle_id).status == CycleStatus.IN_PROGRESS

        submission = orchestrator.submit_decisions(db_a.id, _approve_all(a_txs))
        assert submission.verified == 10
        assert submission.cycle_completed is False

        sweep = orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))

        assert sweep.expired_database_ids == [db_b.id]
        assert sweep.forfeited_transactions == 3
        assert sweep.completed_cycles == [cycle_id]

        cycle = orchestrator.get_cycle(cycle_id)
        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.verified_transactions == 10
        assert cycle.fake_transactions == 3
        assert cycle.total_transactions == 13
        assert cycle.total_rewards == pytest.approx(137.0)
        assert cycle.completed_at is not None

        invoice = session.query(PaymentInvoiceDB).filter(PaymentInvoiceDB.cycle_id == cycle_id).one()
        assert len(invoice.line_items) == 10
        assert invoice.line_items[0]["reward_percentage"] == pytest.approx(13.7)
        assert invoice.reward_subtotal == pytest.approx(137.0)
        assert invoice.admin_fee == pytest.approx(27.4)
        assert invoice.total_amount == pytest.approx(164.4)

        forfeited = session.query(TransactionDB).filter(TransactionDB.store_id == "store-b").all()
        assert {tx.rejection_reason for tx in forfeited} == {"deadline_expired"}

        expired = orchestrator.databases.get(db_b.id)
        assert (expired.verified_count, expired.fake_count, expired.unverified_count) == (0, 3, 0)

        summary = orchestrator.manager.business_summary("biz-1")
        assert summary.verified_transactions == 10
        assert summary.fake_transactions == 3
        assert summary.unverified_transactions == 0

        sink.assert_called_once()
        assert sink.call_args[0][0].total == pytest.approx(164.4)

    def test_repeated_sweep_is_a_no_op(self, session, orchestrator):
        _store(session, "store-a")
        _report(orchestrator, "store-a", 2)
        _prepared(orchestrator)

        first = orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))
        second = orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))

        assert first.expired_count == 1
        assert first.forfeited_transactions == 2
        assert second.expired_count == 0
        assert second.forfeited_transactions == 0

    def test_every_database_expired_completes_from_ready(self, session, orchestrator):
        _store(session, "store-a")
        _report(orchestrator, "store-a", 2)
        cycle_id, _ = _prepared(orchestrator)

        orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))

        cycle = orchestrator.get_cycle(cycle_id)
        assert cycle.status == CycleStatus.COMPLETED
        assert cycle.fake_transactions == 2
        assert cycle.total_rewards == 0.0

    def test_failing_invoice_sink_keeps_invoice(self, session, orchestrator):
        orchestrator.invoice_sink = MagicMock(side_effect=RuntimeError("billing down"))
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        cycle_id, databases = _prepared(orchestrator)

        result = orchestrator.submit_decisions(databases["store-a"].id, _approve_all(txs))

        assert result.cycle_completed is True
        assert session.query(PaymentInvoiceDB).filter(PaymentInvoiceDB.cycle_id == cycle_id).count() == 1


# =============================================================================
# TEST: CANCELLATION
# =============================================================================

class TestCancelCycle:

    def test_cancel_ready_cycle(self, session, orchestrator):
        _store(session, "store-a")
        cycle_id, _ = _prepared(orchestrator)

        cycle = orchestrator.cancel_cycle(cycle_id, reason="Store closed for renovation")

        assert cycle.status == CycleStatus.CANCELLED
        assert cycle.cancelled_at is not None

    def test_cancel_is_final(self, session, orchestrator):
        cycle = orchestrator.open_cycle("biz-1", WEEK)
        orchestrator.cancel_cycle(cycle.id)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.cancel_cycle(cycle.id)
        with pytest.raises(InvalidStateTransitionError):
            orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)

    def test_cancel_completed_cycle_rejected(self, orchestrator):
        cycle = orchestrator.open_cycle("biz-1", WEEK)
        orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.cancel_cycle(cycle.id)

    def test_preparation_stops_at_next_store_after_cancel(self, session, orchestrator, monkeypatch):
        _store(session, "store-a")
        _store(session, "store-b")
        cycle = orchestrator.open_cycle("biz-1", WEEK)
        cycle_id = cycle.id
        create = orchestrator.manager.create

        def create_then_cancel(*args, **kwargs):
            row = create(*args, **kwargs)
            orchestrator.locks.request_cancel(cycle_id)
            return row

        monkeypatch.setattr(orchestrator.manager, "create", create_then_cancel)

        result = orchestrator.prepare_cycle(cycle_id, now=PREPARED_AT)

        assert result.cancelled is True
        assert len(result.created_databases) == 1
        assert result.cycle_status == "preparing"

        assert orchestrator.cancel_cycle(cycle_id).status == CycleStatus.CANCELLED


# =============================================================================
# TEST: SCORING POOL BUDGETS
# =============================================================================

def _slow_provider(contract, method, value, delay):
    provider = MagicMock(spec=contract)

    def answer(*args):
        time.sleep(delay)
        return value

    getattr(provider, method).side_effect = answer
    return provider


class TestScoringPool:
    """Each provider call is timed from when a worker starts it."""

    def test_queued_calls_are_not_charged_for_waiting(self, session):
        from app.services.fraud.providers import BehavioralScoreProvider, ContextScoreProvider

        settings = Settings(
            database_url="sqlite://",
            provider_timeout_seconds=0.2,
            provider_backoff_seconds=0.0,
            scoring_max_workers=1,
        )
        context = _slow_provider(ContextScoreProvider, "get_context_score", 0.75, 0.05)
        behavioral = _slow_provider(BehavioralScoreProvider, "get_behavioral_score", 0.0, 0.05)
        orchestrator = CycleOrchestrator(
            session, settings=settings, context_provider=context, behavioral_provider=behavioral,
            sleep=lambda seconds: None,
        )
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 10)
        _, databases = _prepared(orchestrator)

        # Twenty calls through one worker take far longer than any single budget
        result = orchestrator.submit_decisions(databases["store-a"].id, _approve_all(txs))

        assert result.verified == 10
        assert result.manual_review == 0
        assert result.errors == []
        assert context.get_context_score.call_count == 10
        assert behavioral.get_behavioral_score.call_count == 10

    def test_hung_call_is_cut_off(self, session, behavioral_provider):
        from app.services.fraud.providers import ContextScoreProvider

        settings = Settings(
            database_url="sqlite://",
            provider_timeout_seconds=0.05,
            provider_backoff_seconds=0.0,
            provider_max_retries=0,
        )
        context = _slow_provider(ContextScoreProvider, "get_context_score", 0.75, 0.3)
        orchestrator = CycleOrchestrator(
            session, settings=settings, context_provider=context, behavioral_provider=behavioral_provider,
            sleep=lambda seconds: None,
        )
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 2)
        _, databases = _prepared(orchestrator)

        result = orchestrator.submit_decisions(databases["store-a"].id, _approve_all(txs))

        assert result.manual_review == 2
        assert {e["dependency"] for e in result.errors} == {"context"}
        assert all("no result within" in e["error"] for e in result.errors)

        assessment = session.query(FraudAssessmentDB).filter(FraudAssessmentDB.transaction_id == txs[0].id).one()
        assert assessment.missing_components == ["context"]


# =============================================================================
# TEST: INTERRUPTED FORFEITURE
# =============================================================================

class TestSweepResumption:

    def test_failed_forfeiture_is_finished_by_next_sweep(self, session, orchestrator, monkeypatch):
        _store(session, "store-a")
        _report(orchestrator, "store-a", 3)
        cycle_id, databases = _prepared(orchestrator)
        database_id = databases["store-a"].id
        settle = orchestrator._settle
        failures = []

        def settle_once_failing(*args, **kwargs):
            if not failures:
                failures.append(args)
                raise SQLAlchemyError("disk I/O error")
            return settle(*args, **kwargs)

        monkeypatch.setattr(orchestrator, "_settle", settle_once_failing)

        first = orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))

        assert first.expired_database_ids == [database_id]
        assert first.forfeited_transactions == 0
        assert len(first.errors) == 1
        assert orchestrator.databases.get(database_id).status == DatabaseStatus.EXPIRED
        assert orchestrator.get_cycle(cycle_id).status == CycleStatus.READY

        second = orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))

        assert second.expired_database_ids == []
        assert second.forfeited_transactions == 3
        assert second.completed_cycles == [cycle_id]
        assert second.errors == []
        assert orchestrator.get_cycle(cycle_id).status == CycleStatus.COMPLETED

        third = orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))
        assert third.forfeited_transactions == 0
        assert third.completed_cycles == []


# =============================================================================
# TEST: LOCK REGISTRY LIFETIME
# =============================================================================

class TestLockRegistry:
    """Finished cycles leave nothing behind in the registry."""

    def test_completed_cycle_is_released(self, session, orchestrator):
        _store(session, "store-a")
        txs = _report(orchestrator, "store-a", 1)
        cycle_id, databases = _prepared(orchestrator)
        assert cycle_id in orchestrator.locks

        orchestrator.submit_decisions(databases["store-a"].id, _approve_all(txs))

        assert orchestrator.get_cycle(cycle_id).status == CycleStatus.COMPLETED
        assert cycle_id not in orchestrator.locks

    def test_swept_cycle_is_released(self, session, orchestrator):
        _store(session, "store-a")
        _report(orchestrator, "store-a", 1)
        cycle_id, _ = _prepared(orchestrator)

        orchestrator.sweep_deadlines(now=datetime(2026, 11, 3))

        assert cycle_id not in orchestrator.locks

    def test_cancelled_cycle_is_released(self, session, orchestrator):
        _store(session, "store-a")
        cycle_id, _ = _prepared(orchestrator)

        orchestrator.cancel_cycle(cycle_id)

        assert cycle_id not in orchestrator.locks

    def test_rejected_cancel_of_finished_cycle_leaves_nothing(self, orchestrator):
        cycle = orchestrator.open_cycle("biz-1", WEEK)
        orchestrator.prepare_cycle(cycle.id, now=PREPARED_AT)

        with pytest.raises(InvalidStateTransitionError):
            orchestrator.cancel_cycle(cycle.id)

        assert cycle.id not in orchestrator.locks

    def test_rejected_cancel_of_open_cycle_keeps_it_running(self, session, orchestrator, monkeypatch):
        _store(session, "store-a")
        cycle_id, _ = _prepared(orchestrator)

        def fail(*args, **kwargs):
            raise SQLAlchemyError("connection reset")

        monkeypatch.setattr(orchestrator.cycle_machine, "transition", fail)

        with pytest.raises(SQLAlchemyError):
            orchestrator.cancel_cycle(cycle_id)

        assert orchestrator.locks.is_cancel_requested(cycle_id) is False
        assert orchestrator.get_cycle(cycle_id).status == CycleStatus.READY
