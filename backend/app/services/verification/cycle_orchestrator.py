"""
Weekly Verification Cycle Orchestrator

Drives one business's verification week end to end:

1. open_cycle        PENDING cycle for an ISO week (YYYY-Www)
2. prepare_cycle     one verification database per active store, batching
                     that store's unbatched transactions of the week
3. record_download   business downloaded a database
4. submit_decisions  business verdicts → tolerance match → fraud scoring
5. resolve_manual_review  settle transactions whose scoring was degraded
6. sweep_deadlines / handle_expired  forfeit databases past their deadline
7. completion        every database processed or expired → invoice
8. cancel_cycle      cooperative cancellation at the next store boundary

FAILURE POLICY:
- One store or database failing never aborts the cycle; failures are
  recorded on the cycle (failed_stores) and in the result objects
- Context and behavioral providers are called in a bounded worker pool
  with a timeout and retried with exponential backoff
- If a provider stays unavailable the transaction is scored over the
  remaining components with re-normalized weights and held for manual
  review. It is never passed or failed automatically

All mutations of one cycle are serialized by a process-local per-cycle
lock plus a row lock on the cycle where the backend supports it.
"""
import functools
import logging
import math
import re
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import Settings
from ...models.db_models import (
    CycleStatus, DatabaseStatus, TransactionStatus, ActorType,
    VerificationCycleDB, TransactionDB, StoreDB, FraudAssessmentDB, PaymentInvoiceDB,
    utcnow,
)
from ...models.verification import (
    VerificationDecision, Invoice, PreparationResult, SubmissionResult,
    SweepResult, TransactionOutcome,
)
from ..fraud.keyword_detector import KeywordDetector
from ..fraud.providers import (
    ContextScoreProvider, BehavioralScoreProvider,
    UnconfiguredContextProvider, UnconfiguredBehavioralProvider,
)
from ..fraud.scoring import FraudScorer, invert_risk_score
from ..rewards.invoice_calculator import InvoiceCalculator
from ..errors import (
    ExternalDependencyError, InvalidStateTransitionError, RecordNotFoundError,
    ValidationError, VerificationError,
)
from .database_manager import VerificationDatabaseManager
from .deadline_engine import calculate_deadline
from .repository import VerificationCycleRepository, VerificationDatabaseRepository
from .state_machine import CycleStateMachine
from .tolerance_matcher import match, build_tolerance_window

logger = logging.getLogger(__name__)


CYCLE_WEEK_PATTERN = re.compile(r"^(\d{4})-W(\d{2})$")

TERMINAL_DATABASE_STATES = (DatabaseStatus.PROCESSED, DatabaseStatus.EXPIRED)
ACTIVE_CYCLE_STATES = (CycleStatus.READY, CycleStatus.IN_PROGRESS)
FINISHED_CYCLE_STATES = (CycleStatus.COMPLETED, CycleStatus.CANCELLED)

# How far back the behavioral history looks
HISTORY_WINDOW_DAYS = 30

# How often pending provider calls are checked against their budget
PROVIDER_POLL_SECONDS = 0.05


def parse_cycle_week(cycle_week: str) -> Tuple[datetime, datetime]:
    """
    Start (Monday 00:00) and end (next Monday 00:00) of an ISO week.

    Raises ValidationError for anything but a real YYYY-Www week.
    """
    found = CYCLE_WEEK_PATTERN.match(cycle_week or "")
    if not found:
        raise ValidationError(f"cycle_week must look like YYYY-Www, got {cycle_week!r}")

    year, week = int(found.group(1)), int(found.group(2))
    try:
        monday = date.fromisocalendar(year, week, 1)
    except ValueError:
        raise ValidationError(f"{cycle_week} is not a valid ISO week")

    start = datetime(monday.year, monday.month, monday.day)
    return start, start + timedelta(days=7)


# =============================================================================
# PER-CYCLE LOCKS
# =============================================================================

class CycleLockRegistry:
    """
    Process-local lock and cancellation flag per cycle.

    Owned by the process entry point and shared by every orchestrator
    instance in the process. The cancellation flag is read without the
    lock so a running preparation can observe it between stores.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._cancel_requested = set()

    def lock_for(self, cycle_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(cycle_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[cycle_id] = lock
            return lock

    def request_cancel(self, cycle_id: str):
        with self._guard:
            self._cancel_requested.add(cycle_id)

    def clear_cancel(self, cycle_id: str):
        with self._guard:
            self._cancel_requested.discard(cycle_id)

    def is_cancel_requested(self, cycle_id: str) -> bool:
        with self._guard:
            return cycle_id in self._cancel_requested

    def release(self, cycle_id: str):
        """Forget a finished cycle. Its lock and flag are never needed again."""
        with self._guard:
            self._locks.pop(cycle_id, None)
            self._cancel_requested.discard(cycle_id)

    def __contains__(self, cycle_id):
        with self._guard:
            return cycle_id in self._locks or cycle_id in self._cancel_requested


def releases_finished_cycles(method):
    """Drop registry entries of cycles the call finished, once its locks are let go."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        finally:
            finished, self._finished_cycles = self._finished_cycles, []
            for cycle_id in finished:
                self.locks.release(cycle_id)

    return wrapper


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class CycleOrchestrator:
    """
    Weekly verification cycle owner.

    Collaborators are injected by the process entry point; missing ones
    fall back to defaults built from settings.
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[Settings] = None,
        context_provider: Optional[ContextScoreProvider] = None,
        behavioral_provider: Optional[BehavioralScoreProvider] = None,
        lock_registry: Optional[CycleLockRegistry] = None,
        scorer: Optional[FraudScorer] = None,
        invoice_calculator: Optional[InvoiceCalculator] = None,
        keyword_detector: Optional[KeywordDetector] = None,
        invoice_sink: Optional[Callable[[Invoice], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db_session
        self.settings = settings or Settings()
        self.context_provider = context_provider or UnconfiguredContextProvider()
        self.behavioral_provider = behavioral_provider or UnconfiguredBehavioralProvider()
        self.locks = lock_registry or CycleLockRegistry()
        self.scorer = scorer or FraudScorer.from_settings(self.settings)
        self.invoice_calculator = invoice_calculator or InvoiceCalculator.from_settings(self.settings)
        self._keyword_detector = keyword_detector
        self.invoice_sink = invoice_sink
        self._sleep = sleep

        self.cycles = VerificationCycleRepository(db_session)
        self.databases = VerificationDatabaseRepository(db_session)
        self.manager = VerificationDatabaseManager(db_session, repository=self.databases)
        self.cycle_machine = CycleStateMachine(db_session)

        self._pending_invoices: List[Invoice] = []
        self._pending_finished: List[str] = []
        self._finished_cycles: List[str] = []

    @property
    def keyword_detector(self) -> KeywordDetector:
        if self._keyword_detector is None:
            self._keyword_detector = KeywordDetector.from_session(
                self.db,
                severity_cap=self.settings.keyword_severity_cap,
                default_language=self.settings.default_language,
            )
        return self._keyword_detector

    # -------------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------------

    def _commit(self):
        """Commit, then hand freshly issued invoices to the sink."""
        self.db.commit()

        invoices, self._pending_invoices = self._pending_invoices, []
        self._finished_cycles.extend(self._pending_finished)
        self._pending_finished = []
        if not self.invoice_sink:
            return
        for invoice in invoices:
            try:
                self.invoice_sink(invoice)
            except Exception as e:
                # The invoice is persisted; the sink can be replayed from payment_invoices
                logger.error(f"Invoice sink failed for cycle {invoice.cycle_id}: {e}")

    def _rollback(self):
        self.db.rollback()
        self._pending_invoices = []
        self._pending_finished = []

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    def record_transaction(
        self,
        store_id: str,
        customer_time: datetime,
        customer_amount: float,
        feedback_text: Optional[str] = None,
        phone_hash: Optional[str] = None,
        language_code: Optional[str] = None,
    ) -> TransactionDB:
        """Store a customer-reported purchase with its tolerance window."""
        store = self.db.query(StoreDB).filter(StoreDB.id == store_id).first()
        if not store:
            raise RecordNotFoundError("Store", store_id)

        window = build_tolerance_window(
            customer_time,
            customer_amount,
            time_tolerance_minutes=self.settings.time_tolerance_minutes,
            amount_tolerance=self.settings.amount_tolerance,
        )
        tx = TransactionDB(
            id=str(uuid4()),
            store_id=store.id,
            business_id=store.business_id,
            phone_hash=phone_hash,
            customer_time=customer_time,
            customer_amount=round(float(customer_amount), 2),
            customer_time_start=window.time_start,
            customer_time_end=window.time_end,
            customer_amount_min=window.amount_min,
            customer_amount_max=window.amount_max,
            feedback_text=feedback_text,
            language_code=(language_code or self.settings.default_language).lower(),
            verification_status=TransactionStatus.PENDING,
        )
        self.db.add(tx)
        self._commit()
        return tx

    # -------------------------------------------------------------------------
    # 1. Open
    # -------------------------------------------------------------------------

    def open_cycle(self, business_id: str, cycle_week: str) -> VerificationCycleDB:
        """
        Create a PENDING cycle.

        Raises ValidationError for a malformed week and DuplicateError if
        the business already has a cycle for it.
        """
        if not business_id or not str(business_id).strip():
            raise ValidationError("business_id is required")
        parse_cycle_week(cycle_week)

        cycle = self.cycles.create(business_id, cycle_week)
        self.cycle_machine.log_event(
            cycle_id=cycle.id,
            event_type="cycle_opened",
            actor=ActorType.SYSTEM,
            to_state=CycleStatus.PENDING,
            trigger="weekly_schedule",
            description=f"Verification cycle opened for {cycle_week}",
        )
        self._commit()
        logger.info(f"Opened verification cycle {cycle.id} for business {business_id} ({cycle_week})")
        return cycle

    # -------------------------------------------------------------------------
    # 2. Prepare
    # -------------------------------------------------------------------------

    def _cancel_requested(self, cycle: VerificationCycleDB) -> bool:
        return self.locks.is_cancel_requested(cycle.id) or cycle.status == CycleStatus.CANCELLED

    def _export_urls(self, cycle: VerificationCycleDB, database_id: str) -> Dict[str, str]:
        base = f"{self.settings.export_base_url.rstrip('/')}/{cycle.business_id}/{cycle.cycle_week}/{database_id}"
        return {"csv": f"{base}.csv", "excel": f"{base}.xlsx", "json": f"{base}.json"}

    def _unbatched_transactions(self, store_id: str, week_start: datetime, week_end: datetime) -> List[TransactionDB]:
        return self.db.query(TransactionDB).filter(
            TransactionDB.store_id == store_id,
            TransactionDB.verification_database_id.is_(None),
            TransactionDB.verification_status == TransactionStatus.PENDING,
            TransactionDB.customer_time >= week_start,
            TransactionDB.customer_time < week_end,
        ).order_by(TransactionDB.customer_time).all()

    @releases_finished_cycles
    def prepare_cycle(self, cycle_id: str, now: Optional[datetime] = None) -> PreparationResult:
        """
        Fan out database creation over the business's active stores.

        Each store is committed on its own; a failing store is logged,
        recorded in failed_stores and skipped. The cancellation flag is
        checked before every store.
        """
        now = now or utcnow()

        with self.locks.lock_for(cycle_id):
            cycle = self.cycles.get(cycle_id, for_update=True)
            if self._cancel_requested(cycle):
                raise InvalidStateTransitionError("VerificationCycle", cycle.status.value, "preparing", cycle_id)

            self.cycle_machine.transition(cycle, CycleStatus.PREPARING, "prepare_cycle", ActorType.SYSTEM)
            self._commit()

            week_start, week_end = parse_cycle_week(cycle.cycle_week)
            deadline = calculate_deadline(now, self.settings.deadline_business_days)
            business_id = cycle.business_id
            stores = self.db.query(StoreDB).filter(
                StoreDB.business_id == business_id,
                StoreDB.is_active.is_(True),
            ).order_by(StoreDB.id).all()
            store_ids = [store.id for store in stores]

            result = PreparationResult(cycle_id=cycle_id, cycle_status=cycle.status.value)
            failed = list(cycle.failed_stores or [])

            for store_id in store_ids:
                cycle = self.cycles.get(cycle_id, for_update=True)
                if self._cancel_requested(cycle):
                    logger.info(f"Cycle {cycle_id} cancellation observed; stopping before store {store_id}")
                    result.cancelled = True
                    break

                try:
                    transactions = self._unbatched_transactions(store_id, week_start, week_end)
                    database = self.manager.create(cycle_id, store_id, business_id, deadline, len(transactions))
                    for tx in transactions:
                        tx.verification_database_id = database.id
                    self.manager.mark_ready(database.id, self._export_urls(cycle, database.id))
                    self._commit()
                    result.created_databases.append(database.id)
                except (VerificationError, SQLAlchemyError) as e:
                    self._rollback()
                    logger.error(f"Cycle {cycle_id}: preparing store {store_id} failed: {e}")
                    failed.append({"store_id": store_id, "error": str(e)})

            cycle = self.cycles.get(cycle_id, for_update=True)
            cycle.failed_stores = failed
            result.failed_stores = failed
            if failed:
                self.cycle_machine.log_event(
                    cycle_id=cycle_id,
                    event_type="stores_failed",
                    actor=ActorType.SYSTEM,
                    trigger="prepare_cycle",
                    description=f"{len(failed)} stores could not be prepared",
                    metadata={"failed_stores": failed},
                )

            databases = self.databases.find_by_cycle(cycle_id)
            self._recompute_counts(cycle, databases)

            if not result.cancelled and cycle.status == CycleStatus.PREPARING:
                if all(d.status != DatabaseStatus.PREPARING for d in databases):
                    self.cycle_machine.transition(
                        cycle, CycleStatus.READY, "all_databases_ready", ActorType.SYSTEM,
                        metadata={"databases": len(databases), "failed_stores": len(failed)},
                    )
                    if not databases and not failed:
                        # Nothing to verify this week
                        self._complete_cycle(cycle, databases)

            self._commit()
            result.cycle_status = cycle.status.value
            logger.info(
                f"Prepared cycle {cycle_id}: {len(result.created_databases)} databases, "
                f"{len(failed)} failed stores, status {result.cycle_status}"
            )
            return result

    # -------------------------------------------------------------------------
    # 3. Download
    # -------------------------------------------------------------------------

    def _activate_cycle(self, cycle: VerificationCycleDB, trigger: str):
        if cycle.status == CycleStatus.READY:
            self.cycle_machine.transition(cycle, CycleStatus.IN_PROGRESS, trigger, ActorType.BUSINESS)
        elif cycle.status != CycleStatus.IN_PROGRESS:
            raise InvalidStateTransitionError(
                "VerificationCycle", cycle.status.value, CycleStatus.IN_PROGRESS.value, cycle.id
            )

    def record_download(self, database_id: str):
        """Business downloaded its database. The cycle moves to IN_PROGRESS on first activity."""
        database = self.databases.get(database_id)

        with self.locks.lock_for(database.cycle_id):
            try:
                cycle = self.cycles.get(database.cycle_id, for_update=True)
                self._activate_cycle(cycle, "first_download")
                database = self.manager.mark_downloaded(database_id)
                self._commit()
            except Exception:
                self._rollback()
                raise
            return database

    # -------------------------------------------------------------------------
    # 4. Submit
    # -------------------------------------------------------------------------

    def _validate_decisions(self, decisions: List[VerificationDecision], transaction_ids) -> Dict[str, VerificationDecision]:
        by_id = {}
        for decision in decisions:
            if decision.transaction_id in by_id:
                raise ValidationError(f"Duplicate decision for transaction {decision.transaction_id}")
            if decision.transaction_id not in transaction_ids:
                raise ValidationError(f"Transaction {decision.transaction_id} is not part of this database")
            if (decision.actual_amount is None) != (decision.actual_time is None):
                raise ValidationError(
                    f"actual_amount and actual_time must be supplied together (transaction {decision.transaction_id})"
                )
            if decision.actual_amount is not None:
                amount = decision.actual_amount
                if isinstance(amount, bool) or not isinstance(amount, (int, float)) or math.isnan(amount) or amount < 0:
                    raise ValidationError(
                        f"actual_amount must be a non-negative number (transaction {decision.transaction_id})"
                    )
            by_id[decision.transaction_id] = decision
        return by_id

    def _customer_history(self, tx: TransactionDB) -> Dict[str, Any]:
        history = {
            "transaction_id": tx.id,
            "phone_hash": tx.phone_hash,
            "store_id": tx.store_id,
            "recent_transactions": 0,
            "recent_stores": 0,
            "recent_rejections": 0,
        }
        if not tx.phone_hash:
            return history

        since = tx.customer_time - timedelta(days=HISTORY_WINDOW_DAYS)
        recent = self.db.query(TransactionDB).filter(
            TransactionDB.phone_hash == tx.phone_hash,
            TransactionDB.id != tx.id,
            TransactionDB.customer_time >= since,
        ).all()
        history["recent_transactions"] = len(recent)
        history["recent_stores"] = len({r.store_id for r in recent})
        history["recent_rejections"] = sum(1 for r in recent if r.verification_status == TransactionStatus.REJECTED)
        return history

    def _call_with_retry(self, dependency: str, fn: Callable, *args) -> float:
        """Call a provider, retrying ExternalDependencyError with exponential backoff."""
        attempts = 1 + self.settings.provider_max_retries
        for attempt in range(attempts):
            try:
                return fn(*args)
            except ExternalDependencyError as e:
                if attempt == attempts - 1:
                    raise
                delay = self.settings.provider_backoff_seconds * (2 ** attempt)
                logger.warning(f"{dependency} attempt {attempt + 1}/{attempts} failed ({e}); retrying in {delay}s")
                self._sleep(delay)

    def _fetch_external_scores(
        self, requests_by_tx: Dict[str, Tuple[Dict[str, Any], Dict[str, Any], Optional[str]]],
    ) -> Tuple[Dict[str, Dict[str, Optional[float]]], List[Dict[str, str]]]:
        """
        Context and behavioral scores for each transaction.

        Calls run in a bounded pool. Each call gets its own budget
        (every attempt's timeout plus backoff), counted from the moment a
        worker picks it up, so calls waiting in the queue are never charged.
        A call that still fails after retries, or overruns its budget,
        yields None for that component. Once every worker is stuck on an
        overrun call, the calls still queued are reported unavailable.
        """
        scores = {tx_id: {"context": None, "behavioral": None} for tx_id in requests_by_tx}
        errors = []
        if not requests_by_tx:
            return scores, errors

        attempts = 1 + self.settings.provider_max_retries
        backoff_total = sum(self.settings.provider_backoff_seconds * (2 ** i) for i in range(attempts - 1))
        budget = attempts * self.settings.provider_timeout_seconds + backoff_total
        workers = self.settings.scoring_max_workers
        started: Dict[Tuple[str, str], float] = {}

        def run(key, dependency, fn, *args):
            started[key] = time.monotonic()
            return self._call_with_retry(dependency, fn, *args)

        def unavailable(key, message):
            errors.append({"transaction_id": key[0], "dependency": key[1], "error": message})

        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = {}
            for tx_id, (meta, history, text) in requests_by_tx.items():
                key = (tx_id, "context")
                futures[executor.submit(run, key, "context", self.context_provider.get_context_score, text, meta)] = key
                key = (tx_id, "behavioral")
                futures[executor.submit(
                    run, key, "behavioral", self.behavioral_provider.get_behavioral_score, history
                )] = key

            pending = set(futures)
            overrun = set()
            while pending:
                done, pending = wait(pending, timeout=PROVIDER_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    tx_id, component = futures[future]
                    try:
                        scores[tx_id][component] = future.result()
                    except ExternalDependencyError as e:
                        unavailable(futures[future], str(e))

                now = time.monotonic()
                for future in list(pending):
                    key = futures[future]
                    if key in started and now - started[key] > budget:
                        unavailable(key, f"no result within {budget:.1f}s")
                        pending.discard(future)
                        overrun.add(future)

                if pending and sum(1 for f in overrun if not f.done()) >= workers:
                    for future in pending:
                        unavailable(futures[future], "no scoring worker available")
                    pending = set()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for error in errors:
            logger.warning(
                f"{error['dependency']} score unavailable for transaction {error['transaction_id']}: {error['error']}"
            )
        return scores, errors

    def _settle(self, tx: TransactionDB, status: TransactionStatus, reason: Optional[str] = None):
        tx.verification_status = status
        tx.requires_manual_review = False
        tx.updated_at = utcnow()
        if status == TransactionStatus.VERIFIED:
            amount = tx.actual_amount if tx.actual_amount is not None else tx.customer_amount
            tx.reward_percentage = self.invoice_calculator.reward_percentage(tx.fraud_composite)
            tx.reward_amount = self.invoice_calculator.reward_amount(tx.fraud_composite, amount)
            tx.rejection_reason = None
        else:
            tx.reward_percentage = 0.0
            tx.reward_amount = 0.0
            tx.rejection_reason = reason

    def _recount_database(self, database_id: str) -> Tuple[int, int, int, int]:
        """(verified, fake, unverified, flagged) from the database's transactions."""
        self.db.flush()
        transactions = self.db.query(TransactionDB).filter(TransactionDB.verification_database_id == database_id).all()
        verified = sum(1 for t in transactions if t.verification_status == TransactionStatus.VERIFIED)
        fake = sum(1 for t in transactions if t.verification_status == TransactionStatus.REJECTED)
        flagged = sum(1 for t in transactions if t.requires_manual_review)
        return verified, fake, len(transactions) - verified - fake, flagged

    @releases_finished_cycles
    def submit_decisions(self, database_id: str, decisions: List[VerificationDecision]) -> SubmissionResult:
        """
        Classify a database's transactions from the business's decisions.

        Per transaction:
        - declared illegitimate → fake
        - POS values supplied and outside the tolerance window → fake
        - otherwise scored; transaction sub-score is the match confidence,
          or 1.0 without POS values
        - passed → verified, failed → fake
        - a provider unavailable → degraded score, held for manual review

        Transactions without a decision stay unverified and earn nothing.
        The database is PROCESSED once nothing awaits manual review.
        """
        database = self.databases.get(database_id)
        transactions = self.db.query(TransactionDB).filter(
            TransactionDB.verification_database_id == database_id
        ).order_by(TransactionDB.customer_time).all()
        decided = self._validate_decisions(decisions or [], {t.id for t in transactions})

        with self.locks.lock_for(database.cycle_id):
            try:
                cycle = self.cycles.get(database.cycle_id, for_update=True)
                self._activate_cycle(cycle, "first_submission")
                self.manager.mark_submitted(database_id)

                result = SubmissionResult(database_id=database_id, database_status=DatabaseStatus.SUBMITTED.value)
                candidates: Dict[str, Tuple[TransactionDB, float]] = {}

                for tx in transactions:
                    decision = decided.get(tx.id)
                    if decision is None or tx.verification_status != TransactionStatus.PENDING:
                        continue

                    tx.business_notes = decision.notes
                    if decision.has_pos_values:
                        tx.actual_amount = round(float(decision.actual_amount), 2)
                        tx.actual_time = decision.actual_time

                    if not decision.is_legitimate:
                        self._settle(tx, TransactionStatus.REJECTED, "business_rejected")
                        result.outcomes.append(TransactionOutcome(tx.id, "fake", reason="business_rejected"))
                        continue

                    transaction_score = 1.0
                    if decision.has_pos_values:
                        found = match(
                            tx.customer_time, tx.customer_amount, tx.actual_time, tx.actual_amount,
                            time_tolerance_minutes=self.settings.time_tolerance_minutes,
                            amount_tolerance=self.settings.amount_tolerance,
                        )
                        if not found.is_match:
                            self._settle(tx, TransactionStatus.REJECTED, "tolerance_mismatch")
                            result.outcomes.append(TransactionOutcome(tx.id, "fake", reason="tolerance_mismatch"))
                            continue
                        transaction_score = found.confidence

                    candidates[tx.id] = (tx, transaction_score)

                requests_by_tx = {}
                for tx_id, (tx, _) in candidates.items():
                    meta = {
                        "transaction_id": tx.id,
                        "store_id": tx.store_id,
                        "customer_amount": tx.customer_amount,
                        "customer_time": tx.customer_time.isoformat(),
                        "language_code": tx.language_code,
                    }
                    requests_by_tx[tx_id] = (meta, self._customer_history(tx), tx.feedback_text)

                external, errors = self._fetch_external_scores(requests_by_tx)
                result.errors.extend(errors)

                for tx_id, (tx, transaction_score) in candidates.items():
                    outcome = self._score_transaction(tx, transaction_score, external[tx_id])
                    result.outcomes.append(outcome)

                verified, fake, unverified, flagged = self._recount_database(database_id)
                self.manager.update_verification_counts(database_id, verified, fake, unverified)

                if flagged == 0:
                    self.manager.mark_processed(database_id)
                    result.cycle_completed = self._complete_if_finished(cycle)

                self._recompute_counts(cycle, self.databases.find_by_cycle(cycle.id))
                self._commit()
            except Exception:
                self._rollback()
                raise

            result.database_status = self.databases.get(database_id).status.value
            result.verified, result.fake, result.unverified = verified, fake, unverified
            result.manual_review = flagged
            logger.info(
                f"Database {database_id} submitted: {verified} verified, {fake} fake, "
                f"{flagged} manual review, {unverified} unverified"
            )
            return result

    def _score_transaction(
        self, tx: TransactionDB, transaction_score: float, external: Dict[str, Optional[float]],
    ) -> TransactionOutcome:
        scan = self.keyword_detector.scan(tx.feedback_text, tx.language_code)
        behavioral = external.get("behavioral")
        components = {
            "context": external.get("context"),
            "keyword": invert_risk_score(scan.score),
            "behavioral": invert_risk_score(behavioral) if behavioral is not None else None,
            "transaction": transaction_score,
        }

        if components["context"] is None or components["behavioral"] is None:
            fraud = self.scorer.score_available(components)
        else:
            fraud = self.scorer.score(
                components["context"], components["keyword"], components["behavioral"], components["transaction"],
            )

        self.db.add(FraudAssessmentDB(
            id=str(uuid4()),
            transaction_id=tx.id,
            context_score=components["context"],
            keyword_score=components["keyword"],
            behavioral_score=components["behavioral"],
            transaction_score=components["transaction"],
            composite_score=fraud.composite,
            passed=fraud.passed,
            degraded=fraud.degraded,
            missing_components=fraud.missing_components,
            risk_level=fraud.risk_level,
            recommendation=fraud.recommendation,
            primary_reason=fraud.primary_reason,
            keyword_matches=[m.keyword for m in scan.matches],
        ))
        tx.fraud_composite = fraud.composite

        if fraud.degraded:
            tx.requires_manual_review = True
            tx.updated_at = utcnow()
            return TransactionOutcome(
                tx.id, "manual_review", composite=fraud.composite, requires_manual_review=True,
                reason=f"missing {', '.join(fraud.missing_components)}",
            )

        if fraud.passed:
            self._settle(tx, TransactionStatus.VERIFIED)
            return TransactionOutcome(tx.id, "verified", composite=fraud.composite)

        self._settle(tx, TransactionStatus.REJECTED, "fraud_score_below_threshold")
        return TransactionOutcome(tx.id, "fake", composite=fraud.composite, reason="fraud_score_below_threshold")

    # -------------------------------------------------------------------------
    # 5. Manual review
    # -------------------------------------------------------------------------

    @releases_finished_cycles
    def resolve_manual_review(self, transaction_id: str, approve: bool, notes: Optional[str] = None) -> TransactionDB:
        """
        Settle a transaction held for manual review.

        Once its database has no flagged transactions left, the database
        is processed and the cycle may complete.
        """
        tx = self.db.query(TransactionDB).filter(TransactionDB.id == transaction_id).first()
        if not tx:
            raise RecordNotFoundError("Transaction", transaction_id)
        if not tx.requires_manual_review or tx.verification_status != TransactionStatus.PENDING:
            raise InvalidStateTransitionError("Transaction", tx.verification_status.value, "reviewed", transaction_id)

        database = self.databases.get(tx.verification_database_id)

        with self.locks.lock_for(database.cycle_id):
            try:
                cycle = self.cycles.get(database.cycle_id, for_update=True)
                if cycle.status not in ACTIVE_CYCLE_STATES:
                    raise InvalidStateTransitionError("VerificationCycle", cycle.status.value, "reviewed", cycle.id)

                if approve:
                    self._settle(tx, TransactionStatus.VERIFIED)
                else:
                    self._settle(tx, TransactionStatus.REJECTED, "manual_review_rejected")
                if notes:
                    tx.business_notes = notes

                self.cycle_machine.log_event(
                    cycle_id=cycle.id,
                    database_id=database.id,
                    event_type="manual_review_resolved",
                    actor=ActorType.ADMIN,
                    trigger="manual_review",
                    description=f"Transaction {transaction_id} {'approved' if approve else 'rejected'} on manual review",
                    metadata={"transaction_id": transaction_id, "approved": bool(approve)},
                )

                verified, fake, unverified, flagged = self._recount_database(database.id)
                self.manager.update_verification_counts(database.id, verified, fake, unverified)
                if flagged == 0 and database.status == DatabaseStatus.SUBMITTED:
                    self.manager.mark_processed(database.id, trigger="manual_review_resolved")
                    self._complete_if_finished(cycle)

                self._recompute_counts(cycle, self.databases.find_by_cycle(cycle.id))
                self._commit()
            except Exception:
                self._rollback()
                raise

            logger.info(f"Manual review for transaction {transaction_id}: {'approved' if approve else 'rejected'}")
            return tx

    # -------------------------------------------------------------------------
    # 6. Deadlines
    # -------------------------------------------------------------------------

    @releases_finished_cycles
    def sweep_deadlines(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Expire overdue databases, then forfeit them.

        Expired databases left unsettled by an earlier sweep that failed
        part way are forfeited again, so one failure never strands a cycle.
        """
        expired = self.manager.sweep_expired_databases(now or utcnow())
        self._commit()

        leftover = [d for d in self.databases.find_unsettled_expired_ids() if d not in expired]
        if leftover:
            logger.warning(f"Deadline sweep resuming forfeiture of {len(leftover)} expired databases")

        result = self.handle_expired(expired + leftover)
        result.expired_database_ids = expired
        return result

    @releases_finished_cycles
    def handle_expired(self, database_ids: List[str]) -> SweepResult:
        """
        Forfeit every unsettled transaction of the given expired databases.

        Safe to repeat: already forfeited transactions are left alone.
        """
        result = SweepResult(expired_database_ids=list(database_ids))

        for database_id in database_ids:
            database = self.databases.find_by_id(database_id)
            if not database:
                result.errors.append({"database_id": database_id, "error": "not found"})
                continue
            if database.status != DatabaseStatus.EXPIRED:
                result.errors.append({"database_id": database_id, "error": f"status is {database.status.value}"})
                continue

            with self.locks.lock_for(database.cycle_id):
                try:
                    cycle = self.cycles.get(database.cycle_id, for_update=True)
                    pending = self.db.query(TransactionDB).filter(
                        TransactionDB.verification_database_id == database_id,
                        TransactionDB.verification_status == TransactionStatus.PENDING,
                    ).all()
                    for tx in pending:
                        self._settle(tx, TransactionStatus.REJECTED, "deadline_expired")
                    verified, fake, unverified, _ = self._recount_database(database_id)
                    self.manager.update_verification_counts(database_id, verified, fake, unverified)

                    if pending:
                        self.cycle_machine.log_event(
                            cycle_id=cycle.id,
                            database_id=database_id,
                            event_type="transactions_forfeited",
                            actor=ActorType.SYSTEM,
                            trigger="deadline_sweep",
                            description=f"{len(pending)} transactions forfeited after deadline expiry",
                            metadata={"count": len(pending)},
                        )

                    if self._complete_if_finished(cycle):
                        result.completed_cycles.append(cycle.id)
                    self._recompute_counts(cycle, self.databases.find_by_cycle(cycle.id))
                    self._commit()
                    result.forfeited_transactions += len(pending)
                except (VerificationError, SQLAlchemyError) as e:
                    self._rollback()
                    logger.error(f"Forfeiting expired database {database_id} failed: {e}")
                    result.errors.append({"database_id": database_id, "error": str(e)})

        return result

    # -------------------------------------------------------------------------
    # 7. Completion
    # -------------------------------------------------------------------------

    def _recompute_counts(self, cycle: VerificationCycleDB, databases):
        """Fan-in: cycle counts are always derived from the child databases."""
        self.db.flush()
        cycle.total_databases = len(databases)
        cycle.prepared_databases = sum(1 for d in databases if d.status != DatabaseStatus.PREPARING)
        cycle.submitted_databases = sum(
            1 for d in databases if d.status in (DatabaseStatus.SUBMITTED, DatabaseStatus.PROCESSED)
        )
        cycle.total_transactions = sum(d.transaction_count for d in databases)
        cycle.verified_transactions = sum(d.verified_count for d in databases if d.status != DatabaseStatus.EXPIRED)
        cycle.fake_transactions = sum(
            d.transaction_count if d.status == DatabaseStatus.EXPIRED else d.fake_count
            for d in databases
        )
        database_ids = [d.id for d in databases]
        cycle.manual_review_count = self.db.query(TransactionDB).filter(
            TransactionDB.verification_database_id.in_(database_ids),
            TransactionDB.requires_manual_review.is_(True),
        ).count() if database_ids else 0
        cycle.updated_at = utcnow()

    def _complete_if_finished(self, cycle: VerificationCycleDB) -> bool:
        if cycle.status not in ACTIVE_CYCLE_STATES:
            return False
        databases = self.databases.find_by_cycle(cycle.id)
        if not databases or any(d.status not in TERMINAL_DATABASE_STATES for d in databases):
            return False

        self._complete_cycle(cycle, databases)
        return True

    def _complete_cycle(self, cycle: VerificationCycleDB, databases):
        self._recompute_counts(cycle, databases)

        processed_ids = [d.id for d in databases if d.status == DatabaseStatus.PROCESSED]
        transactions = self.db.query(TransactionDB).filter(
            TransactionDB.verification_database_id.in_(processed_ids)
        ).all() if processed_ids else []

        invoice_id = str(uuid4())
        invoice = self.invoice_calculator.build_invoice(cycle.business_id, cycle.id, transactions, invoice_id=invoice_id)
        self.db.add(PaymentInvoiceDB(
            id=invoice_id,
            cycle_id=cycle.id,
            business_id=cycle.business_id,
            line_items=[item.to_dict() for item in invoice.line_items],
            reward_subtotal=invoice.reward_subtotal,
            admin_fee=invoice.admin_fee,
            total_amount=invoice.total,
        ))
        cycle.total_rewards = invoice.reward_subtotal
        cycle.total_invoices = 1

        self.cycle_machine.transition(
            cycle, CycleStatus.COMPLETED, "all_databases_terminal", ActorType.SYSTEM,
            metadata={
                "verified_transactions": cycle.verified_transactions,
                "fake_transactions": cycle.fake_transactions,
                "invoice_total": invoice.total,
            },
        )
        self._pending_invoices.append(invoice)
        self._pending_finished.append(cycle.id)
        logger.info(
            f"Cycle {cycle.id} completed: {cycle.verified_transactions} verified, "
            f"{cycle.fake_transactions} fake, invoice total {invoice.total}"
        )

    # -------------------------------------------------------------------------
    # 8. Cancel
    # -------------------------------------------------------------------------

    @releases_finished_cycles
    def cancel_cycle(self, cycle_id: str, reason: Optional[str] = None) -> VerificationCycleDB:
        """
        Cancel a non-terminal cycle.

        The flag is raised before taking the lock, so a preparation in
        flight stops at its next store boundary and releases the lock.
        """
        self.locks.request_cancel(cycle_id)
        try:
            with self.locks.lock_for(cycle_id):
                cycle = self.cycles.get(cycle_id, for_update=True)
                self.cycle_machine.transition(
                    cycle, CycleStatus.CANCELLED, "cancel_cycle", ActorType.ADMIN,
                    metadata={"reason": reason} if reason else None,
                )
                self._recompute_counts(cycle, self.databases.find_by_cycle(cycle_id))
                self._pending_finished.append(cycle_id)
                self._commit()
                return cycle
        except Exception:
            self._rollback()
            cycle = self.cycles.find_by_id(cycle_id)
            if cycle is None or cycle.status in FINISHED_CYCLE_STATES:
                self.locks.release(cycle_id)
            else:
                self.locks.clear_cancel(cycle_id)
            raise

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_cycle(self, cycle_id: str) -> VerificationCycleDB:
        return self.cycles.get(cycle_id)

    def get_cycle_databases(self, cycle_id: str):
        self.cycles.get(cycle_id)
        return self.databases.find_by_cycle(cycle_id)
