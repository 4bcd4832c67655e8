"""
Verification Repositories

Narrow persistence interface for cycles and verification databases.
Rows are read and written through the SQLAlchemy session passed in;
the repositories never commit. Callers own the unit of work.

Status writes are conditional updates: the expected prior status is part
of the WHERE clause, so two writers racing on the same row cannot both
apply a transition. The affected row count tells the caller who won.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from ...models.db_models import (
    VerificationCycleDB, VerificationDatabaseDB, TransactionDB,
    CycleStatus, DatabaseStatus, TransactionStatus, utcnow,
)
from ..errors import DuplicateError, RecordNotFoundError, ValidationError


OPEN_DATABASE_STATES = (DatabaseStatus.READY, DatabaseStatus.DOWNLOADED)
TERMINAL_DATABASE_STATES = (DatabaseStatus.PROCESSED, DatabaseStatus.EXPIRED)


class VerificationDatabaseRepository:
    """Rows of verification_databases."""

    def __init__(self, db):
        self.db = db

    def create(
        self,
        cycle_id: str,
        store_id: str,
        business_id: str,
        deadline_at: datetime,
        transaction_count: int = 0,
    ) -> VerificationDatabaseDB:
        """
        Insert a database in PREPARING.

        Raises DuplicateError if the (cycle, store) pair already exists.
        """
        existing = self.db.query(VerificationDatabaseDB.id).filter(
            VerificationDatabaseDB.cycle_id == cycle_id,
            VerificationDatabaseDB.store_id == store_id,
        ).first()
        if existing:
            raise DuplicateError(f"Verification database already exists for cycle {cycle_id}, store {store_id}")

        row = VerificationDatabaseDB(
            id=str(uuid4()),
            cycle_id=cycle_id,
            store_id=store_id,
            business_id=business_id,
            deadline_at=deadline_at,
            status=DatabaseStatus.PREPARING,
            transaction_count=transaction_count,
            verified_count=0,
            fake_count=0,
            unverified_count=transaction_count,
        )
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateError(f"Verification database already exists for cycle {cycle_id}, store {store_id}")
        return row

    def find_by_id(self, database_id: str) -> Optional[VerificationDatabaseDB]:
        return self.db.query(VerificationDatabaseDB).filter(VerificationDatabaseDB.id == database_id).first()

    def get(self, database_id: str) -> VerificationDatabaseDB:
        row = self.find_by_id(database_id)
        if not row:
            raise RecordNotFoundError("VerificationDatabase", database_id)
        return row

    def find_by_cycle(self, cycle_id: str) -> List[VerificationDatabaseDB]:
        return self.db.query(VerificationDatabaseDB).filter(
            VerificationDatabaseDB.cycle_id == cycle_id
        ).order_by(VerificationDatabaseDB.created_at, VerificationDatabaseDB.store_id).all()

    def find_by_business(self, business_id: str) -> List[VerificationDatabaseDB]:
        return self.db.query(VerificationDatabaseDB).filter(
            VerificationDatabaseDB.business_id == business_id
        ).all()

    def update_status(
        self,
        database_id: str,
        expected: Iterable[DatabaseStatus],
        new_status: DatabaseStatus,
        fields: Optional[Dict] = None,
    ) -> int:
        """
        Conditionally move a row to new_status.

        Returns the number of rows updated: 1 if the row was in one of the
        expected states, 0 if another writer got there first.
        """
        values = {
            VerificationDatabaseDB.status: new_status,
            VerificationDatabaseDB.updated_at: utcnow(),
        }
        for name, value in (fields or {}).items():
            values[getattr(VerificationDatabaseDB, name)] = value

        return self.db.query(VerificationDatabaseDB).filter(
            VerificationDatabaseDB.id == database_id,
            VerificationDatabaseDB.status.in_(list(expected)),
        ).update(values, synchronize_session="fetch")

    def update_counts(self, database_id: str, verified: int, fake: int, unverified: int) -> VerificationDatabaseDB:
        """
        Overwrite the classification counts.

        Raises ValidationError unless verified + fake + unverified equals
        the database's transaction_count.
        """
        row = self.get(database_id)
        for name, value in (("verified", verified), ("fake", fake), ("unverified", unverified)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} count must be a non-negative integer")

        if verified + fake + unverified != row.transaction_count:
            raise ValidationError(
                f"Counts {verified}+{fake}+{unverified} do not add up to "
                f"transaction_count {row.transaction_count} for database {database_id}"
            )

        row.verified_count = verified
        row.fake_count = fake
        row.unverified_count = unverified
        row.updated_at = utcnow()
        self.db.flush()
        return row

    def find_overdue_ids(self, now: datetime) -> List[str]:
        """Ids of ready/downloaded databases whose deadline has passed."""
        rows = self.db.query(VerificationDatabaseDB.id).filter(
            VerificationDatabaseDB.status.in_(OPEN_DATABASE_STATES),
            VerificationDatabaseDB.deadline_at < now,
        ).all()
        return [row.id for row in rows]

    def expire_if_overdue(self, database_id: str, now: datetime) -> int:
        """
        Expire one database if it is still open and past its deadline.

        The status and deadline checks sit in the WHERE clause, so replicas
        sweeping concurrently expire each row exactly once.
        """
        return self.db.query(VerificationDatabaseDB).filter(
            VerificationDatabaseDB.id == database_id,
            VerificationDatabaseDB.status.in_(OPEN_DATABASE_STATES),
            VerificationDatabaseDB.deadline_at < now,
        ).update(
            {
                VerificationDatabaseDB.status: DatabaseStatus.EXPIRED,
                VerificationDatabaseDB.expired_at: now,
                VerificationDatabaseDB.updated_at: now,
            },
            synchronize_session="fetch",
        )

    def find_unsettled_expired_ids(self) -> List[str]:
        """
        Ids of expired databases whose forfeiture never finished.

        Such a row still holds pending transactions, or its cycle is still
        open although every database of the cycle is terminal.
        """
        rows = self.db.query(VerificationDatabaseDB).join(
            VerificationCycleDB, VerificationCycleDB.id == VerificationDatabaseDB.cycle_id
        ).filter(
            VerificationDatabaseDB.status == DatabaseStatus.EXPIRED,
            VerificationCycleDB.status.in_([CycleStatus.READY, CycleStatus.IN_PROGRESS]),
        ).order_by(VerificationDatabaseDB.deadline_at, VerificationDatabaseDB.id).all()

        unsettled = []
        for row in rows:
            has_pending = self.db.query(TransactionDB.id).filter(
                TransactionDB.verification_database_id == row.id,
                TransactionDB.verification_status == TransactionStatus.PENDING,
            ).first() is not None
            cycle_has_open_rows = self.db.query(VerificationDatabaseDB.id).filter(
                VerificationDatabaseDB.cycle_id == row.cycle_id,
                VerificationDatabaseDB.status.notin_(TERMINAL_DATABASE_STATES),
            ).first() is not None
            if has_pending or not cycle_has_open_rows:
                unsettled.append(row.id)
        return unsettled

    def find_deadlines_between(self, start: datetime, end: datetime) -> List[VerificationDatabaseDB]:
        """Open databases whose deadline falls in [start, end)."""
        return self.db.query(VerificationDatabaseDB).filter(
            VerificationDatabaseDB.status.in_(OPEN_DATABASE_STATES),
            VerificationDatabaseDB.deadline_at >= start,
            VerificationDatabaseDB.deadline_at < end,
        ).order_by(VerificationDatabaseDB.deadline_at).all()


class VerificationCycleRepository:
    """Rows of verification_cycles."""

    def __init__(self, db):
        self.db = db

    def create(self, business_id: str, cycle_week: str) -> VerificationCycleDB:
        """
        Insert a cycle in PENDING.

        Raises DuplicateError if the business already has a cycle for the week.
        """
        if self.find_by_business_week(business_id, cycle_week):
            raise DuplicateError(f"Business {business_id} already has a cycle for {cycle_week}")

        row = VerificationCycleDB(
            id=str(uuid4()),
            business_id=business_id,
            cycle_week=cycle_week,
            status=CycleStatus.PENDING,
            failed_stores=[],
        )
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateError(f"Business {business_id} already has a cycle for {cycle_week}")
        return row

    def find_by_id(self, cycle_id: str, for_update: bool = False) -> Optional[VerificationCycleDB]:
        query = self.db.query(VerificationCycleDB).filter(VerificationCycleDB.id == cycle_id)
        if for_update:
            # Ignored by SQLite; row lock on PostgreSQL. Reloads a row the
            # session already holds, so the caller sees the committed state.
            query = query.with_for_update().populate_existing()
        return query.first()

    def get(self, cycle_id: str, for_update: bool = False) -> VerificationCycleDB:
        row = self.find_by_id(cycle_id, for_update=for_update)
        if not row:
            raise RecordNotFoundError("VerificationCycle", cycle_id)
        return row

    def find_by_business_week(self, business_id: str, cycle_week: str) -> Optional[VerificationCycleDB]:
        return self.db.query(VerificationCycleDB).filter(
            VerificationCycleDB.business_id == business_id,
            VerificationCycleDB.cycle_week == cycle_week,
        ).first()

    def list_by_business(self, business_id: str) -> List[VerificationCycleDB]:
        return self.db.query(VerificationCycleDB).filter(
            VerificationCycleDB.business_id == business_id
        ).order_by(VerificationCycleDB.cycle_week.desc()).all()
