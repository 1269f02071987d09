from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    and_,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection

from budget_planner.errors import NotFoundError, ValidationError
from budget_planner.instance_projection import ProjectionFailure
from budget_planner.obligations import (
    ExceptionKind,
    ObligationException,
    RecurringObligation,
    RecurringTransaction,
    RecurringTransfer,
)
from budget_planner.reconciliation import RealizedTransaction
from budget_planner.recurrence import RecurrencePattern

logger = logging.getLogger(__name__)

metadata = MetaData()

recurring_obligations = Table(
    "recurring_obligations",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("kind", String(20), nullable=False),
    Column("account_id", Integer, nullable=False),
    Column("destination_account_id", Integer),
    Column("category_id", Integer),
    Column("description", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("repeat_interval", Integer, nullable=False, server_default="1"),
    Column("day_of_month", Integer),
    Column("day_of_week", Integer),
    Column("month_of_year", Integer),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("next_occurrence", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

obligation_exceptions = Table(
    "obligation_exceptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("obligation_id", String(32), ForeignKey("recurring_obligations.id"), nullable=False),
    Column("original_date", Date, nullable=False),
    Column("kind", String(10), nullable=False),
    Column("modified_amount", Numeric(12, 2)),
    Column("modified_description", String(500)),
    Column("modified_date", Date),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("obligation_id", "original_date", name="uq_exceptions_obligation_date"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("date", Date, nullable=False),
    Column("notes", String(500)),
    Column("recurring_obligation_id", String(32), ForeignKey("recurring_obligations.id")),
    Column("recurring_instance_date", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def save_obligation(conn: Connection, obligation: RecurringObligation) -> None:
    """Insert or update the obligation row and replace its exception rows."""
    values = _obligation_values(obligation)
    exists = conn.execute(
        select(recurring_obligations.c.id).where(recurring_obligations.c.id == obligation.id)
    ).first()
    if exists:
        conn.execute(
            update(recurring_obligations)
            .where(recurring_obligations.c.id == obligation.id)
            .values(**values)
        )
    else:
        conn.execute(insert(recurring_obligations).values(id=obligation.id, **values))

    conn.execute(
        delete(obligation_exceptions).where(obligation_exceptions.c.obligation_id == obligation.id)
    )
    for exception in obligation.exceptions.values():
        conn.execute(
            insert(obligation_exceptions).values(**_exception_values(obligation.id, exception))
        )


def load_obligation(conn: Connection, obligation_id: str) -> RecurringObligation:
    row = (
        conn.execute(
            select(recurring_obligations).where(recurring_obligations.c.id == obligation_id)
        )
        .mappings()
        .first()
    )
    if not row:
        raise NotFoundError("Recurring obligation not found.")
    exceptions = _load_exception_rows(conn, [obligation_id])
    return _row_to_obligation(row, exceptions.get(obligation_id, []))


def load_obligations(
    conn: Connection,
    account_id: int | None = None,
    include_inactive: bool = False,
) -> Tuple[List[RecurringObligation], List[ProjectionFailure]]:
    """Load obligations with their exceptions.

    Rows that no longer pass domain validation are reported as failures
    instead of aborting the whole load.
    """
    conditions = []
    if account_id is not None:
        conditions.append(
            or_(
                recurring_obligations.c.account_id == account_id,
                recurring_obligations.c.destination_account_id == account_id,
            )
        )
    if not include_inactive:
        conditions.append(recurring_obligations.c.is_active.is_(True))
    stmt = select(recurring_obligations).order_by(
        recurring_obligations.c.start_date, recurring_obligations.c.id
    )
    if conditions:
        stmt = stmt.where(and_(*conditions))
    rows = conn.execute(stmt).mappings().all()
    exceptions = _load_exception_rows(conn, [row["id"] for row in rows])

    obligations: List[RecurringObligation] = []
    failures: List[ProjectionFailure] = []
    for row in rows:
        try:
            obligations.append(_row_to_obligation(row, exceptions.get(row["id"], [])))
        except ValidationError as exc:
            logger.warning("Stored obligation %s is invalid: %s", row["id"], exc)
            failures.append(ProjectionFailure(obligation_id=row["id"], error=str(exc)))
    return obligations, failures


def upsert_exception(
    conn: Connection,
    obligation_id: str,
    original_date: date,
    kind: ExceptionKind | str,
    amount: Decimal | None = None,
    description: str | None = None,
    new_date: date | None = None,
) -> ObligationException:
    obligation = load_obligation(conn, obligation_id)
    exception = obligation.add_or_update_exception(
        original_date,
        kind,
        amount=amount,
        description=description,
        new_date=new_date,
    )
    conn.execute(
        delete(obligation_exceptions).where(
            obligation_exceptions.c.obligation_id == obligation_id,
            obligation_exceptions.c.original_date == original_date,
        )
    )
    conn.execute(insert(obligation_exceptions).values(**_exception_values(obligation_id, exception)))
    return exception


def delete_exception(conn: Connection, obligation_id: str, original_date: date) -> bool:
    exists = conn.execute(
        select(recurring_obligations.c.id).where(recurring_obligations.c.id == obligation_id)
    ).first()
    if not exists:
        raise NotFoundError("Recurring obligation not found.")
    result = conn.execute(
        delete(obligation_exceptions).where(
            obligation_exceptions.c.obligation_id == obligation_id,
            obligation_exceptions.c.original_date == original_date,
        )
    )
    return result.rowcount > 0


def insert_realized_transaction(
    conn: Connection,
    account_id: int,
    amount: Decimal,
    currency: str,
    txn_date: date,
    notes: str | None = None,
    recurring_obligation_id: str | None = None,
    recurring_instance_date: date | None = None,
) -> RealizedTransaction:
    result = conn.execute(
        insert(transactions).values(
            account_id=account_id,
            amount=amount,
            currency=currency,
            date=txn_date,
            notes=notes,
            recurring_obligation_id=recurring_obligation_id,
            recurring_instance_date=recurring_instance_date,
        )
    )
    return RealizedTransaction(
        id=result.inserted_primary_key[0],
        account_id=account_id,
        date=txn_date,
        amount=amount,
        description=notes,
        recurring_obligation_id=recurring_obligation_id,
        recurring_instance_date=recurring_instance_date,
    )


def load_realized_transactions(
    conn: Connection,
    range_start: date,
    range_end: date,
    account_id: int | None = None,
) -> List[RealizedTransaction]:
    # linked transactions are also selected by instance date so moved instances still match
    conditions = [
        or_(
            transactions.c.date.between(range_start, range_end),
            transactions.c.recurring_instance_date.between(range_start, range_end),
        )
    ]
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    rows = (
        conn.execute(
            select(transactions).where(and_(*conditions)).order_by(transactions.c.date, transactions.c.id)
        )
        .mappings()
        .all()
    )
    return [
        RealizedTransaction(
            id=row["id"],
            account_id=row["account_id"],
            date=row["date"],
            amount=Decimal(row["amount"]),
            description=row["notes"],
            recurring_obligation_id=row["recurring_obligation_id"],
            recurring_instance_date=row["recurring_instance_date"],
        )
        for row in rows
    ]


def _obligation_values(obligation: RecurringObligation) -> dict:
    pattern = obligation.pattern
    if isinstance(obligation, RecurringTransfer):
        account_id = obligation.source_account_id
        destination_account_id = obligation.destination_account_id
        category_id = None
    else:
        account_id = obligation.account_id
        destination_account_id = None
        category_id = obligation.category_id
    return {
        "kind": obligation.kind,
        "account_id": account_id,
        "destination_account_id": destination_account_id,
        "category_id": category_id,
        "description": obligation.description,
        "amount": obligation.amount,
        "currency": obligation.currency,
        "frequency": pattern.frequency.value,
        "repeat_interval": pattern.interval,
        "day_of_month": pattern.day_of_month,
        "day_of_week": pattern.day_of_week,
        "month_of_year": pattern.month_of_year,
        "start_date": obligation.start_date,
        "end_date": obligation.end_date,
        "is_active": obligation.is_active,
        "next_occurrence": obligation.next_occurrence,
    }


def _exception_values(obligation_id: str, exception: ObligationException) -> dict:
    return {
        "obligation_id": obligation_id,
        "original_date": exception.original_date,
        "kind": exception.kind.value,
        "modified_amount": exception.modified_amount,
        "modified_description": exception.modified_description,
        "modified_date": exception.modified_date,
    }


def _load_exception_rows(conn: Connection, obligation_ids: List[str]) -> Dict[str, list]:
    if not obligation_ids:
        return {}
    rows = (
        conn.execute(
            select(obligation_exceptions)
            .where(obligation_exceptions.c.obligation_id.in_(obligation_ids))
            .order_by(obligation_exceptions.c.original_date)
        )
        .mappings()
        .all()
    )
    grouped: Dict[str, list] = {}
    for row in rows:
        grouped.setdefault(row["obligation_id"], []).append(row)
    return grouped


def _row_to_obligation(row, exception_rows: list) -> RecurringObligation:
    pattern = RecurrencePattern(
        frequency=row["frequency"],
        interval=row["repeat_interval"],
        day_of_month=row["day_of_month"],
        day_of_week=row["day_of_week"],
        month_of_year=row["month_of_year"],
    )
    obligation: RecurringObligation
    if row["kind"] == RecurringTransfer.KIND:
        obligation = RecurringTransfer.create(
            source_account_id=row["account_id"],
            destination_account_id=row["destination_account_id"],
            description=row["description"],
            amount=row["amount"],
            pattern=pattern,
            start_date=row["start_date"],
            end_date=row["end_date"],
            currency=row["currency"],
            obligation_id=row["id"],
        )
    elif row["kind"] == RecurringTransaction.KIND:
        obligation = RecurringTransaction.create(
            account_id=row["account_id"],
            description=row["description"],
            amount=row["amount"],
            pattern=pattern,
            start_date=row["start_date"],
            end_date=row["end_date"],
            currency=row["currency"],
            category_id=row["category_id"],
            obligation_id=row["id"],
        )
    else:
        raise ValidationError(f"Unknown obligation kind: {row['kind']!r}.")
    obligation.is_active = bool(row["is_active"])
    obligation.next_occurrence = row["next_occurrence"]
    for exception_row in exception_rows:
        exception = ObligationException(
            original_date=exception_row["original_date"],
            kind=exception_row["kind"],
            modified_amount=exception_row["modified_amount"],
            modified_description=exception_row["modified_description"],
            modified_date=exception_row["modified_date"],
        )
        obligation.exceptions[exception.original_date] = exception
    return obligation
