import logging
import os
import time
from datetime import date
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine

from budget_planner.allocation_summary import calculate_allocation_summary
from budget_planner.errors import NotFoundError, ProjectionCancelled
from budget_planner.instance_projection import ProjectedInstance, project_instances, project_obligations
from budget_planner.obligations import (
    ExceptionKind,
    RecurringObligation,
    RecurringTransaction,
    RecurringTransfer,
    normalize_currency,
)
from budget_planner.paycheck_allocation import (
    BillInfo,
    PayEvent,
    allocate,
    pay_events_from_income,
)
from budget_planner.reconciliation import reconcile, summarize
from budget_planner.recurrence import RecurrencePattern
from budget_planner.storage import (
    delete_exception,
    insert_realized_transaction,
    load_obligation,
    load_obligations,
    load_realized_transactions,
    metadata,
    save_obligation,
    upsert_exception,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./budget_planner.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def get_projection_timeout() -> float:
    raw = os.getenv("PROJECTION_TIMEOUT_SECONDS", "5")
    try:
        return max(float(raw), 0.1)
    except ValueError:
        return 5.0


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
PROJECTION_TIMEOUT_SECONDS = get_projection_timeout()


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class PatternPayload(BaseModel):
    frequency: str
    interval: int = 1
    day_of_month: int | None = None
    day_of_week: int | None = None
    month_of_year: int | None = None

    def to_pattern(self) -> RecurrencePattern:
        return RecurrencePattern(
            frequency=self.frequency,
            interval=self.interval,
            day_of_month=self.day_of_month,
            day_of_week=self.day_of_week,
            month_of_year=self.month_of_year,
        )


class RecurringTransactionPayload(BaseModel):
    account_id: int
    description: str
    amount: Decimal
    currency: str | None = None
    pattern: PatternPayload
    start_date: date
    end_date: date | None = None
    category_id: int | None = None


class RecurringTransferPayload(BaseModel):
    source_account_id: int
    destination_account_id: int
    description: str
    amount: Decimal
    currency: str | None = None
    pattern: PatternPayload
    start_date: date
    end_date: date | None = None


class ObligationUpdatePayload(BaseModel):
    amount: Decimal | None = None
    description: str | None = None


class ReschedulePayload(BaseModel):
    pattern: PatternPayload | None = None
    start_date: date | None = None
    end_date: date | None = None
    clear_end_date: bool = False


class ExceptionPayload(BaseModel):
    kind: str
    modified_amount: Decimal | None = None
    modified_description: str | None = None
    modified_date: date | None = None


class ExceptionResponse(BaseModel):
    original_date: date
    kind: str
    modified_amount: Decimal | None = None
    modified_description: str | None = None
    modified_date: date | None = None


class ObligationResponse(BaseModel):
    id: str
    kind: str
    account_ids: list[int]
    category_id: int | None = None
    description: str
    amount: Decimal
    currency: str
    frequency: str
    schedule: str
    start_date: date
    end_date: date | None = None
    is_active: bool
    next_occurrence: date | None = None
    exceptions: list[ExceptionResponse]


class ProjectedInstanceResponse(BaseModel):
    obligation_id: str
    effective_date: date
    original_date: date
    amount: Decimal
    currency: str
    description: str
    account_id: int
    is_modified: bool
    transfer_direction: str | None = None


class ProjectionFailureResponse(BaseModel):
    obligation_id: str
    error: str


class ProjectionResponse(BaseModel):
    instances_by_date: dict[date, list[ProjectedInstanceResponse]]
    failures: list[ProjectionFailureResponse]


class ReconciliationEntryResponse(BaseModel):
    instance: ProjectedInstanceResponse
    status: str
    transaction_id: int | None = None


class ReconciliationResponse(BaseModel):
    entries: list[ReconciliationEntryResponse]
    counts: dict[str, int]
    failures: list[ProjectionFailureResponse]


class RealizePayload(BaseModel):
    account_id: int | None = None


class RealizedTransactionResponse(BaseModel):
    id: int
    account_id: int
    date: date
    amount: Decimal
    notes: str | None = None
    recurring_obligation_id: str | None = None
    recurring_instance_date: date | None = None


class PayEventPayload(BaseModel):
    date: date
    net_amount: Decimal


class AllocationPayload(BaseModel):
    horizon_end: date
    horizon_start: date | None = None
    pay_events: list[PayEventPayload] | None = None
    bill_ids: list[str] | None = None
    account_id: int | None = None


class BillAllocationResponse(BaseModel):
    description: str
    due_date: date
    amount: Decimal
    source_obligation_id: str | None = None


class PayEventAllocationResponse(BaseModel):
    date: date
    net_amount: Decimal
    remaining: Decimal
    allocations: list[BillAllocationResponse]


class ShortfallResponse(BaseModel):
    description: str
    due_date: date
    amount: Decimal
    shortfall: Decimal
    source_obligation_id: str | None = None


class AllocationResponse(BaseModel):
    pay_events: list[PayEventAllocationResponse]
    shortfalls: list[ShortfallResponse]
    total_shortfall: Decimal


class BillPlanResponse(BaseModel):
    description: str
    frequency: str
    amount: Decimal
    amount_per_paycheck: Decimal
    annual_amount: Decimal
    source_obligation_id: str | None = None


class AllocationWarningResponse(BaseModel):
    type: str
    message: str
    amount: Decimal | None = None


class AllocationSummaryResponse(BaseModel):
    paycheck_frequency: str
    currency: str
    paycheck_amount: Decimal | None = None
    total_per_paycheck: Decimal
    total_annual_bills: Decimal
    total_annual_income: Decimal | None = None
    remaining_per_paycheck: Decimal | None = None
    bills: list[BillPlanResponse]
    warnings: list[AllocationWarningResponse]


def resolve_currency(value: str | None) -> str:
    if value is None or not value.strip():
        return SYSTEM_DEFAULT_CURRENCY
    return normalize_currency(value)


def projection_deadline():
    deadline = time.monotonic() + PROJECTION_TIMEOUT_SECONDS
    return lambda: time.monotonic() > deadline


def to_obligation_response(obligation: RecurringObligation) -> ObligationResponse:
    return ObligationResponse(
        id=obligation.id,
        kind=obligation.kind,
        account_ids=list(obligation.account_ids()),
        category_id=getattr(obligation, "category_id", None),
        description=obligation.description,
        amount=obligation.amount,
        currency=obligation.currency,
        frequency=obligation.pattern.frequency.value,
        schedule=obligation.pattern.describe(),
        start_date=obligation.start_date,
        end_date=obligation.end_date,
        is_active=obligation.is_active,
        next_occurrence=obligation.next_occurrence,
        exceptions=[
            ExceptionResponse(
                original_date=exception.original_date,
                kind=exception.kind.value,
                modified_amount=exception.modified_amount,
                modified_description=exception.modified_description,
                modified_date=exception.modified_date,
            )
            for exception in sorted(obligation.exceptions.values(), key=lambda item: item.original_date)
        ],
    )


def to_instance_response(instance: ProjectedInstance) -> ProjectedInstanceResponse:
    return ProjectedInstanceResponse(
        obligation_id=instance.obligation_id,
        effective_date=instance.effective_date,
        original_date=instance.original_date,
        amount=instance.amount,
        currency=instance.currency,
        description=instance.description,
        account_id=instance.account_id,
        is_modified=instance.is_modified,
        transfer_direction=instance.transfer_direction,
    )


def persist_obligation(obligation: RecurringObligation) -> ObligationResponse:
    obligation.refresh_next_occurrence(date.today())
    with engine.begin() as conn:
        save_obligation(conn, obligation)
    return to_obligation_response(obligation)


def mutate_obligation(obligation_id: str, mutation) -> ObligationResponse:
    with engine.begin() as conn:
        try:
            obligation = load_obligation(conn, obligation_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        try:
            mutation(obligation)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        obligation.refresh_next_occurrence(date.today())
        save_obligation(conn, obligation)
    return to_obligation_response(obligation)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/recurring", response_model=list[ObligationResponse])
def list_obligations(
    account_id: int | None = None,
    include_inactive: bool = False,
) -> list[ObligationResponse]:
    with engine.begin() as conn:
        obligations, failures = load_obligations(conn, account_id, include_inactive)
    if failures:
        logger.warning("Skipped %d invalid stored obligations", len(failures))
    return [to_obligation_response(obligation) for obligation in obligations]


@app.post("/recurring-transactions", response_model=ObligationResponse)
def create_recurring_transaction(payload: RecurringTransactionPayload) -> ObligationResponse:
    try:
        obligation = RecurringTransaction.create(
            account_id=payload.account_id,
            description=payload.description,
            amount=payload.amount,
            pattern=payload.pattern.to_pattern(),
            start_date=payload.start_date,
            end_date=payload.end_date,
            currency=resolve_currency(payload.currency),
            category_id=payload.category_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return persist_obligation(obligation)


@app.post("/recurring-transfers", response_model=ObligationResponse)
def create_recurring_transfer(payload: RecurringTransferPayload) -> ObligationResponse:
    try:
        obligation = RecurringTransfer.create(
            source_account_id=payload.source_account_id,
            destination_account_id=payload.destination_account_id,
            description=payload.description,
            amount=payload.amount,
            pattern=payload.pattern.to_pattern(),
            start_date=payload.start_date,
            end_date=payload.end_date,
            currency=resolve_currency(payload.currency),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return persist_obligation(obligation)


@app.patch("/recurring/{obligation_id}", response_model=ObligationResponse)
def update_obligation(obligation_id: str, payload: ObligationUpdatePayload) -> ObligationResponse:
    def apply(obligation: RecurringObligation) -> None:
        if payload.amount is not None:
            obligation.update_amount(payload.amount)
        if payload.description is not None:
            obligation.update_description(payload.description)

    return mutate_obligation(obligation_id, apply)


@app.post("/recurring/{obligation_id}/reschedule", response_model=ObligationResponse)
def reschedule_obligation(obligation_id: str, payload: ReschedulePayload) -> ObligationResponse:
    def apply(obligation: RecurringObligation) -> None:
        obligation.reschedule(
            pattern=payload.pattern.to_pattern() if payload.pattern else None,
            start_date=payload.start_date,
            end_date=payload.end_date,
            clear_end_date=payload.clear_end_date,
        )

    return mutate_obligation(obligation_id, apply)


@app.post("/recurring/{obligation_id}/deactivate", response_model=ObligationResponse)
def deactivate_obligation(obligation_id: str) -> ObligationResponse:
    return mutate_obligation(obligation_id, lambda obligation: obligation.deactivate())


@app.post("/recurring/{obligation_id}/activate", response_model=ObligationResponse)
def activate_obligation(obligation_id: str) -> ObligationResponse:
    return mutate_obligation(obligation_id, lambda obligation: obligation.activate())


@app.put("/recurring/{obligation_id}/exceptions/{original_date}", response_model=ExceptionResponse)
def put_exception(
    obligation_id: str, original_date: date, payload: ExceptionPayload
) -> ExceptionResponse:
    with engine.begin() as conn:
        try:
            exception = upsert_exception(
                conn,
                obligation_id,
                original_date,
                ExceptionKind.parse(payload.kind),
                amount=payload.modified_amount,
                description=payload.modified_description,
                new_date=payload.modified_date,
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ExceptionResponse(
        original_date=exception.original_date,
        kind=exception.kind.value,
        modified_amount=exception.modified_amount,
        modified_description=exception.modified_description,
        modified_date=exception.modified_date,
    )


@app.delete("/recurring/{obligation_id}/exceptions/{original_date}")
def remove_exception(obligation_id: str, original_date: date) -> dict:
    with engine.begin() as conn:
        try:
            removed = delete_exception(conn, obligation_id, original_date)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not removed:
        raise HTTPException(status_code=404, detail="Exception not found.")
    return {"status": "deleted"}


@app.post(
    "/recurring/{obligation_id}/instances/{original_date}/realize",
    response_model=list[RealizedTransactionResponse],
)
def realize_instance(
    obligation_id: str, original_date: date, payload: RealizePayload | None = None
) -> list[RealizedTransactionResponse]:
    account_id = payload.account_id if payload else None
    with engine.begin() as conn:
        try:
            obligation = load_obligation(conn, obligation_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        instances = [
            instance
            for instance in project_instances(obligation, original_date, original_date, account_id=account_id)
            if instance.original_date == original_date
        ]
        if not instances:
            raise HTTPException(status_code=404, detail="No scheduled instance on that date.")
        existing = {
            (txn.recurring_instance_date, txn.account_id)
            for txn in load_realized_transactions(conn, original_date, original_date)
            if txn.recurring_obligation_id == obligation_id
        }
        if any((original_date, instance.account_id) in existing for instance in instances):
            raise HTTPException(status_code=409, detail="Instance already realized.")
        realized = [
            insert_realized_transaction(
                conn,
                account_id=instance.account_id,
                amount=instance.amount,
                currency=instance.currency,
                txn_date=instance.effective_date,
                notes=instance.description,
                recurring_obligation_id=obligation_id,
                recurring_instance_date=original_date,
            )
            for instance in instances
        ]
    logger.info("Realized %d transactions for %s on %s", len(realized), obligation_id, original_date)
    return [
        RealizedTransactionResponse(
            id=txn.id,
            account_id=txn.account_id,
            date=txn.date,
            amount=txn.amount,
            notes=txn.description,
            recurring_obligation_id=txn.recurring_obligation_id,
            recurring_instance_date=txn.recurring_instance_date,
        )
        for txn in realized
    ]


@app.get("/projections", response_model=ProjectionResponse)
def get_projections(
    start_date: date = Query(...),
    end_date: date = Query(...),
    account_id: int | None = None,
) -> ProjectionResponse:
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        obligations, load_failures = load_obligations(conn, account_id)
    try:
        batch = project_obligations(
            obligations,
            start_date,
            end_date,
            account_id=account_id,
            should_abort=projection_deadline(),
        )
    except ProjectionCancelled as exc:
        raise HTTPException(status_code=503, detail="Projection took too long; narrow the range.") from exc
    return ProjectionResponse(
        instances_by_date={
            day: [to_instance_response(instance) for instance in instances]
            for day, instances in batch.instances_by_date.items()
        },
        failures=[
            ProjectionFailureResponse(obligation_id=failure.obligation_id, error=failure.error)
            for failure in load_failures + batch.failures
        ],
    )


@app.get("/reconciliation", response_model=ReconciliationResponse)
def get_reconciliation(
    start_date: date = Query(...),
    end_date: date = Query(...),
    account_id: int | None = None,
) -> ReconciliationResponse:
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        obligations, load_failures = load_obligations(conn, account_id)
        realized = load_realized_transactions(conn, start_date, end_date, account_id)
    try:
        batch = project_obligations(
            obligations,
            start_date,
            end_date,
            account_id=account_id,
            should_abort=projection_deadline(),
        )
    except ProjectionCancelled as exc:
        raise HTTPException(status_code=503, detail="Projection took too long; narrow the range.") from exc
    results = reconcile(batch.instances(), realized, date.today())
    return ReconciliationResponse(
        entries=[
            ReconciliationEntryResponse(
                instance=to_instance_response(result.instance),
                status=result.status.value,
                transaction_id=result.transaction.id if result.transaction else None,
            )
            for result in results
        ],
        counts=summarize(results),
        failures=[
            ProjectionFailureResponse(obligation_id=failure.obligation_id, error=failure.error)
            for failure in load_failures + batch.failures
        ],
    )


@app.post("/allocations", response_model=AllocationResponse)
def create_allocation(payload: AllocationPayload) -> AllocationResponse:
    horizon_start = payload.horizon_start or date.today()
    with engine.begin() as conn:
        obligations, _ = load_obligations(conn, payload.account_id)

    transactions_only = [
        obligation for obligation in obligations if isinstance(obligation, RecurringTransaction)
    ]
    if payload.bill_ids is not None:
        wanted = set(payload.bill_ids)
        bills = [obligation for obligation in transactions_only if obligation.id in wanted]
        missing = wanted - {obligation.id for obligation in bills}
        if missing:
            raise HTTPException(status_code=404, detail=f"Bills not found: {', '.join(sorted(missing))}.")
    else:
        bills = [obligation for obligation in transactions_only if obligation.amount < 0]

    try:
        if payload.pay_events is not None:
            pay_events = [
                PayEvent(date=event.date, net_amount=event.net_amount) for event in payload.pay_events
            ]
        else:
            income = [obligation for obligation in transactions_only if obligation.amount > 0]
            pay_events = pay_events_from_income(income, horizon_start, payload.horizon_end)
        result = allocate(
            pay_events,
            bills,
            payload.horizon_end,
            horizon_start=horizon_start,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return AllocationResponse(
        pay_events=[
            PayEventAllocationResponse(
                date=pay.pay_event.date,
                net_amount=pay.pay_event.net_amount,
                remaining=pay.remaining,
                allocations=[
                    BillAllocationResponse(
                        description=allocation.occurrence.bill.description,
                        due_date=allocation.occurrence.due_date,
                        amount=allocation.amount,
                        source_obligation_id=allocation.occurrence.bill.source_obligation_id,
                    )
                    for allocation in pay.allocations
                ],
            )
            for pay in result.pay_allocations
        ],
        shortfalls=[
            ShortfallResponse(
                description=shortfall.occurrence.bill.description,
                due_date=shortfall.occurrence.due_date,
                amount=shortfall.occurrence.amount,
                shortfall=shortfall.amount,
                source_obligation_id=shortfall.occurrence.bill.source_obligation_id,
            )
            for shortfall in result.shortfalls
        ],
        total_shortfall=result.total_shortfall,
    )


@app.get("/allocations/summary", response_model=AllocationSummaryResponse)
def get_allocation_summary(
    paycheck_frequency: str = Query("biweekly"),
    paycheck_amount: Decimal | None = None,
    account_id: int | None = None,
) -> AllocationSummaryResponse:
    with engine.begin() as conn:
        obligations, _ = load_obligations(conn, account_id)
    bills = [
        BillInfo.from_obligation(obligation)
        for obligation in obligations
        if isinstance(obligation, RecurringTransaction) and obligation.amount < 0
    ]
    try:
        summary = calculate_allocation_summary(bills, paycheck_frequency, paycheck_amount)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return AllocationSummaryResponse(
        paycheck_frequency=summary.paycheck_frequency.value,
        currency=summary.currency,
        paycheck_amount=summary.paycheck_amount,
        total_per_paycheck=summary.total_per_paycheck,
        total_annual_bills=summary.total_annual_bills,
        total_annual_income=summary.total_annual_income,
        remaining_per_paycheck=summary.remaining_per_paycheck,
        bills=[
            BillPlanResponse(
                description=plan.bill.description,
                frequency=plan.bill.frequency.value,
                amount=plan.bill.amount,
                amount_per_paycheck=plan.amount_per_paycheck,
                annual_amount=plan.annual_amount,
                source_obligation_id=plan.bill.source_obligation_id,
            )
            for plan in summary.allocations
        ],
        warnings=[
            AllocationWarningResponse(
                type=warning.type.value, message=warning.message, amount=warning.amount
            )
            for warning in summary.warnings
        ],
    )
