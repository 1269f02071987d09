from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from budget_planner.errors import ValidationError
from budget_planner.instance_projection import project_instances
from budget_planner.obligations import DEFAULT_CURRENCY, ZERO, RecurringObligation, coerce_amount
from budget_planner.recurrence import Frequency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayEvent:
    date: date
    net_amount: Decimal

    def __post_init__(self) -> None:
        amount = coerce_amount(self.net_amount)
        if amount < ZERO:
            raise ValidationError("Pay event amount cannot be negative.")
        object.__setattr__(self, "net_amount", amount)


@dataclass(frozen=True)
class BillInfo:
    description: str
    amount: Decimal
    frequency: Frequency
    currency: str = DEFAULT_CURRENCY
    source_obligation_id: Optional[str] = None

    def __post_init__(self) -> None:
        description = self.description.strip() if self.description else ""
        if not description:
            raise ValidationError("Bill description is required.")
        object.__setattr__(self, "description", description)
        object.__setattr__(self, "amount", abs(coerce_amount(self.amount)))
        object.__setattr__(self, "frequency", Frequency.parse(self.frequency))

    @classmethod
    def from_obligation(cls, obligation: RecurringObligation) -> "BillInfo":
        return cls(
            description=obligation.description,
            amount=obligation.amount,
            frequency=obligation.pattern.frequency,
            currency=obligation.currency,
            source_obligation_id=obligation.id,
        )


@dataclass(frozen=True)
class BillOccurrence:
    bill: BillInfo
    due_date: date
    amount: Decimal

    def __post_init__(self) -> None:
        amount = coerce_amount(self.amount)
        if amount <= ZERO:
            raise ValidationError(
                f"Bill '{self.bill.description}' due {self.due_date} must have a positive amount."
            )
        object.__setattr__(self, "amount", amount)


@dataclass(frozen=True)
class BillAllocation:
    occurrence: BillOccurrence
    amount: Decimal


@dataclass
class PayEventAllocation:
    pay_event: PayEvent
    remaining: Decimal
    allocations: List[BillAllocation] = field(default_factory=list)

    @property
    def allocated(self) -> Decimal:
        return sum((allocation.amount for allocation in self.allocations), ZERO)


@dataclass(frozen=True)
class Shortfall:
    occurrence: BillOccurrence
    amount: Decimal


@dataclass(frozen=True)
class AllocationResult:
    pay_allocations: List[PayEventAllocation]
    shortfalls: List[Shortfall]

    @property
    def total_shortfall(self) -> Decimal:
        return sum((shortfall.amount for shortfall in self.shortfalls), ZERO)

    @property
    def fully_funded(self) -> bool:
        return not self.shortfalls


def allocate(
    pay_events: Sequence[PayEvent],
    bills: Iterable[RecurringObligation],
    horizon_end: date,
    horizon_start: date | None = None,
) -> AllocationResult:
    """Expand each bill obligation up to ``horizon_end`` and fund its
    occurrences from the pay events.

    Occurrences are projected from ``horizon_start``, which defaults to the
    earliest bill start date, so bills due before the first pay event are
    reported as shortfalls.
    """
    bills = list(bills)
    if horizon_start is None:
        starts = [obligation.start_date for obligation in bills]
        horizon_start = min(starts + [horizon_end])
    if horizon_start > horizon_end:
        raise ValidationError("horizon_start must be on or before horizon_end.")

    occurrences: List[BillOccurrence] = []
    for obligation in bills:
        bill = BillInfo.from_obligation(obligation)
        for instance in project_instances(obligation, horizon_start, horizon_end):
            occurrences.append(
                BillOccurrence(bill=bill, due_date=instance.effective_date, amount=abs(instance.amount))
            )
    return allocate_occurrences(pay_events, occurrences)


def allocate_occurrences(
    pay_events: Sequence[PayEvent],
    occurrences: Iterable[BillOccurrence],
) -> AllocationResult:
    """Fund bill occurrences earliest-deadline-first.

    Each occurrence is charged to the latest pay event dated on or before its
    due date that still has enough remaining capacity. Occurrences no eligible
    pay event can cover are reported as shortfalls and charge nothing.
    """
    _validate_pay_events(pay_events)
    pay_allocations = [
        PayEventAllocation(pay_event=event, remaining=event.net_amount) for event in pay_events
    ]
    pay_dates = [event.date for event in pay_events]
    shortfalls: List[Shortfall] = []

    for occurrence in sorted(occurrences, key=lambda item: item.due_date):
        eligible = bisect_right(pay_dates, occurrence.due_date)
        chosen = None
        for index in range(eligible - 1, -1, -1):
            if pay_allocations[index].remaining >= occurrence.amount:
                chosen = pay_allocations[index]
                break

        if chosen is None:
            best_capacity = max(
                (pay_allocations[index].remaining for index in range(eligible)),
                default=ZERO,
            )
            gap = occurrence.amount - best_capacity
            shortfalls.append(Shortfall(occurrence=occurrence, amount=gap))
            logger.info(
                "Cannot fund %s due %s: short by %s",
                occurrence.bill.description,
                occurrence.due_date,
                gap,
            )
            continue

        chosen.remaining -= occurrence.amount
        chosen.allocations.append(BillAllocation(occurrence=occurrence, amount=occurrence.amount))

    return AllocationResult(pay_allocations=pay_allocations, shortfalls=shortfalls)


def pay_events_from_income(
    obligations: Iterable[RecurringObligation],
    range_start: date,
    range_end: date,
) -> List[PayEvent]:
    """Build pay events from the inflow instances of recurring income series."""
    events: List[PayEvent] = []
    for obligation in obligations:
        for instance in project_instances(obligation, range_start, range_end):
            if instance.amount > ZERO and instance.transfer_direction is None:
                events.append(PayEvent(date=instance.effective_date, net_amount=instance.amount))
    events.sort(key=lambda event: event.date)
    return events


def _validate_pay_events(pay_events: Sequence[PayEvent]) -> None:
    for previous, current in zip(pay_events, pay_events[1:]):
        if current.date < previous.date:
            raise ValidationError("Pay events must be sorted by date ascending.")
