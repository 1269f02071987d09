"""Expand recurring obligations into dated instances.

Instances are ordered by effective date, so an instance moved by a modify
exception sorts by its new date; ties fall back to the original date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from budget_planner.errors import ValidationError
from budget_planner.obligations import (
    ExceptionKind,
    RecurringObligation,
    RecurringTransaction,
    RecurringTransfer,
)

logger = logging.getLogger(__name__)

SOURCE_LEG = "source"
DESTINATION_LEG = "destination"


@dataclass(frozen=True)
class ProjectedInstance:
    obligation_id: str
    effective_date: date
    original_date: date
    amount: Decimal
    currency: str
    description: str
    account_id: int
    is_modified: bool = False
    transfer_direction: Optional[str] = None
    obligation: Optional[RecurringObligation] = field(
        default=None, compare=False, repr=False
    )


@dataclass(frozen=True)
class ProjectionFailure:
    obligation_id: str
    error: str


@dataclass
class ProjectionBatch:
    instances_by_date: Dict[date, List[ProjectedInstance]] = field(default_factory=dict)
    failures: List[ProjectionFailure] = field(default_factory=list)

    def instances(self) -> List[ProjectedInstance]:
        return [
            instance
            for day in self.instances_by_date
            for instance in self.instances_by_date[day]
        ]


def project_instances(
    obligation: RecurringObligation,
    range_start: date,
    range_end: date,
    account_id: int | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> List[ProjectedInstance]:
    """Project the exception-adjusted instances of ``obligation`` whose original
    scheduled date falls inside ``range_start..range_end``.

    Instances moved by a modify exception keep their place in the result even
    when their effective date lands outside the range. The result is sorted by
    effective date, then original date.
    """
    if range_start > range_end:
        raise ValidationError("range_start must be on or before range_end.")
    if not obligation.is_active or not obligation.involves_account(account_id):
        return []

    window_start = max(obligation.start_date, range_start)
    window_end = range_end
    if obligation.end_date is not None:
        window_end = min(obligation.end_date, range_end)
    if window_start > window_end:
        return []

    projections: List[ProjectedInstance] = []
    for occurrence in obligation.pattern.occurrences(
        obligation.start_date, window_start, window_end, should_abort
    ):
        exception = obligation.exception_for(occurrence)
        if exception is not None and exception.kind == ExceptionKind.SKIP:
            continue
        amount = obligation.amount
        description = obligation.description
        effective_date = occurrence
        is_modified = False
        if exception is not None:
            is_modified = True
            amount = exception.modified_amount if exception.modified_amount is not None else amount
            description = exception.modified_description or description
            effective_date = exception.effective_date
        projections.extend(
            _emit(obligation, occurrence, effective_date, amount, description, is_modified, account_id)
        )

    projections.sort(key=lambda instance: (instance.effective_date, instance.original_date))
    logger.debug(
        "Projected %d instances for %s %s between %s and %s",
        len(projections),
        obligation.kind,
        obligation.id,
        range_start,
        range_end,
    )
    return projections


def project_obligations(
    obligations: Iterable[RecurringObligation],
    range_start: date,
    range_end: date,
    account_id: int | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> ProjectionBatch:
    """Project every obligation and group the instances by effective date.

    A validation failure in one obligation is recorded in ``failures`` and does
    not prevent the others from being projected.
    """
    if range_start > range_end:
        raise ValidationError("range_start must be on or before range_end.")
    batch = ProjectionBatch()
    collected: List[ProjectedInstance] = []
    for obligation in obligations:
        try:
            collected.extend(
                project_instances(
                    obligation,
                    range_start,
                    range_end,
                    account_id=account_id,
                    should_abort=should_abort,
                )
            )
        except ValidationError as exc:
            logger.warning("Skipping %s %s: %s", obligation.kind, obligation.id, exc)
            batch.failures.append(ProjectionFailure(obligation_id=obligation.id, error=str(exc)))

    collected.sort(key=lambda instance: instance.effective_date)
    for instance in collected:
        batch.instances_by_date.setdefault(instance.effective_date, []).append(instance)
    logger.info(
        "Projected %d instances on %d dates (%d failures)",
        len(collected),
        len(batch.instances_by_date),
        len(batch.failures),
    )
    return batch


def _emit(
    obligation: RecurringObligation,
    original_date: date,
    effective_date: date,
    amount: Decimal,
    description: str,
    is_modified: bool,
    account_id: int | None,
) -> List[ProjectedInstance]:
    if isinstance(obligation, RecurringTransaction):
        return [
            ProjectedInstance(
                obligation_id=obligation.id,
                effective_date=effective_date,
                original_date=original_date,
                amount=amount,
                currency=obligation.currency,
                description=description,
                account_id=obligation.account_id,
                is_modified=is_modified,
                obligation=obligation,
            )
        ]
    if isinstance(obligation, RecurringTransfer):
        legs = [
            (SOURCE_LEG, obligation.source_account_id, -amount),
            (DESTINATION_LEG, obligation.destination_account_id, amount),
        ]
        return [
            ProjectedInstance(
                obligation_id=obligation.id,
                effective_date=effective_date,
                original_date=original_date,
                amount=leg_amount,
                currency=obligation.currency,
                description=description,
                account_id=leg_account,
                is_modified=is_modified,
                transfer_direction=direction,
                obligation=obligation,
            )
            for direction, leg_account, leg_amount in legs
            if account_id is None or account_id == leg_account
        ]
    raise ValidationError(f"Unsupported obligation type: {type(obligation).__name__}.")
