from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Optional, Tuple
from uuid import uuid4

from budget_planner.errors import ValidationError
from budget_planner.recurrence import RecurrencePattern

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0")
DEFAULT_CURRENCY = "USD"
EXCEPTION_KIND_ALIASES = {"skipped": "skip", "modified": "modify"}


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper() if isinstance(value, str) else ""
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: Decimal | int | str | None) -> Decimal:
    if amount is None:
        raise ValidationError("Amount is required.")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount!r}.") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}.")
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class ExceptionKind(str, Enum):
    SKIP = "skip"
    MODIFY = "modify"

    @classmethod
    def parse(cls, value: "ExceptionKind | str") -> "ExceptionKind":
        if isinstance(value, ExceptionKind):
            return value
        normalized = value.strip().lower() if isinstance(value, str) else ""
        normalized = EXCEPTION_KIND_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValidationError("Exception kind must be 'skip' or 'modify'.") from exc


@dataclass(frozen=True)
class ObligationException:
    """An override for the single instance originally scheduled on ``original_date``.

    Skip exceptions remove the instance. Modify exceptions replace any subset of
    amount, description and date; unset fields fall back to the obligation's
    defaults during projection.
    """

    original_date: date
    kind: ExceptionKind
    modified_amount: Optional[Decimal] = None
    modified_description: Optional[str] = None
    modified_date: Optional[date] = None

    def __post_init__(self) -> None:
        kind = ExceptionKind.parse(self.kind)
        object.__setattr__(self, "kind", kind)
        description = self.modified_description.strip() if self.modified_description else ""
        object.__setattr__(self, "modified_description", description or None)
        if self.modified_amount is not None:
            amount = coerce_amount(self.modified_amount)
            if amount == ZERO:
                raise ValidationError("Modified amount must be non-zero.")
            object.__setattr__(self, "modified_amount", amount)

        has_override = any(
            value is not None
            for value in (self.modified_amount, self.modified_description, self.modified_date)
        )
        if kind == ExceptionKind.SKIP and has_override:
            raise ValidationError("Skip exceptions cannot carry modified fields.")
        if kind == ExceptionKind.MODIFY and not has_override:
            raise ValidationError(
                "At least one modification is required (amount, description, or date)."
            )

    @classmethod
    def skip(cls, original_date: date) -> "ObligationException":
        return cls(original_date, ExceptionKind.SKIP)

    @classmethod
    def modify(
        cls,
        original_date: date,
        amount: Decimal | None = None,
        description: str | None = None,
        new_date: date | None = None,
    ) -> "ObligationException":
        return cls(
            original_date,
            ExceptionKind.MODIFY,
            modified_amount=amount,
            modified_description=description,
            modified_date=new_date,
        )

    @property
    def effective_date(self) -> date:
        return self.modified_date or self.original_date


class RecurringObligation:
    """Behaviour shared by recurring transaction and transfer series.

    Subclasses are dataclasses that declare the stored fields; this base only
    holds the validation and mutation rules.
    """

    KIND = ""

    id: str
    description: str
    amount: Decimal
    currency: str
    pattern: RecurrencePattern
    start_date: date
    end_date: Optional[date]
    is_active: bool
    next_occurrence: Optional[date]
    exceptions: Dict[date, ObligationException]

    @property
    def kind(self) -> str:
        return self.KIND

    def account_ids(self) -> Tuple[int, ...]:
        raise NotImplementedError

    def involves_account(self, account_id: int | None) -> bool:
        return account_id is None or account_id in self.account_ids()

    def update_amount(self, amount: Decimal | int | str) -> None:
        self.amount = self._validate_amount(coerce_amount(amount))

    def update_description(self, description: str) -> None:
        self.description = _validate_description(description)

    def reschedule(
        self,
        pattern: RecurrencePattern | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        clear_end_date: bool = False,
    ) -> None:
        new_pattern = pattern or self.pattern
        new_start = start_date or self.start_date
        new_end = None if clear_end_date else (end_date or self.end_date)
        _validate_schedule(new_pattern, new_start, new_end)
        self.pattern = new_pattern
        self.start_date = new_start
        self.end_date = new_end
        logger.debug("Rescheduled %s %s to %s", self.kind, self.id, new_pattern)

    def deactivate(self) -> None:
        self.is_active = False
        self.next_occurrence = None

    def activate(self) -> None:
        self.is_active = True

    def refresh_next_occurrence(self, as_of: date) -> Optional[date]:
        """Recompute the cached next occurrence for the persistence layer.

        Projection never reads this value.
        """
        if not self.is_active:
            self.next_occurrence = None
            return None
        candidate = self.pattern.next_on_or_after(self.start_date, as_of)
        if self.end_date is not None and candidate > self.end_date:
            candidate = None
        self.next_occurrence = candidate
        return candidate

    def exception_for(self, original_date: date) -> Optional[ObligationException]:
        return self.exceptions.get(original_date)

    def add_or_update_exception(
        self,
        original_date: date,
        kind: ExceptionKind | str,
        amount: Decimal | None = None,
        description: str | None = None,
        new_date: date | None = None,
    ) -> ObligationException:
        if original_date < self.start_date or (
            self.end_date is not None and original_date > self.end_date
        ):
            raise ValidationError("Exception date must fall within the obligation's schedule.")
        exception = ObligationException(
            original_date,
            kind,
            modified_amount=amount,
            modified_description=description,
            modified_date=new_date,
        )
        if exception.modified_amount is not None:
            self._validate_amount(exception.modified_amount)
        replaced = original_date in self.exceptions
        self.exceptions[original_date] = exception
        logger.debug(
            "%s exception %s on %s for %s %s",
            "Replaced" if replaced else "Added",
            exception.kind.value,
            original_date,
            self.kind,
            self.id,
        )
        return exception

    def remove_exception(self, original_date: date) -> Optional[ObligationException]:
        return self.exceptions.pop(original_date, None)

    def _validate_amount(self, amount: Decimal) -> Decimal:
        raise NotImplementedError


@dataclass(eq=False)
class RecurringTransaction(RecurringObligation):
    KIND = "transaction"

    account_id: int
    description: str
    amount: Decimal
    pattern: RecurrencePattern
    start_date: date
    end_date: Optional[date] = None
    currency: str = DEFAULT_CURRENCY
    category_id: Optional[int] = None
    is_active: bool = True
    next_occurrence: Optional[date] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    exceptions: Dict[date, ObligationException] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        account_id: int,
        description: str,
        amount: Decimal | int | str,
        pattern: RecurrencePattern,
        start_date: date,
        end_date: date | None = None,
        currency: str = DEFAULT_CURRENCY,
        category_id: int | None = None,
        obligation_id: str | None = None,
    ) -> "RecurringTransaction":
        if account_id is None:
            raise ValidationError("Account ID is required.")
        _validate_schedule(pattern, start_date, end_date)
        obligation = cls(
            account_id=account_id,
            description=_validate_description(description),
            amount=_validate_transaction_amount(coerce_amount(amount)),
            pattern=pattern,
            start_date=start_date,
            end_date=end_date,
            currency=normalize_currency(currency),
            category_id=category_id,
            next_occurrence=start_date,
        )
        if obligation_id:
            obligation.id = obligation_id
        return obligation

    def account_ids(self) -> Tuple[int, ...]:
        return (self.account_id,)

    def _validate_amount(self, amount: Decimal) -> Decimal:
        return _validate_transaction_amount(amount)


@dataclass(eq=False)
class RecurringTransfer(RecurringObligation):
    """A transfer series; ``amount`` is a positive magnitude and the source and
    destination legs are signed when instances are projected."""

    KIND = "transfer"

    source_account_id: int
    destination_account_id: int
    description: str
    amount: Decimal
    pattern: RecurrencePattern
    start_date: date
    end_date: Optional[date] = None
    currency: str = DEFAULT_CURRENCY
    is_active: bool = True
    next_occurrence: Optional[date] = None
    id: str = field(default_factory=lambda: uuid4().hex)
    exceptions: Dict[date, ObligationException] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        source_account_id: int,
        destination_account_id: int,
        description: str,
        amount: Decimal | int | str,
        pattern: RecurrencePattern,
        start_date: date,
        end_date: date | None = None,
        currency: str = DEFAULT_CURRENCY,
        obligation_id: str | None = None,
    ) -> "RecurringTransfer":
        if source_account_id is None:
            raise ValidationError("Source account ID is required.")
        if destination_account_id is None:
            raise ValidationError("Destination account ID is required.")
        if source_account_id == destination_account_id:
            raise ValidationError("Source and destination accounts must be different.")
        _validate_schedule(pattern, start_date, end_date)
        obligation = cls(
            source_account_id=source_account_id,
            destination_account_id=destination_account_id,
            description=_validate_description(description),
            amount=_validate_transfer_amount(coerce_amount(amount)),
            pattern=pattern,
            start_date=start_date,
            end_date=end_date,
            currency=normalize_currency(currency),
            next_occurrence=start_date,
        )
        if obligation_id:
            obligation.id = obligation_id
        return obligation

    def account_ids(self) -> Tuple[int, ...]:
        return (self.source_account_id, self.destination_account_id)

    def _validate_amount(self, amount: Decimal) -> Decimal:
        return _validate_transfer_amount(amount)


def _validate_description(description: str | None) -> str:
    trimmed = description.strip() if description else ""
    if not trimmed:
        raise ValidationError("Description is required.")
    return trimmed


def _validate_schedule(
    pattern: RecurrencePattern | None, start_date: date | None, end_date: date | None
) -> None:
    if not isinstance(pattern, RecurrencePattern):
        raise ValidationError("Recurrence pattern is required.")
    if start_date is None:
        raise ValidationError("Start date is required.")
    if end_date is not None and end_date < start_date:
        raise ValidationError("End date must be on or after start date.")


def _validate_transaction_amount(amount: Decimal) -> Decimal:
    if amount == ZERO:
        raise ValidationError("Recurring transaction amount must be non-zero.")
    return amount


def _validate_transfer_amount(amount: Decimal) -> Decimal:
    if amount <= ZERO:
        raise ValidationError("Transfer amount must be positive.")
    return amount
