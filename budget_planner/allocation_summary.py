from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, List, Optional

from budget_planner.obligations import CENTS, DEFAULT_CURRENCY, ZERO, coerce_amount
from budget_planner.paycheck_allocation import BillInfo
from budget_planner.recurrence import BASE_OCCURRENCES_PER_YEAR, Frequency


class AllocationWarningType(str, Enum):
    NO_BILLS_CONFIGURED = "no_bills_configured"
    NO_INCOME_CONFIGURED = "no_income_configured"
    INSUFFICIENT_INCOME = "insufficient_income"
    CANNOT_RECONCILE = "cannot_reconcile"


@dataclass(frozen=True)
class AllocationWarning:
    type: AllocationWarningType
    message: str
    amount: Optional[Decimal] = None


@dataclass(frozen=True)
class BillAllocationPlan:
    bill: BillInfo
    amount_per_paycheck: Decimal
    annual_amount: Decimal


@dataclass(frozen=True)
class AllocationSummary:
    allocations: List[BillAllocationPlan]
    total_per_paycheck: Decimal
    total_annual_bills: Decimal
    paycheck_frequency: Frequency
    currency: str = DEFAULT_CURRENCY
    paycheck_amount: Optional[Decimal] = None
    total_annual_income: Optional[Decimal] = None
    warnings: List[AllocationWarning] = field(default_factory=list)

    @property
    def remaining_per_paycheck(self) -> Optional[Decimal]:
        if self.paycheck_amount is None:
            return None
        return self.paycheck_amount - self.total_per_paycheck


def plan_bill(bill: BillInfo, paycheck_frequency: Frequency) -> BillAllocationPlan:
    """Spread one bill's annual cost evenly over the paychecks in a year."""
    annual_amount = bill.amount * BASE_OCCURRENCES_PER_YEAR[bill.frequency]
    periods_per_year = BASE_OCCURRENCES_PER_YEAR[Frequency.parse(paycheck_frequency)]
    per_paycheck = (annual_amount / periods_per_year).quantize(CENTS, rounding=ROUND_HALF_UP)
    return BillAllocationPlan(bill=bill, amount_per_paycheck=per_paycheck, annual_amount=annual_amount)


def calculate_allocation_summary(
    bills: Iterable[BillInfo],
    paycheck_frequency: Frequency | str,
    paycheck_amount: Decimal | None = None,
) -> AllocationSummary:
    frequency = Frequency.parse(paycheck_frequency)
    bills = list(bills)
    paycheck = coerce_amount(paycheck_amount) if paycheck_amount is not None else None
    annual_income = (
        paycheck * BASE_OCCURRENCES_PER_YEAR[frequency] if paycheck is not None else None
    )

    if not bills:
        return AllocationSummary(
            allocations=[],
            total_per_paycheck=ZERO,
            total_annual_bills=ZERO,
            paycheck_frequency=frequency,
            paycheck_amount=paycheck,
            total_annual_income=annual_income,
            warnings=[
                AllocationWarning(
                    AllocationWarningType.NO_BILLS_CONFIGURED,
                    "No recurring bills are configured. Add recurring transactions to see allocation suggestions.",
                )
            ],
        )

    currency = bills[0].currency
    plans = [plan_bill(bill, frequency) for bill in bills]
    total_annual = sum((plan.annual_amount for plan in plans), ZERO)
    total_per_paycheck = sum((plan.amount_per_paycheck for plan in plans), ZERO)

    warnings: List[AllocationWarning] = []
    if paycheck is None:
        warnings.append(
            AllocationWarning(
                AllocationWarningType.NO_INCOME_CONFIGURED,
                "Enter your paycheck amount to see income-related warnings and remaining balance calculations.",
            )
        )
    else:
        if total_annual > annual_income:
            warnings.append(
                AllocationWarning(
                    AllocationWarningType.CANNOT_RECONCILE,
                    f"Your annual bills ({currency} {total_annual:.2f}) exceed your annual income "
                    f"({currency} {annual_income:.2f}). Please review your recurring expenses.",
                    total_annual - annual_income,
                )
            )
        if total_per_paycheck > paycheck:
            shortfall = total_per_paycheck - paycheck
            warnings.append(
                AllocationWarning(
                    AllocationWarningType.INSUFFICIENT_INCOME,
                    f"Your bills require more than your paycheck amount. "
                    f"Shortfall: {currency} {shortfall:.2f} per paycheck.",
                    shortfall,
                )
            )

    return AllocationSummary(
        allocations=plans,
        total_per_paycheck=total_per_paycheck,
        total_annual_bills=total_annual,
        paycheck_frequency=frequency,
        currency=currency,
        paycheck_amount=paycheck,
        total_annual_income=annual_income,
        warnings=warnings,
    )
