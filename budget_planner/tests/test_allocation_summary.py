import unittest
from datetime import date
from decimal import Decimal

from budget_planner.allocation_summary import (
    AllocationWarningType,
    calculate_allocation_summary,
    plan_bill,
)
from budget_planner.obligations import RecurringTransaction
from budget_planner.paycheck_allocation import BillInfo
from budget_planner.recurrence import Frequency, RecurrencePattern

RENT = BillInfo(description="Rent", amount=Decimal("1800"), frequency=Frequency.MONTHLY)


class PlanBillTests(unittest.TestCase):
    def test_spreads_annual_cost_over_paychecks(self) -> None:
        plan = plan_bill(RENT, Frequency.BIWEEKLY)

        self.assertEqual(plan.annual_amount, Decimal("21600.00"))
        self.assertEqual(plan.amount_per_paycheck, Decimal("830.77"))

    def test_quarterly_bill_on_monthly_paycheck(self) -> None:
        insurance = BillInfo(description="Insurance", amount=Decimal("300"), frequency="quarterly")

        plan = plan_bill(insurance, "monthly")

        self.assertEqual(plan.annual_amount, Decimal("1200.00"))
        self.assertEqual(plan.amount_per_paycheck, Decimal("100.00"))

    def test_annualises_by_frequency_table_only(self) -> None:
        water = RecurringTransaction.create(
            account_id=1,
            description="Water",
            amount=Decimal("-90"),
            pattern=RecurrencePattern.monthly(10, interval=2),
            start_date=date(2026, 1, 10),
        )

        plan = plan_bill(BillInfo.from_obligation(water), Frequency.MONTHLY)

        self.assertEqual(plan.annual_amount, Decimal("1080.00"))
        self.assertEqual(plan.amount_per_paycheck, Decimal("90.00"))


class AllocationSummaryTests(unittest.TestCase):
    def test_covered_bills_have_no_warnings(self) -> None:
        summary = calculate_allocation_summary([RENT], Frequency.BIWEEKLY, Decimal("2000"))

        self.assertEqual(summary.warnings, [])
        self.assertEqual(summary.total_per_paycheck, Decimal("830.77"))
        self.assertEqual(summary.total_annual_bills, Decimal("21600.00"))
        self.assertEqual(summary.total_annual_income, Decimal("52000.00"))
        self.assertEqual(summary.remaining_per_paycheck, Decimal("1169.23"))
        self.assertEqual(summary.currency, "USD")

    def test_no_bills_configured(self) -> None:
        summary = calculate_allocation_summary([], "biweekly", Decimal("2000"))

        self.assertEqual(summary.allocations, [])
        self.assertEqual(
            [warning.type for warning in summary.warnings],
            [AllocationWarningType.NO_BILLS_CONFIGURED],
        )
        self.assertEqual(summary.remaining_per_paycheck, Decimal("2000.00"))

    def test_missing_paycheck_only_reports_no_income(self) -> None:
        summary = calculate_allocation_summary([RENT], Frequency.BIWEEKLY)

        self.assertEqual(
            [warning.type for warning in summary.warnings],
            [AllocationWarningType.NO_INCOME_CONFIGURED],
        )
        self.assertIsNone(summary.remaining_per_paycheck)
        self.assertIsNone(summary.total_annual_income)

    def test_short_paycheck_reports_annual_then_per_paycheck_gap(self) -> None:
        summary = calculate_allocation_summary([RENT], Frequency.BIWEEKLY, Decimal("500"))

        self.assertEqual(
            [(warning.type, warning.amount) for warning in summary.warnings],
            [
                (AllocationWarningType.CANNOT_RECONCILE, Decimal("8600.00")),
                (AllocationWarningType.INSUFFICIENT_INCOME, Decimal("330.77")),
            ],
        )
        self.assertIn("USD 330.77", summary.warnings[1].message)


if __name__ == "__main__":
    unittest.main()
