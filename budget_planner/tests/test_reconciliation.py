import unittest
from datetime import date
from decimal import Decimal

from budget_planner.instance_projection import project_instances
from budget_planner.obligations import ExceptionKind, RecurringTransaction, RecurringTransfer
from budget_planner.reconciliation import (
    InstanceStatus,
    RealizedTransaction,
    reconcile,
    summarize,
)
from budget_planner.recurrence import RecurrencePattern


def make_rent() -> RecurringTransaction:
    return RecurringTransaction.create(
        account_id=1,
        description="Rent",
        amount=Decimal("-1800"),
        pattern=RecurrencePattern.monthly(1),
        start_date=date(2026, 1, 1),
    )


class ReconciliationTests(unittest.TestCase):
    def test_classifies_matched_pending_and_missing(self) -> None:
        rent = make_rent()
        instances = project_instances(rent, date(2026, 1, 1), date(2026, 3, 31))
        realized = [
            RealizedTransaction(
                id=10,
                account_id=1,
                date=date(2026, 2, 2),
                amount=Decimal("-1800"),
                recurring_obligation_id=rent.id,
                recurring_instance_date=date(2026, 2, 1),
            )
        ]

        results = reconcile(instances, realized, today=date(2026, 2, 15))

        self.assertEqual(
            [result.status for result in results],
            [InstanceStatus.MISSING, InstanceStatus.MATCHED, InstanceStatus.PENDING],
        )
        self.assertEqual(results[1].transaction.id, 10)
        self.assertIsNone(results[0].transaction)

    def test_instance_due_today_is_pending(self) -> None:
        instances = project_instances(make_rent(), date(2026, 2, 1), date(2026, 2, 28))

        results = reconcile(instances, [], today=date(2026, 2, 1))

        self.assertEqual(results[0].status, InstanceStatus.PENDING)

    def test_unlinked_transaction_does_not_match(self) -> None:
        rent = make_rent()
        instances = project_instances(rent, date(2026, 1, 1), date(2026, 1, 31))
        realized = [
            RealizedTransaction(id=1, account_id=1, date=date(2026, 1, 1), amount=Decimal("-1800"))
        ]

        results = reconcile(instances, realized, today=date(2026, 3, 1))

        self.assertEqual(results[0].status, InstanceStatus.MISSING)

    def test_moved_instance_matches_by_original_date(self) -> None:
        rent = make_rent()
        rent.add_or_update_exception(
            date(2026, 1, 1), ExceptionKind.MODIFY, new_date=date(2026, 1, 5)
        )
        instances = project_instances(rent, date(2026, 1, 1), date(2026, 1, 31))
        realized = [
            RealizedTransaction(
                id=3,
                account_id=1,
                date=date(2026, 1, 5),
                amount=Decimal("-1800"),
                recurring_obligation_id=rent.id,
                recurring_instance_date=date(2026, 1, 1),
            )
        ]

        results = reconcile(instances, realized, today=date(2026, 1, 20))

        self.assertEqual(results[0].status, InstanceStatus.MATCHED)

    def test_transfer_legs_match_independently(self) -> None:
        transfer = RecurringTransfer.create(
            source_account_id=1,
            destination_account_id=2,
            description="Savings",
            amount=Decimal("250"),
            pattern=RecurrencePattern.monthly(15),
            start_date=date(2026, 1, 15),
        )
        instances = project_instances(transfer, date(2026, 1, 1), date(2026, 1, 31))
        realized = [
            RealizedTransaction(
                id=7,
                account_id=1,
                date=date(2026, 1, 15),
                amount=Decimal("-250"),
                recurring_obligation_id=transfer.id,
                recurring_instance_date=date(2026, 1, 15),
            )
        ]

        results = reconcile(instances, realized, today=date(2026, 1, 20))

        self.assertEqual(
            [(result.instance.account_id, result.status) for result in results],
            [(1, InstanceStatus.MATCHED), (2, InstanceStatus.MISSING)],
        )

    def test_summarize_counts_statuses(self) -> None:
        rent = make_rent()
        instances = project_instances(rent, date(2026, 1, 1), date(2026, 4, 30))

        results = reconcile(instances, [], today=date(2026, 2, 15))

        self.assertEqual(summarize(results), {"matched": 0, "pending": 2, "missing": 2})


if __name__ == "__main__":
    unittest.main()
