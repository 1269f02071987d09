from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from budget_planner.instance_projection import ProjectedInstance


class InstanceStatus(str, Enum):
    MATCHED = "matched"
    PENDING = "pending"
    MISSING = "missing"


@dataclass(frozen=True)
class RealizedTransaction:
    id: int
    account_id: int
    date: date
    amount: Decimal
    description: Optional[str] = None
    recurring_obligation_id: Optional[str] = None
    recurring_instance_date: Optional[date] = None


@dataclass(frozen=True)
class InstanceReconciliation:
    instance: ProjectedInstance
    status: InstanceStatus
    transaction: Optional[RealizedTransaction] = None


def reconcile(
    instances: Iterable[ProjectedInstance],
    realized_transactions: Iterable[RealizedTransaction],
    today: date,
) -> List[InstanceReconciliation]:
    """Classify each projected instance as matched, pending or missing.

    A transaction matches an instance when it links to the instance's
    obligation and original date and books to the instance's account, so the
    two legs of a transfer match independently. Each transaction is consumed
    by at most one instance.
    """
    index = _index_linked_transactions(realized_transactions)
    consumed: Set[int] = set()
    results: List[InstanceReconciliation] = []
    for instance in instances:
        match = _find_match(instance, index, consumed)
        if match is not None:
            consumed.add(id(match))
            results.append(InstanceReconciliation(instance, InstanceStatus.MATCHED, match))
        elif instance.effective_date >= today:
            results.append(InstanceReconciliation(instance, InstanceStatus.PENDING))
        else:
            results.append(InstanceReconciliation(instance, InstanceStatus.MISSING))
    return results


def summarize(results: Iterable[InstanceReconciliation]) -> Dict[str, int]:
    counts = {status.value: 0 for status in InstanceStatus}
    for result in results:
        counts[result.status.value] += 1
    return counts


def _index_linked_transactions(
    realized_transactions: Iterable[RealizedTransaction],
) -> Dict[Tuple[str, date], List[RealizedTransaction]]:
    index: Dict[Tuple[str, date], List[RealizedTransaction]] = {}
    for txn in realized_transactions:
        if txn.recurring_obligation_id is None or txn.recurring_instance_date is None:
            continue
        key = (txn.recurring_obligation_id, txn.recurring_instance_date)
        index.setdefault(key, []).append(txn)
    return index


def _find_match(
    instance: ProjectedInstance,
    index: Dict[Tuple[str, date], List[RealizedTransaction]],
    consumed: Set[int],
) -> Optional[RealizedTransaction]:
    for txn in index.get((instance.obligation_id, instance.original_date), []):
        if id(txn) in consumed:
            continue
        if txn.account_id == instance.account_id:
            return txn
    return None
