"""
Date-range overlap and structural equality between rate cards.

Shared by the import classifier (parse-time classification) and the
database service (re-check inside the insert transaction).
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from .models import RateCard, CommissionType

TOLERANCE = Decimal('0.000001')


def same_amount(first: Optional[Decimal], second: Optional[Decimal]) -> bool:
    if first is None or second is None:
        return first is None and second is None
    return abs(first - second) <= TOLERANCE


def ranges_overlap(from_a: date, to_a: Optional[date], from_b: date, to_b: Optional[date]) -> bool:
    """Open end dates count as +infinity; touching boundaries overlap."""
    return from_a <= (to_b or date.max) and from_b <= (to_a or date.max)


def identical_range(first: RateCard, second: RateCard) -> bool:
    return first.effective_from == second.effective_from and first.effective_to == second.effective_to


def commission_equal(first: RateCard, second: RateCard) -> bool:
    if first.commission_type != second.commission_type:
        return False
    if first.commission_type == CommissionType.FLAT:
        return same_amount(first.commission_percent, second.commission_percent)

    first_slabs = sorted(first.slabs, key=lambda slab: slab.min_price)
    second_slabs = sorted(second.slabs, key=lambda slab: slab.min_price)
    if len(first_slabs) != len(second_slabs):
        return False
    return all(
        same_amount(a.min_price, b.min_price)
        and same_amount(a.max_price, b.max_price)
        and same_amount(a.commission_percent, b.commission_percent)
        for a, b in zip(first_slabs, second_slabs)
    )


def fees_equal(first: RateCard, second: RateCard) -> bool:
    """Order-independent comparison of (code, type, value) triples."""
    first_fees = sorted(first.fees, key=lambda fee: fee.key)
    second_fees = sorted(second.fees, key=lambda fee: fee.key)
    if len(first_fees) != len(second_fees):
        return False
    return all(
        a.key == b.key and same_amount(a.fee_value, b.fee_value)
        for a, b in zip(first_fees, second_fees)
    )


def is_exact_duplicate(first: RateCard, second: RateCard) -> bool:
    return identical_range(first, second) and commission_equal(first, second) and fees_equal(first, second)


def describe_differences(card: RateCard, existing: RateCard) -> str:
    """Human summary of how an overlapping card differs, e.g. for a tooltip."""
    differences = []
    if not commission_equal(card, existing):
        differences.append("different commission")
    if not fees_equal(card, existing):
        differences.append("different fees")
    if not differences:
        return "Date overlap"
    return f"Date overlap with {' and '.join(differences)}"


@dataclass
class OverlapMatch:
    """An existing card overlapping a candidate."""
    existing: RateCard
    exact: bool


def _overlapping(card: RateCard, others: Iterable[RateCard], archived: bool) -> List[RateCard]:
    return [
        other for other in others
        if other.archived == archived
        and (card.id is None or other.id != card.id)
        and other.platform_id == card.platform_id
        and other.category_id == card.category_id
        and ranges_overlap(card.effective_from, card.effective_to, other.effective_from, other.effective_to)
    ]


def find_conflict(card: RateCard, others: Iterable[RateCard]) -> Optional[OverlapMatch]:
    """
    Find the live card conflicting with ``card``.

    An exact duplicate anywhere among the overlaps wins over a merely
    overlapping card. Archived cards never conflict.
    """
    overlapping = _overlapping(card, others, archived=False)
    for other in overlapping:
        if is_exact_duplicate(card, other):
            return OverlapMatch(existing=other, exact=True)
    if overlapping:
        return OverlapMatch(existing=overlapping[0], exact=False)
    return None


def find_archived_overlap(card: RateCard, others: Iterable[RateCard]) -> Optional[RateCard]:
    overlapping = _overlapping(card, others, archived=True)
    return overlapping[0] if overlapping else None
