"""
Validation of tiered-commission price bands.

Issues are collected in a single pass rather than failing on the first one,
so a caller can report every problem with a slab list at once.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from .models import Slab, PERCENT_RANGE


class SlabIssueKind(Enum):
    """Failure kinds reported by the slab validator."""
    SLAB_OVERLAP = "SlabOverlap"
    MISSING_SLABS = "MissingSlabs"


@dataclass
class SlabValidationResult:
    """Sorted slabs, or the list of issues found and their failure kind."""

    slabs: List[Slab]
    issues: List[str] = field(default_factory=list)
    kind: Optional[SlabIssueKind] = None

    @property
    def is_valid(self) -> bool:
        return self.kind is None


def validate_slabs(slabs: List[Slab]) -> SlabValidationResult:
    """
    Sort slabs by min_price and check them.

    Args:
        slabs: Slabs in any order

    Returns:
        SlabValidationResult with the sorted slabs; when invalid, ``kind`` is
        MISSING_SLABS for an empty list, SLAB_OVERLAP otherwise.
    """
    if not slabs:
        return SlabValidationResult(
            slabs=[],
            issues=["Tiered commission requires at least one slab."],
            kind=SlabIssueKind.MISSING_SLABS,
        )

    ordered = sorted(slabs, key=lambda slab: slab.min_price)
    issues = []
    low, high = PERCENT_RANGE

    for index, slab in enumerate(ordered, start=1):
        if slab.min_price < 0:
            issues.append(f"Slab {index}: min_price must be 0 or greater.")
        if not low <= slab.commission_percent <= high:
            issues.append(f"Slab {index}: commission_percent must be between 0 and 100.")
        if slab.max_price is not None and slab.max_price <= slab.min_price:
            issues.append(
                f"Slab {index}: max_price must be greater than min_price or empty for open-ended."
            )

    for index, (current, following) in enumerate(zip(ordered, ordered[1:]), start=1):
        if current.max_price is None:
            issues.append(f"Slab {index} is open-ended but is not the last slab.")
        elif current.max_price > following.min_price:
            issues.append(f"Slabs overlap between rows {index} and {index + 1}.")

    if issues:
        return SlabValidationResult(slabs=ordered, issues=issues, kind=SlabIssueKind.SLAB_OVERLAP)
    return SlabValidationResult(slabs=ordered)


def find_slab(slabs: List[Slab], price: Decimal) -> Optional[Slab]:
    """Return the slab containing price, None when price falls in a gap or outside."""
    for slab in slabs:
        if slab.contains(price):
            return slab
    return None


def slab_price_range(slabs: List[Slab]) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """Lowest min_price and highest max_price (None when open-ended) of sorted slabs."""
    if not slabs:
        return None, None
    ordered = sorted(slabs, key=lambda slab: slab.min_price)
    return ordered[0].min_price, ordered[-1].max_price
