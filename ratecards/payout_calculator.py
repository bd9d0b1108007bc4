"""
Expected payout calculation for a marketplace sale.

All arithmetic is done on unrounded Decimal values; amounts are rounded to
two decimals (ROUND_HALF_UP) only when the breakdown is serialized.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, Dict, Any

from .models import RateCard, FeeType, to_decimal
from .slabs import find_slab, slab_price_range

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
HUNDRED = Decimal('100')
ZERO = Decimal('0')

# Business constant: deltas strictly greater than this many currency units are mismatches
MISMATCH_THRESHOLD = Decimal('10')


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _money(value: Decimal) -> float:
    return float(round_money(value))


class PayoutErrorKind(Enum):
    """Domain failures of a payout calculation."""
    PRICE_OUT_OF_RANGE = "PriceOutOfRange"
    NO_MATCHING_SLAB = "NoMatchingSlab"


@dataclass
class FeeAmount:
    """A fee rule resolved to an amount for one price."""
    fee_code: str
    fee_type: str
    fee_value: Decimal
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fee_code': self.fee_code,
            'fee_type': self.fee_type,
            'fee_value': float(self.fee_value),
            'amount': _money(self.amount),
        }


@dataclass
class PayoutBreakdown:
    """Commission, fees and taxes deducted from a price."""

    price: Decimal
    rate_card_found: bool
    rate_card_id: Optional[str] = None
    commission_percent: Optional[Decimal] = None
    commission: Decimal = ZERO
    fees: List[FeeAmount] = field(default_factory=list)
    total_fees: Decimal = ZERO
    gst_percent: Decimal = ZERO
    gst: Decimal = ZERO
    tcs_percent: Decimal = ZERO
    tcs: Decimal = ZERO
    tcs_included: bool = False
    total_deductions: Decimal = ZERO
    expected_payout: Decimal = ZERO

    @classmethod
    def without_rate_card(cls, price: Decimal) -> 'PayoutBreakdown':
        """Fallback used when no card applies: nothing is deducted."""
        return cls(price=price, rate_card_found=False, expected_payout=price)

    @property
    def rounded_payout(self) -> Decimal:
        return round_money(self.expected_payout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'price': _money(self.price),
            'rate_card_found': self.rate_card_found,
            'rate_card_id': self.rate_card_id,
            'commission_percent': float(self.commission_percent) if self.commission_percent is not None else None,
            'commission': _money(self.commission),
            'fees': [fee.to_dict() for fee in self.fees],
            'total_fees': _money(self.total_fees),
            'gst_percent': float(self.gst_percent),
            'gst': _money(self.gst),
            'tcs_percent': float(self.tcs_percent),
            'tcs': _money(self.tcs),
            'tcs_included': self.tcs_included,
            'total_deductions': _money(self.total_deductions),
            'expected_payout': _money(self.expected_payout),
        }


@dataclass
class PayoutResult:
    """Either a breakdown or a typed failure; callers must branch on ``ok``."""

    breakdown: Optional[PayoutBreakdown] = None
    error: Optional[PayoutErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Reconciliation:
    """Comparison of an expected payout with the amount actually settled."""
    expected_payout: Decimal
    actual_settlement_amount: Decimal
    delta: Decimal
    mismatch_flag: bool


class PayoutCalculator:
    """Computes the expected payout of a sale under a rate card."""

    def __init__(self, include_tcs: bool = False):
        """
        Args:
            include_tcs: Deduct TCS (price x tcs_percent / 100) from the payout.
                Off by default; TCS is then still reported, as zero.
        """
        self.include_tcs = include_tcs

    def calculate(self, price, rate_card: Optional[RateCard] = None) -> PayoutResult:
        """
        Compute the payout breakdown for a price.

        Args:
            price: Sale price, must be greater than 0
            rate_card: Resolved rate card, or None when none applies

        Returns:
            PayoutResult holding the breakdown, or PRICE_OUT_OF_RANGE /
            NO_MATCHING_SLAB when the card cannot price this sale
        """
        price = to_decimal(price)
        if price is None or price <= 0:
            raise ValueError("price must be greater than 0")

        if rate_card is None:
            return PayoutResult(breakdown=PayoutBreakdown.without_rate_card(price))

        out_of_range = self.check_price_bounds(price, rate_card)
        if out_of_range:
            return PayoutResult(error=PayoutErrorKind.PRICE_OUT_OF_RANGE, message=out_of_range)

        if rate_card.is_tiered:
            slab = find_slab(rate_card.slabs, price)
            if slab is None:
                return PayoutResult(
                    error=PayoutErrorKind.NO_MATCHING_SLAB,
                    message=f"No slab covers price {price}",
                )
            commission_percent = slab.commission_percent
        else:
            commission_percent = rate_card.commission_percent or ZERO

        # Whole price at the matched slab's rate, not banded
        commission = commission_percent / HUNDRED * price

        fees = []
        for rule in rate_card.fees:
            if rule.fee_type == FeeType.AMOUNT:
                amount = rule.fee_value
            else:
                amount = rule.fee_value / HUNDRED * price
            fees.append(FeeAmount(rule.fee_code, rule.fee_type.value, rule.fee_value, amount))
        total_fees = sum((fee.amount for fee in fees), ZERO)

        gst = (commission + total_fees) * rate_card.gst_percent / HUNDRED
        tcs = rate_card.tcs_percent / HUNDRED * price if self.include_tcs else ZERO
        total_deductions = commission + total_fees + gst + tcs

        breakdown = PayoutBreakdown(
            price=price,
            rate_card_found=True,
            rate_card_id=rate_card.id,
            commission_percent=commission_percent,
            commission=commission,
            fees=fees,
            total_fees=total_fees,
            gst_percent=rate_card.gst_percent,
            gst=gst,
            tcs_percent=rate_card.tcs_percent,
            tcs=tcs,
            tcs_included=self.include_tcs,
            total_deductions=total_deductions,
            expected_payout=price - total_deductions,
        )
        return PayoutResult(breakdown=breakdown)

    @staticmethod
    def check_price_bounds(price: Decimal, rate_card: RateCard) -> Optional[str]:
        """Return a message when price is outside the card's bounds, None otherwise."""
        if rate_card.global_min_price is not None and price < rate_card.global_min_price:
            return f"Price {price} is below the card minimum {rate_card.global_min_price}"
        if rate_card.global_max_price is not None and price > rate_card.global_max_price:
            return f"Price {price} is above the card maximum {rate_card.global_max_price}"

        if rate_card.is_tiered:
            lowest, highest = slab_price_range(rate_card.slabs)
            if lowest is None:
                return "Tiered rate card has no slabs"
            if price < lowest:
                return f"Price {price} is below the lowest slab {lowest}"
            if highest is not None and price >= highest:
                return f"Price {price} is at or above the highest slab limit {highest}"
        return None


def reconcile(expected_payout: Decimal, actual_settlement_amount) -> Reconciliation:
    """
    Compare the expected payout with the settled amount.

    delta = expected - actual on unrounded values; a mismatch is
    |delta| > MISMATCH_THRESHOLD. Reported amounts are rounded.
    """
    expected = to_decimal(expected_payout)
    actual = to_decimal(actual_settlement_amount)
    delta = expected - actual
    return Reconciliation(
        expected_payout=round_money(expected),
        actual_settlement_amount=actual,
        delta=round_money(delta),
        mismatch_flag=abs(delta) > MISMATCH_THRESHOLD,
    )
