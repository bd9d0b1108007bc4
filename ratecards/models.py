"""
Domain models for the rate card engine.
Defines rate cards, commission slabs, fee rules and settlement configuration.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Dict, Any, List, Union


FEE_CODES = ('shipping', 'rto', 'packaging', 'fixed', 'collection', 'tech', 'storage')
BI_WEEKLY_OCCURRENCES = ('first', 'second')
END_OF_MONTH = 'eom'

GST_RANGE = (Decimal('0'), Decimal('28'))
TCS_RANGE = (Decimal('0'), Decimal('5'))
PERCENT_RANGE = (Decimal('0'), Decimal('100'))

# Decimal places stored per kind of value; inputs with more places are rejected
PERCENT_PLACES = 3
TAX_PLACES = 2
MONEY_PLACES = 2
FEE_VALUE_PLACES = 3
MAX_PRICE = Decimal('9999999999.99')
MAX_FEE_VALUE = Decimal('999999999.999')
MAX_SETTLEMENT_DAYS = 365


class CommissionType(Enum):
    """How commission is charged on a sale."""
    FLAT = "flat"
    TIERED = "tiered"


class FeeType(Enum):
    """Whether a fee is a fixed amount or a percentage of the price."""
    PERCENT = "percent"
    AMOUNT = "amount"


class SettlementBasis(Enum):
    """Rule determining when a marketplace pays out."""
    T_PLUS = "t_plus"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi_weekly"
    MONTHLY = "monthly"


class RowStatus(Enum):
    """Classification of an imported row against existing cards."""
    VALID = "valid"
    SIMILAR = "similar"
    DUPLICATE = "duplicate"
    ERROR = "error"


class CardStatus(Enum):
    """Lifecycle status of a card relative to a given day."""
    ACTIVE = "active"
    UPCOMING = "upcoming"
    EXPIRED = "expired"
    ARCHIVED = "archived"


def canon_id(value: Any) -> str:
    """Canonical form of a platform or category identifier."""
    return str(value or '').strip().lower()


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a JSON/CSV scalar to Decimal, None for blanks. Raises ValueError on garbage."""
    if isinstance(value, bool):
        raise ValueError(f"invalid number: {value!r}")
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    text = str(value).strip()
    if text == '':
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"invalid number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"invalid number: {value!r}")
    return number


def _number(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class Slab:
    """A price band with its own commission percentage."""

    min_price: Decimal
    max_price: Optional[Decimal]
    commission_percent: Decimal

    @property
    def is_open_ended(self) -> bool:
        return self.max_price is None

    def contains(self, price: Decimal) -> bool:
        """price >= min_price and (open-ended or price < max_price)."""
        if price < self.min_price:
            return False
        return self.max_price is None or price < self.max_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            'min_price': _number(self.min_price),
            'max_price': _number(self.max_price),
            'commission_percent': _number(self.commission_percent),
        }


@dataclass
class FeeRule:
    """A fee charged by the marketplace on each sale."""

    fee_code: str
    fee_type: FeeType
    fee_value: Decimal

    @property
    def key(self) -> tuple:
        return (self.fee_code, self.fee_type.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fee_code': self.fee_code,
            'fee_type': self.fee_type.value,
            'fee_value': _number(self.fee_value),
        }


@dataclass
class SettlementConfig:
    """Settlement basis with its basis-specific parameters."""

    basis: SettlementBasis
    t_plus_days: Optional[int] = None
    weekly_weekday: Optional[int] = None       # 1 = Monday ... 7 = Sunday
    bi_weekly_weekday: Optional[int] = None
    bi_weekly_which: Optional[str] = None      # 'first' | 'second'
    monthly_day: Optional[Union[int, str]] = None  # 1..31 | 'eom'
    grace_days: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'settlement_basis': self.basis.value,
            't_plus_days': self.t_plus_days,
            'weekly_weekday': self.weekly_weekday,
            'bi_weekly_weekday': self.bi_weekly_weekday,
            'bi_weekly_which': self.bi_weekly_which,
            'monthly_day': self.monthly_day,
            'grace_days': self.grace_days,
        }


@dataclass
class RateCard:
    """A pricing contract for one platform and category over a date range."""

    platform_id: str
    category_id: str
    commission_type: CommissionType
    settlement: SettlementConfig
    effective_from: date
    commission_percent: Optional[Decimal] = None
    slabs: List[Slab] = field(default_factory=list)
    fees: List[FeeRule] = field(default_factory=list)
    gst_percent: Decimal = Decimal('18')
    tcs_percent: Decimal = Decimal('1')
    effective_to: Optional[date] = None
    global_min_price: Optional[Decimal] = None
    global_max_price: Optional[Decimal] = None
    notes: Optional[str] = None
    id: Optional[str] = None
    archived: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_tiered(self) -> bool:
        return self.commission_type == CommissionType.TIERED

    def is_effective_on(self, day: date) -> bool:
        """True when day falls within [effective_from, effective_to)."""
        if day < self.effective_from:
            return False
        return self.effective_to is None or day < self.effective_to

    def status(self, today: date) -> CardStatus:
        if self.archived:
            return CardStatus.ARCHIVED
        if self.effective_from > today:
            return CardStatus.UPCOMING
        if self.effective_to is not None and self.effective_to < today:
            return CardStatus.EXPIRED
        return CardStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the card; the result is also a valid import payload."""
        data = {
            'id': self.id,
            'platform_id': self.platform_id,
            'category_id': self.category_id,
            'commission_type': self.commission_type.value,
            'commission_percent': _number(self.commission_percent),
            'slabs': [slab.to_dict() for slab in self.slabs],
            'fees': [fee.to_dict() for fee in self.fees],
            'gst_percent': _number(self.gst_percent),
            'tcs_percent': _number(self.tcs_percent),
            'effective_from': self.effective_from.isoformat(),
            'effective_to': self.effective_to.isoformat() if self.effective_to else None,
            'global_min_price': _number(self.global_min_price),
            'global_max_price': _number(self.global_max_price),
            'notes': self.notes,
            'archived': self.archived,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        data.update(self.settlement.to_dict())
        return data
