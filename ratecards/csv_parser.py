"""
Parsing of draft rate cards from CSV uploads and JSON payloads.

Two column layouts are supported. The structured layout carries slabs and
fees as JSON arrays (``slabs_json``, ``fees_json``); the flattened layout
spreads them over ``fee_<code>_type/value`` and ``slab<N>_*`` columns.
The layout is decided once per file from its header, structured first.

Every field-level problem of a row is collected; parsing never stops at
the first error.
"""

import csv
import io
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    RateCard, Slab, FeeRule, SettlementConfig, CommissionType, FeeType, SettlementBasis,
    FEE_CODES, BI_WEEKLY_OCCURRENCES, END_OF_MONTH, GST_RANGE, TCS_RANGE, PERCENT_RANGE,
    PERCENT_PLACES, TAX_PLACES, MONEY_PLACES, FEE_VALUE_PLACES, MAX_PRICE, MAX_FEE_VALUE, MAX_SETTLEMENT_DAYS,
    canon_id,
)
from .slabs import validate_slabs

EXCEL_EPOCH = date(1899, 12, 30)
NUMBER_NOISE = re.compile(r"[%₹$€£,\s]")
NUMBER_PATTERN = re.compile(r"^[-+]?(?:\d+(?:\.\d*)?|\.\d+)$")
ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

BASE_COLUMNS = [
    'platform_id', 'category_id', 'commission_type', 'commission_percent',
    'gst_percent', 'tcs_percent', 'settlement_basis', 't_plus_days',
    'weekly_weekday', 'bi_weekly_weekday', 'bi_weekly_which', 'monthly_day',
    'grace_days', 'effective_from', 'effective_to', 'global_min_price',
    'global_max_price', 'notes',
]
STRUCTURED_COLUMNS = BASE_COLUMNS + ['slabs_json', 'fees_json']

REQUIRED_FIELDS = ('platform_id', 'category_id', 'settlement_basis', 'effective_from')

HEADER_ALIASES = {
    'platform_id': ['platform', 'marketplace', 'marketplace_id', 'channel'],
    'category_id': ['category', 'product_category'],
    'commission_type': ['type', 'commission type', 'commission_model'],
    'commission_percent': ['commission', 'commission %', 'commission_pct', 'commission rate'],
    'gst_percent': ['gst', 'gst %', 'gst rate'],
    'tcs_percent': ['tcs', 'tcs %', 'tcs rate'],
    'settlement_basis': ['settlement', 'settlement type', 'settlement cycle type'],
    't_plus_days': ['t+ days', 't plus days', 'settlement days', 'settlement cycle (days)'],
    'weekly_weekday': ['weekly day', 'weekday'],
    'bi_weekly_weekday': ['biweekly weekday', 'bi-weekly day'],
    'bi_weekly_which': ['biweekly which', 'bi-weekly week'],
    'monthly_day': ['monthly day', 'day of month'],
    'grace_days': ['grace', 'grace period'],
    'effective_from': ['valid from', 'start date', 'from'],
    'effective_to': ['valid to', 'end date', 'to'],
    'global_min_price': ['min price', 'minimum price'],
    'global_max_price': ['max price', 'maximum price'],
    'notes': ['note', 'comments', 'remarks'],
    'slabs_json': ['slabs', 'slabs json'],
    'fees_json': ['fees', 'fees json'],
}

COMMISSION_TYPES = {'flat': CommissionType.FLAT, 'tiered': CommissionType.TIERED}
SETTLEMENT_BASES = {
    'tplus': SettlementBasis.T_PLUS,
    'weekly': SettlementBasis.WEEKLY,
    'biweekly': SettlementBasis.BI_WEEKLY,
    'monthly': SettlementBasis.MONTHLY,
}


class CsvLayout(Enum):
    """Column layout of a rate card CSV."""
    FLATTENED = "flattened"
    STRUCTURED = "structured"


def canonical_column_name(name: Any) -> str:
    """Lower-case, '+' spelled 'plus', everything but letters and digits dropped."""
    text = str(name or '').strip().lower().replace('+', 'plus')
    return re.sub(r'[^a-z0-9]', '', text)


def flattened_columns(max_slabs: int = 5) -> List[str]:
    columns = list(BASE_COLUMNS)
    for code in FEE_CODES:
        columns += [f'fee_{code}_type', f'fee_{code}_value']
    for index in range(1, max_slabs + 1):
        columns += [f'slab{index}_min_price', f'slab{index}_max_price', f'slab{index}_commission_percent']
    return columns


def _build_header_lookup(max_slabs: int) -> Dict[str, str]:
    lookup = {}
    for column in flattened_columns(max_slabs) + ['slabs_json', 'fees_json']:
        lookup[canonical_column_name(column)] = column
    for column, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            lookup.setdefault(canonical_column_name(alias), column)
    return lookup


def normalize_headers(headers: List[str], max_slabs: int = 5) -> List[str]:
    """Map raw CSV headers to canonical column names; unknown headers pass through."""
    lookup = _build_header_lookup(max_slabs)
    normalized = []
    for header in headers:
        key = canonical_column_name(header)
        normalized.append(lookup.get(key, str(header or '').strip().lower().replace(' ', '_')))
    return normalized


def detect_layout(columns) -> CsvLayout:
    if 'slabs_json' in columns or 'fees_json' in columns:
        return CsvLayout.STRUCTURED
    return CsvLayout.FLATTENED


def clean_number(value: Any) -> Optional[Decimal]:
    """
    Parse a number, ignoring currency symbols, percent signs, commas and spaces.

    Returns None for blank input; raises ValueError for anything else that is
    not a plain decimal number.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid number ('{value}')")
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    cleaned = NUMBER_NOISE.sub('', str(value))
    if not cleaned:
        return None
    if not NUMBER_PATTERN.match(cleaned):
        raise ValueError(f"invalid number ('{value}')")
    return Decimal(cleaned)


def parse_date(value: Any) -> Optional[date]:
    """
    Parse ISO (YYYY-MM-DD), d/m/yyyy (day first, then month first) or an Excel serial day.

    Returns None for blank input; raises ValueError when nothing matches.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None

    if ISO_DATE.match(raw):
        try:
            return date.fromisoformat(raw)
        except ValueError:
            raise ValueError(f"invalid date ('{raw}')")

    match = SLASH_DATE.match(raw)
    if match:
        first, second, year = (int(part) for part in match.groups())
        for day, month in ((first, second), (second, first)):
            try:
                return date(year, month, day)
            except ValueError:
                continue
        raise ValueError(f"invalid date ('{raw}')")

    if NUMBER_PATTERN.match(raw):
        serial = Decimal(raw)
        if 0 < serial < 2958466:
            return EXCEL_EPOCH + timedelta(days=int(serial))

    raise ValueError(f"invalid date ('{raw}')")


def decimal_places(value: Decimal) -> int:
    """Number of significant decimal places, trailing zeros ignored."""
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


@dataclass
class DraftRow:
    """One parsed input row: a draft card, or the errors that prevented it."""

    row: int
    card: Optional[RateCard]
    errors: List[str] = field(default_factory=list)
    record: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.card is not None and not self.errors


class _FieldReader:
    """Reads typed fields from a record, appending problems to a shared list."""

    def __init__(self, record: Dict[str, Any], errors: List[str]):
        self.record = record
        self.errors = errors

    def text(self, name: str) -> Optional[str]:
        value = self.record.get(name)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def number(self, name: str, low: Decimal = None, high: Decimal = None,
               required: bool = False, default: Decimal = None,
               places: int = None) -> Optional[Decimal]:
        try:
            value = clean_number(self.record.get(name))
        except ValueError as exc:
            self.errors.append(f"{name}: {exc}")
            return None
        if value is None:
            if required:
                self.errors.append(f"{name} is required")
            return default
        if low is not None and value < low:
            self.errors.append(self._range_message(name, low, high))
            return None
        if high is not None and value > high:
            self.errors.append(self._range_message(name, low, high))
            return None
        if places is not None and decimal_places(value) > places:
            self.errors.append(f"{name} must have at most {places} decimal places")
            return None
        return value

    def integer(self, name: str, low: int = None, high: int = None,
                required: bool = False, default: int = None) -> Optional[int]:
        value = self.number(
            name,
            Decimal(low) if low is not None else None,
            Decimal(high) if high is not None else None,
            required=required,
        )
        if value is None:
            return default
        if value != value.to_integral_value():
            self.errors.append(f"{name} must be a whole number")
            return None
        return int(value)

    def date(self, name: str, required: bool = False) -> Optional[date]:
        try:
            value = parse_date(self.record.get(name))
        except ValueError as exc:
            self.errors.append(f"{name}: {exc}")
            return None
        if value is None and required:
            self.errors.append(f"{name} is required")
        return value

    @staticmethod
    def _range_message(name, low, high) -> str:
        if low is None:
            return f"{name} must be {high} or less"
        if high is None:
            return f"{name} must be {low} or greater"
        return f"{name} must be between {low} and {high}"


class RateCardRowParser:
    """Turns CSV records or JSON payloads into validated draft rate cards."""

    def __init__(self, max_flattened_slabs: int = 5, default_gst_percent=18, default_tcs_percent=1):
        self.max_flattened_slabs = max_flattened_slabs
        self.default_gst_percent = Decimal(default_gst_percent)
        self.default_tcs_percent = Decimal(default_tcs_percent)

    def parse_csv(self, text: str) -> Tuple[CsvLayout, List[DraftRow]]:
        """
        Parse a whole CSV document.

        Row numbers are spreadsheet line numbers: the header is line 1,
        the first data row is 2. Blank lines are skipped but still counted.

        Raises:
            ValueError: the document has no header row
        """
        text = text.lstrip('\ufeff')
        reader = csv.reader(io.StringIO(text))
        try:
            raw_headers = next(reader)
        except StopIteration:
            raise ValueError("CSV file is empty")
        if not any(header.strip() for header in raw_headers):
            raise ValueError("CSV file has no header row")

        headers = normalize_headers(raw_headers, self.max_flattened_slabs)
        layout = detect_layout(headers)

        drafts = []
        last_line = reader.line_num
        for cells in reader:
            # Quoted cells may span several lines; a row is numbered by its first line
            line_number = last_line + 1
            last_line = reader.line_num
            if not any(cell.strip() for cell in cells):
                continue
            record = {header: (cells[index] if index < len(cells) else '') for index, header in enumerate(headers)}
            card, errors = self.parse_record(record, layout)
            drafts.append(DraftRow(row=line_number, card=card, errors=errors, record=record))
        return layout, drafts

    def parse_payload(self, payload: Dict[str, Any]) -> Tuple[Optional[RateCard], List[str]]:
        """Parse a JSON draft (as returned by the parse endpoint); slabs and fees are lists."""
        record = dict(payload)
        if 'slabs_json' not in record:
            record['slabs_json'] = record.get('slabs')
        if 'fees_json' not in record:
            record['fees_json'] = record.get('fees')
        return self.parse_record(record, CsvLayout.STRUCTURED)

    def parse_record(self, record: Dict[str, Any],
                     layout: CsvLayout = None) -> Tuple[Optional[RateCard], List[str]]:
        """
        Parse one record into a draft card.

        Returns:
            (card, []) when valid, (None, errors) otherwise
        """
        layout = layout or detect_layout(record.keys())
        errors: List[str] = []
        reader = _FieldReader(record, errors)

        platform_id = canon_id(reader.text('platform_id'))
        category_id = canon_id(reader.text('category_id'))
        if not platform_id:
            errors.append("platform_id is required")
        if not category_id:
            errors.append("category_id is required")

        commission_type = self._commission_type(reader.text('commission_type'), errors)
        commission_percent = None
        if commission_type == CommissionType.FLAT:
            commission_percent = reader.number('commission_percent', *PERCENT_RANGE, required=True,
                                               places=PERCENT_PLACES)

        if layout == CsvLayout.STRUCTURED:
            slabs = self._json_slabs(record.get('slabs_json'), errors)
            fees = self._json_fees(record.get('fees_json'), errors)
        else:
            slabs = self._flattened_slabs(reader)
            fees = self._flattened_fees(reader)

        if commission_type == CommissionType.TIERED:
            result = validate_slabs(slabs)
            errors.extend(result.issues)
            slabs = result.slabs
        else:
            slabs = []

        self._check_fees(fees, errors)

        gst_percent = reader.number('gst_percent', *GST_RANGE, default=self.default_gst_percent,
                                    places=TAX_PLACES)
        tcs_percent = reader.number('tcs_percent', *TCS_RANGE, default=self.default_tcs_percent,
                                    places=TAX_PLACES)
        settlement = self._settlement(reader)

        effective_from = reader.date('effective_from', required=True)
        effective_to = reader.date('effective_to')
        if effective_from and effective_to and effective_to <= effective_from:
            errors.append("effective_to must be after effective_from")

        global_min_price = reader.number('global_min_price', Decimal('0'), MAX_PRICE, places=MONEY_PLACES)
        global_max_price = reader.number('global_max_price', Decimal('0'), MAX_PRICE, places=MONEY_PLACES)
        if global_min_price is not None and global_max_price is not None and global_max_price < global_min_price:
            errors.append("global_max_price must be greater than or equal to global_min_price")

        if errors:
            return None, errors

        card = RateCard(
            platform_id=platform_id,
            category_id=category_id,
            commission_type=commission_type,
            commission_percent=commission_percent,
            slabs=slabs,
            fees=fees,
            gst_percent=gst_percent,
            tcs_percent=tcs_percent,
            settlement=settlement,
            effective_from=effective_from,
            effective_to=effective_to,
            global_min_price=global_min_price,
            global_max_price=global_max_price,
            notes=reader.text('notes'),
        )
        return card, []

    @staticmethod
    def _commission_type(value: Optional[str], errors: List[str]) -> Optional[CommissionType]:
        if not value:
            errors.append("commission_type is required")
            return None
        commission_type = COMMISSION_TYPES.get(canonical_column_name(value))
        if commission_type is None:
            errors.append(f"Unknown commission_type '{value}' (use flat or tiered)")
        return commission_type

    def _settlement(self, reader: _FieldReader) -> Optional[SettlementConfig]:
        raw_basis = reader.text('settlement_basis')
        grace_days = reader.integer('grace_days', low=0, high=MAX_SETTLEMENT_DAYS, default=0)
        if not raw_basis:
            reader.errors.append("settlement_basis is required")
            return None

        basis = SETTLEMENT_BASES.get(canonical_column_name(raw_basis))
        if basis is None:
            reader.errors.append(
                f"Unknown settlement_basis '{raw_basis}' (use t_plus, weekly, bi_weekly or monthly)"
            )
            return None

        config = SettlementConfig(basis=basis, grace_days=grace_days or 0)
        if basis == SettlementBasis.T_PLUS:
            config.t_plus_days = reader.integer('t_plus_days', low=0, high=MAX_SETTLEMENT_DAYS, required=True)
        elif basis == SettlementBasis.WEEKLY:
            config.weekly_weekday = reader.integer('weekly_weekday', low=1, high=7, required=True)
        elif basis == SettlementBasis.BI_WEEKLY:
            config.bi_weekly_weekday = reader.integer('bi_weekly_weekday', low=1, high=7, required=True)
            which = (reader.text('bi_weekly_which') or '').lower()
            if not which:
                reader.errors.append("bi_weekly_which is required")
            elif which not in BI_WEEKLY_OCCURRENCES:
                reader.errors.append(f"bi_weekly_which must be first or second (got '{which}')")
            else:
                config.bi_weekly_which = which
        else:
            config.monthly_day = self._monthly_day(reader)
        return config

    @staticmethod
    def _monthly_day(reader: _FieldReader):
        raw = reader.text('monthly_day')
        if raw and raw.lower() == END_OF_MONTH:
            return END_OF_MONTH
        if raw is None:
            reader.errors.append("monthly_day is required")
            return None
        if not re.match(r'^\d{1,2}$', raw) or not 1 <= int(raw) <= 31:
            reader.errors.append(f"monthly_day must be 1-31 or eom (got '{raw}')")
            return None
        return int(raw)

    def _flattened_slabs(self, reader: _FieldReader) -> List[Slab]:
        slabs = []
        for index in range(1, self.max_flattened_slabs + 1):
            prefix = f'slab{index}_'
            columns = [prefix + 'min_price', prefix + 'max_price', prefix + 'commission_percent']
            if not any(reader.text(column) for column in columns):
                continue
            min_price = reader.number(columns[0], high=MAX_PRICE, required=True, places=MONEY_PLACES)
            max_price = reader.number(columns[1], high=MAX_PRICE, places=MONEY_PLACES)
            percent = reader.number(columns[2], required=True, places=PERCENT_PLACES)
            if min_price is not None and percent is not None:
                slabs.append(Slab(min_price=min_price, max_price=max_price, commission_percent=percent))
        return slabs

    @staticmethod
    def _flattened_fees(reader: _FieldReader) -> List[FeeRule]:
        fees = []
        for code in FEE_CODES:
            type_column, value_column = f'fee_{code}_type', f'fee_{code}_value'
            raw_type = reader.text(type_column)
            if raw_type is None and reader.text(value_column) is None:
                continue
            value = reader.number(value_column, high=MAX_FEE_VALUE, required=True, places=FEE_VALUE_PLACES)
            fee_type = _fee_type(raw_type, type_column, reader.errors)
            if value is not None and fee_type is not None:
                fees.append(FeeRule(fee_code=code, fee_type=fee_type, fee_value=value))
        return fees

    @staticmethod
    def _json_slabs(value: Any, errors: List[str]) -> List[Slab]:
        items = _json_array(value, 'slabs_json', errors)
        slabs = []
        for position, item in enumerate(items, start=1):
            label = f"slabs_json[{position}]"
            if not isinstance(item, dict):
                errors.append(f"{label}: expected an object")
                continue
            reader = _FieldReader(item, [])
            min_price = reader.number('min_price', high=MAX_PRICE, required=True, places=MONEY_PLACES)
            max_price = reader.number('max_price', high=MAX_PRICE, places=MONEY_PLACES)
            percent = reader.number('commission_percent', required=True, places=PERCENT_PLACES)
            errors.extend(f"{label}.{message}" for message in reader.errors)
            if min_price is not None and percent is not None:
                slabs.append(Slab(min_price=min_price, max_price=max_price, commission_percent=percent))
        return slabs

    @staticmethod
    def _json_fees(value: Any, errors: List[str]) -> List[FeeRule]:
        items = _json_array(value, 'fees_json', errors)
        fees = []
        for position, item in enumerate(items, start=1):
            label = f"fees_json[{position}]"
            if not isinstance(item, dict):
                errors.append(f"{label}: expected an object")
                continue
            normalized = {
                'fee_code': item.get('fee_code', item.get('code')),
                'fee_type': item.get('fee_type', item.get('type')),
                'fee_value': item.get('fee_value', item.get('value')),
            }
            reader = _FieldReader(normalized, [])
            code = (reader.text('fee_code') or '').lower()
            value = reader.number('fee_value', high=MAX_FEE_VALUE, required=True, places=FEE_VALUE_PLACES)
            if not code:
                reader.errors.append("fee_code is required")
            fee_type = _fee_type(reader.text('fee_type'), 'fee_type', reader.errors)
            errors.extend(f"{label}.{message}" for message in reader.errors)
            if code and value is not None and fee_type is not None:
                fees.append(FeeRule(fee_code=code, fee_type=fee_type, fee_value=value))
        return fees

    @staticmethod
    def _check_fees(fees: List[FeeRule], errors: List[str]):
        seen = set()
        for fee in fees:
            if fee.fee_code not in FEE_CODES:
                errors.append(f"Unknown fee code '{fee.fee_code}' (use {', '.join(FEE_CODES)})")
            if fee.fee_value < 0:
                errors.append(f"Fee {fee.fee_code} value must be 0 or greater")
            if fee.key in seen:
                errors.append(f"Duplicate fee {fee.fee_code} ({fee.fee_type.value})")
            seen.add(fee.key)


def _fee_type(value: Optional[str], column: str, errors: List[str]) -> Optional[FeeType]:
    if not value:
        return FeeType.PERCENT
    try:
        return FeeType(value.strip().lower())
    except ValueError:
        errors.append(f"{column} must be percent or amount (got '{value}')")
        return None


def _json_array(value: Any, column: str, errors: List[str]) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    text = str(value).strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        errors.append(f"{column}: malformed JSON")
        return []
    if not isinstance(parsed, list):
        errors.append(f"{column}: expected JSON array")
        return []
    return parsed


TEMPLATE_EXAMPLES = [
    {
        'platform_id': 'amazon', 'category_id': 'apparel', 'commission_type': 'flat',
        'commission_percent': '15', 'gst_percent': '18', 'tcs_percent': '1',
        'settlement_basis': 't_plus', 't_plus_days': '7', 'grace_days': '2',
        'effective_from': '2025-01-01', 'notes': 'Standard apparel contract',
        'fees': [('shipping', 'amount', '45'), ('collection', 'percent', '2')],
        'slabs': [],
    },
    {
        'platform_id': 'flipkart', 'category_id': 'electronics', 'commission_type': 'tiered',
        'gst_percent': '18', 'tcs_percent': '1',
        'settlement_basis': 'weekly', 'weekly_weekday': '5', 'grace_days': '0',
        'effective_from': '2025-01-01', 'effective_to': '2025-12-31', 'notes': 'Tiered electronics',
        'fees': [('fixed', 'amount', '20')],
        'slabs': [('0', '500', '10'), ('500', '', '5')],
    },
]


def build_template_csv(layout: CsvLayout = CsvLayout.FLATTENED, max_slabs: int = 5) -> str:
    """CSV template with a header row and two example cards."""
    columns = STRUCTURED_COLUMNS if layout == CsvLayout.STRUCTURED else flattened_columns(max_slabs)
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, extrasaction='ignore', lineterminator='\n')
    writer.writeheader()

    for example in TEMPLATE_EXAMPLES:
        row = {key: value for key, value in example.items() if key not in ('fees', 'slabs')}
        if layout == CsvLayout.STRUCTURED:
            row['fees_json'] = json.dumps([
                {'fee_code': code, 'fee_type': fee_type, 'fee_value': float(value)}
                for code, fee_type, value in example['fees']
            ])
            row['slabs_json'] = json.dumps([
                {'min_price': float(low), 'max_price': float(high) if high else None,
                 'commission_percent': float(percent)}
                for low, high, percent in example['slabs']
            ])
        else:
            for code, fee_type, value in example['fees']:
                row[f'fee_{code}_type'] = fee_type
                row[f'fee_{code}_value'] = value
            for index, (low, high, percent) in enumerate(example['slabs'][:max_slabs], start=1):
                row[f'slab{index}_min_price'] = low
                row[f'slab{index}_max_price'] = high
                row[f'slab{index}_commission_percent'] = percent
        writer.writerow(row)

    return output.getvalue()
