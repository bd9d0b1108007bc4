"""
Bulk import of rate cards: classification of parsed rows against existing
cards, then a row-by-row import.

Rows are processed and reported in file order. Cards classified valid or
similar during a parse are staged, so a later row of the same file is
checked against them too.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .csv_parser import RateCardRowParser, CsvLayout
from .errors import RateCardConflictError
from .models import RateCard, RowStatus, canon_id
from .overlap import find_conflict, find_archived_overlap, describe_differences

logger = logging.getLogger(__name__)

PLATFORM_LABELS = {
    'amazon': 'Amazon',
    'flipkart': 'Flipkart',
    'myntra': 'Myntra',
    'ajio': 'AJIO',
    'quick': 'Quick Commerce',
}

CATEGORY_LABELS = {
    'apparel': 'Apparel',
    'electronics': 'Electronics',
    'beauty': 'Beauty',
    'home': 'Home',
}


def _friendly(identifier: str, labels: Dict[str, str]) -> str:
    key = canon_id(identifier)
    return labels.get(key) or key.replace('_', ' ').title()


def format_label(platform_id: str, category_id: str) -> str:
    return f"{_friendly(platform_id, PLATFORM_LABELS)} • {_friendly(category_id, CATEGORY_LABELS)}"


def format_date_range(start: date, end: Optional[date]) -> str:
    return f"{start.isoformat()} → {end.isoformat() if end else 'open'}"


def _format_number(value: Optional[Decimal]) -> str:
    if value is None:
        return "0"
    value = Decimal(value).normalize()
    return format(value, 'f')


def describe_commission(card: RateCard) -> str:
    """One-line description of a card's commission and fees."""
    fees = ", ".join(
        f"{fee.fee_code} {_format_number(fee.fee_value)}{'%' if fee.fee_type.value == 'percent' else ''}"
        for fee in card.fees
    )
    fee_summary = f"; Fees: {fees}" if fees else ""

    if card.is_tiered:
        snippets = [
            f"{_format_number(slab.min_price)}-"
            f"{'open' if slab.max_price is None else _format_number(slab.max_price)}: "
            f"{_format_number(slab.commission_percent)}%"
            for slab in card.slabs[:3]
        ]
        extra = ", …" if len(card.slabs) > 3 else ""
        slab_summary = f"; {', '.join(snippets)}{extra}" if snippets else ""
        plural = "" if len(card.slabs) == 1 else "s"
        return f"Tiered commission ({len(card.slabs)} slab{plural}){slab_summary}{fee_summary}"

    return f"Flat {_format_number(card.commission_percent)}% commission{fee_summary}"


def _card_meta(card: RateCard) -> Dict[str, Any]:
    return {
        'id': card.id,
        'label': format_label(card.platform_id, card.category_id),
        'date_range': format_date_range(card.effective_from, card.effective_to),
    }


@dataclass
class ClassifiedRow:
    """Parse-time verdict for one input row."""

    row: int
    status: RowStatus
    message: str
    payload: Optional[Dict[str, Any]] = None
    tooltip: Optional[str] = None
    existing: Optional[Dict[str, Any]] = None
    archived_match: Optional[Dict[str, Any]] = None
    suggestions: Optional[List[Dict[str, Any]]] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'row': self.row,
            'status': self.status.value,
            'message': self.message,
        }
        for key in ('payload', 'tooltip', 'existing', 'archived_match', 'suggestions'):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.errors:
            data['errors'] = self.errors
        return data


@dataclass
class ParseReport:
    rows: List[ClassifiedRow]
    layout: CsvLayout

    @property
    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in RowStatus}
        for row in self.rows:
            counts[row.status.value] += 1
        return {'total': len(self.rows), **counts}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'summary': self.summary,
            'layout': self.layout.value,
            'rows': [row.to_dict() for row in self.rows],
        }


@dataclass
class ImportRowResult:
    row: Any
    status: str  # 'imported' | 'skipped'
    id: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'row': self.row, 'status': self.status}
        if self.id:
            data['id'] = self.id
        if self.message:
            data['message'] = self.message
        return data


@dataclass
class ImportReport:
    results: List[ImportRowResult]

    @property
    def summary(self) -> Dict[str, int]:
        inserted = sum(1 for result in self.results if result.status == 'imported')
        return {'inserted': inserted, 'skipped': len(self.results) - inserted}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'summary': self.summary,
            'results': [result.to_dict() for result in self.results],
        }


class RateCardImportClassifier:
    """Classifies uploaded rate card rows and imports the accepted ones."""

    def __init__(self, store, parser: Optional[RateCardRowParser] = None):
        """
        Args:
            store: DatabaseService-like object (list_rate_cards, insert_rate_card)
            parser: Row parser; a default one is built when omitted
        """
        self.store = store
        self.parser = parser or RateCardRowParser()

    def classify(self, row: int, card: RateCard, others: List[RateCard]) -> ClassifiedRow:
        """Classify one valid draft against the other cards of its key."""
        payload = card.to_dict()
        payload.pop('id', None)
        payload.pop('archived', None)
        payload.pop('created_at', None)

        archived = find_archived_overlap(card, others)
        archived_meta = None
        if archived is not None:
            archived_meta = _card_meta(archived)

        match = find_conflict(card, others)
        if match is None:
            tooltip = None
            if archived_meta:
                tooltip = (f"Archived match: {archived_meta['label']} ({archived_meta['date_range']}). "
                           f"Archived cards don't affect reconciliation.")
            return ClassifiedRow(row=row, status=RowStatus.VALID, message="Ready to import.",
                                 payload=payload, tooltip=tooltip, archived_match=archived_meta)

        existing_meta = _card_meta(match.existing)
        if match.exact:
            return ClassifiedRow(
                row=row,
                status=RowStatus.DUPLICATE,
                message=(f"Exact duplicate of {existing_meta['label']} ({existing_meta['date_range']}). "
                         f"Remove or edit this row."),
                payload=payload,
                tooltip="Same date range, commission and fees.",
                existing=existing_meta,
                archived_match=archived_meta,
            )

        return ClassifiedRow(
            row=row,
            status=RowStatus.SIMILAR,
            message=(f"Overlaps existing {existing_meta['label']} ({existing_meta['date_range']}). "
                     f"Adjust dates or confirm import."),
            payload=payload,
            tooltip=(f"{describe_differences(card, match.existing)}. "
                     f"Your row: {describe_commission(card)}. "
                     f"Existing: {describe_commission(match.existing)}."),
            existing=existing_meta,
            archived_match=archived_meta,
            suggestions=self._suggestions(card, match.existing),
        )

    @staticmethod
    def _suggestions(card: RateCard, existing: RateCard) -> Optional[List[Dict[str, Any]]]:
        if existing.effective_to is None or card.effective_from > existing.effective_to:
            return None
        new_from = existing.effective_to + timedelta(days=1)
        return [{
            'type': 'shift_from',
            'new_from': new_from.isoformat(),
            'reason': f"Shift start date to {new_from.isoformat()} to avoid overlap.",
        }]

    def parse_upload(self, text: str) -> ParseReport:
        """
        Parse and classify an uploaded CSV document.

        Raises:
            ValueError: the document has no header row
        """
        layout, drafts = self.parser.parse_csv(text)
        existing_by_key: Dict[tuple, List[RateCard]] = {}
        rows = []

        for draft in drafts:
            if not draft.is_valid:
                rows.append(ClassifiedRow(
                    row=draft.row,
                    status=RowStatus.ERROR,
                    message="; ".join(draft.errors),
                    errors=list(draft.errors),
                ))
                continue

            card = draft.card
            key = (card.platform_id, card.category_id)
            if key not in existing_by_key:
                existing_by_key[key] = list(self.store.list_rate_cards(
                    platform_id=card.platform_id,
                    category_id=card.category_id,
                    include_archived=True
                ))

            classified = self.classify(draft.row, card, existing_by_key[key])
            rows.append(classified)

            if classified.status in (RowStatus.VALID, RowStatus.SIMILAR):
                existing_by_key[key].append(replace(card, id=f"pending-{draft.row}"))

        report = ParseReport(rows=rows, layout=layout)
        logger.info(f"Parsed rate card upload ({layout.value}): {report.summary}")
        return report

    def import_rows(self, rows: List[Dict[str, Any]], include_similar: bool = False) -> ImportReport:
        """
        Import parsed rows one by one.

        Only rows flagged valid, or similar when include_similar is set, are
        inserted. Rows without a status are re-checked at insert time only.
        Each row is written in its own transaction; a failure skips that row
        and the batch continues.
        """
        results = []

        for position, entry in enumerate(rows, start=1):
            if not isinstance(entry, dict):
                results.append(ImportRowResult(position, 'skipped', message="Invalid row: expected an object"))
                continue
            row_number = entry.get('row', position)
            payload = entry.get('payload')
            status = entry.get('status')

            if not payload:
                results.append(ImportRowResult(row_number, 'skipped', message="Missing payload for row"))
                continue
            if not isinstance(payload, dict):
                results.append(ImportRowResult(row_number, 'skipped', message="Invalid row: payload must be an object"))
                continue

            if status is not None and status not in (RowStatus.VALID.value, RowStatus.SIMILAR.value):
                results.append(ImportRowResult(row_number, 'skipped', message="Row is not eligible for import"))
                continue

            if status == RowStatus.SIMILAR.value and not include_similar:
                results.append(ImportRowResult(row_number, 'skipped', message="Similar rows require confirmation"))
                continue

            card, errors = self.parser.parse_payload(payload)
            if errors:
                results.append(ImportRowResult(row_number, 'skipped', message="; ".join(errors)))
                continue

            try:
                saved = self.store.insert_rate_card(card, allow_overlap=include_similar)
            except RateCardConflictError as exc:
                logger.warning(f"Import row {row_number} skipped: {exc.message}")
                results.append(ImportRowResult(row_number, 'skipped', message=exc.message))
                continue
            except SQLAlchemyError as exc:
                logger.error(f"Import row {row_number} failed: {exc}", exc_info=True)
                results.append(ImportRowResult(row_number, 'skipped', message=f"Failed to import row: {exc.__class__.__name__}"))
                continue

            results.append(ImportRowResult(row_number, 'imported', id=saved.id))

        report = ImportReport(results=results)
        logger.info(f"Rate card import finished: {report.summary}")
        return report
