"""
Expected settlement date computation.

Weekdays follow ISO numbering (1 = Monday ... 7 = Sunday). Grace days are
added after the basis-specific date is fixed, whatever the basis.
"""

import calendar
from datetime import date, timedelta
from typing import Tuple

from .models import SettlementBasis, SettlementConfig, END_OF_MONTH


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def next_month(year: int, month: int) -> Tuple[int, int]:
    if month == 12:
        if year >= date.max.year:
            raise OverflowError("date value out of range")
        return year + 1, 1
    return year, month + 1


def nth_weekday_of_month(year: int, month: int, iso_weekday: int, occurrence: int) -> date:
    """Date of the occurrence-th (1-based) given weekday in a month."""
    first = date(year, month, 1)
    offset = (iso_weekday - first.isoweekday()) % 7
    return first + timedelta(days=offset + 7 * (occurrence - 1))


class SettlementDateOutOfRange(ValueError):
    """The settlement date falls outside the supported calendar."""


class SettlementScheduler:
    """Computes when a marketplace is expected to settle an order."""

    def schedule(self, reference_date: date, config: SettlementConfig) -> date:
        """
        Compute the expected settlement date.

        Args:
            reference_date: Dispatch (or order) date
            config: Settlement basis and its parameters, validated at card creation

        Returns:
            The settlement date, grace days included

        Raises:
            SettlementDateOutOfRange: the date would fall after date.max
        """
        handlers = {
            SettlementBasis.T_PLUS: self._t_plus,
            SettlementBasis.WEEKLY: self._weekly,
            SettlementBasis.BI_WEEKLY: self._bi_weekly,
            SettlementBasis.MONTHLY: self._monthly,
        }
        try:
            base_date = handlers[config.basis](reference_date, config)
            return base_date + timedelta(days=config.grace_days or 0)
        except OverflowError:
            raise SettlementDateOutOfRange(
                f"Settlement date for {reference_date.isoformat()} is past the last supported date"
            )

    def _t_plus(self, reference_date: date, config: SettlementConfig) -> date:
        if config.t_plus_days is None:
            raise ValueError("t_plus basis requires t_plus_days")
        return reference_date + timedelta(days=config.t_plus_days)

    def _weekly(self, reference_date: date, config: SettlementConfig) -> date:
        if config.weekly_weekday is None:
            raise ValueError("weekly basis requires weekly_weekday")
        # Same day counts: a Friday reference with a Friday payout settles that Friday
        offset = (config.weekly_weekday - reference_date.isoweekday()) % 7
        return reference_date + timedelta(days=offset)

    def _bi_weekly(self, reference_date: date, config: SettlementConfig) -> date:
        if config.bi_weekly_weekday is None or config.bi_weekly_which is None:
            raise ValueError("bi_weekly basis requires bi_weekly_weekday and bi_weekly_which")
        occurrence = 1 if config.bi_weekly_which == 'first' else 2

        candidate = nth_weekday_of_month(
            reference_date.year, reference_date.month, config.bi_weekly_weekday, occurrence
        )
        if candidate < reference_date:
            year, month = next_month(reference_date.year, reference_date.month)
            candidate = nth_weekday_of_month(year, month, config.bi_weekly_weekday, occurrence)
        return candidate

    def _monthly(self, reference_date: date, config: SettlementConfig) -> date:
        if config.monthly_day is None:
            raise ValueError("monthly basis requires monthly_day")

        candidate = self._payday_in(reference_date.year, reference_date.month, config.monthly_day)
        if reference_date > candidate:
            year, month = next_month(reference_date.year, reference_date.month)
            candidate = self._payday_in(year, month, config.monthly_day)
        return candidate

    @staticmethod
    def _payday_in(year: int, month: int, monthly_day) -> date:
        last_day = last_day_of_month(year, month)
        if monthly_day == END_OF_MONTH:
            return date(year, month, last_day)
        return date(year, month, min(int(monthly_day), last_day))


def compute_settlement_date(reference_date: date, config: SettlementConfig) -> date:
    return SettlementScheduler().schedule(reference_date, config)
