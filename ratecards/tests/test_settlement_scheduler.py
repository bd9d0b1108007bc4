"""
Tests for expected settlement date scheduling

Run with: pytest ratecards/tests/test_settlement_scheduler.py -v
"""

from dataclasses import replace
from datetime import date, timedelta

import pytest

from ..models import SettlementBasis, SettlementConfig
from ..settlement_scheduler import (
    SettlementScheduler, SettlementDateOutOfRange, nth_weekday_of_month, compute_settlement_date
)

MONDAY, FRIDAY = 1, 5


def weekly(weekday, grace_days=0):
    return SettlementConfig(basis=SettlementBasis.WEEKLY, weekly_weekday=weekday, grace_days=grace_days)


def bi_weekly(weekday, which, grace_days=0):
    return SettlementConfig(basis=SettlementBasis.BI_WEEKLY, bi_weekly_weekday=weekday,
                            bi_weekly_which=which, grace_days=grace_days)


def monthly(day, grace_days=0):
    return SettlementConfig(basis=SettlementBasis.MONTHLY, monthly_day=day, grace_days=grace_days)


def t_plus(days, grace_days=0):
    return SettlementConfig(basis=SettlementBasis.T_PLUS, t_plus_days=days, grace_days=grace_days)


class TestSettlementScheduler:

    def setup_method(self):
        self.scheduler = SettlementScheduler()

    def test_t_plus(self):
        assert self.scheduler.schedule(date(2025, 1, 1), t_plus(7)) == date(2025, 1, 8)
        assert self.scheduler.schedule(date(2025, 1, 28), t_plus(10)) == date(2025, 2, 7)

    def test_weekly_next_weekday(self):
        # 2025-01-01 is a Wednesday
        assert self.scheduler.schedule(date(2025, 1, 1), weekly(FRIDAY)) == date(2025, 1, 3)
        assert self.scheduler.schedule(date(2025, 1, 4), weekly(FRIDAY)) == date(2025, 1, 10)

    def test_weekly_same_day_is_kept(self):
        assert self.scheduler.schedule(date(2025, 1, 3), weekly(FRIDAY)) == date(2025, 1, 3)

    def test_bi_weekly_first_occurrence(self):
        assert self.scheduler.schedule(date(2025, 1, 1), bi_weekly(MONDAY, 'first')) == date(2025, 1, 6)
        assert self.scheduler.schedule(date(2025, 1, 6), bi_weekly(MONDAY, 'first')) == date(2025, 1, 6)

    def test_bi_weekly_passed_occurrence_moves_to_next_month(self):
        assert self.scheduler.schedule(date(2025, 1, 7), bi_weekly(MONDAY, 'first')) == date(2025, 2, 3)

    def test_bi_weekly_second_occurrence(self):
        assert self.scheduler.schedule(date(2025, 1, 7), bi_weekly(MONDAY, 'second')) == date(2025, 1, 13)
        assert self.scheduler.schedule(date(2025, 1, 14), bi_weekly(MONDAY, 'second')) == date(2025, 2, 10)

    def test_bi_weekly_year_rollover(self):
        assert self.scheduler.schedule(date(2025, 12, 2), bi_weekly(MONDAY, 'first')) == date(2026, 1, 5)

    def test_monthly_day(self):
        assert self.scheduler.schedule(date(2025, 1, 10), monthly(15)) == date(2025, 1, 15)
        assert self.scheduler.schedule(date(2025, 1, 15), monthly(15)) == date(2025, 1, 15)
        assert self.scheduler.schedule(date(2025, 1, 16), monthly(15)) == date(2025, 2, 15)

    def test_monthly_day_clamped_to_month_end(self):
        assert self.scheduler.schedule(date(2025, 2, 10), monthly(31)) == date(2025, 2, 28)
        assert self.scheduler.schedule(date(2024, 2, 10), monthly(31)) == date(2024, 2, 29)
        assert self.scheduler.schedule(date(2025, 1, 31), monthly(30)) == date(2025, 2, 28)

    def test_monthly_end_of_month(self):
        assert self.scheduler.schedule(date(2025, 1, 10), monthly('eom')) == date(2025, 1, 31)
        assert self.scheduler.schedule(date(2025, 12, 31), monthly('eom')) == date(2025, 12, 31)
        assert self.scheduler.schedule(date(2025, 2, 1), monthly('eom')) == date(2025, 2, 28)

    @pytest.mark.parametrize("config", [
        t_plus(7),
        weekly(FRIDAY),
        bi_weekly(MONDAY, 'second'),
        monthly(31),
        monthly('eom'),
    ])
    @pytest.mark.parametrize("reference", [date(2025, 1, 1), date(2025, 1, 31), date(2025, 12, 20)])
    def test_grace_days_added_last(self, config, reference):
        base = self.scheduler.schedule(reference, config)
        for grace in (1, 3, 10):
            assert self.scheduler.schedule(reference, replace(config, grace_days=grace)) == base + timedelta(days=grace)

    def test_incomplete_configuration_raises(self):
        with pytest.raises(ValueError):
            self.scheduler.schedule(date(2025, 1, 1), SettlementConfig(basis=SettlementBasis.WEEKLY))

    @pytest.mark.parametrize("config, reference", [
        (t_plus(7), date(9999, 12, 30)),
        (t_plus(0, grace_days=5), date(9999, 12, 30)),
        (monthly(5), date(9999, 12, 20)),
        (bi_weekly(MONDAY, 'first'), date(9999, 12, 20)),
    ])
    def test_date_past_calendar_end_raises(self, config, reference):
        with pytest.raises(SettlementDateOutOfRange):
            self.scheduler.schedule(reference, config)

    def test_module_helper(self):
        assert compute_settlement_date(date(2025, 1, 1), t_plus(7, grace_days=2)) == date(2025, 1, 10)


def test_nth_weekday_of_month():
    assert nth_weekday_of_month(2025, 2, MONDAY, 1) == date(2025, 2, 3)
    assert nth_weekday_of_month(2025, 2, 6, 1) == date(2025, 2, 1)
    assert nth_weekday_of_month(2025, 2, 6, 2) == date(2025, 2, 8)
