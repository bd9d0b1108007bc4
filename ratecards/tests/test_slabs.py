"""
Tests for the tiered-commission slab validator

Run with: pytest ratecards/tests/test_slabs.py -v
"""

from decimal import Decimal

from ..slabs import validate_slabs, find_slab, slab_price_range, SlabIssueKind
from .factories import slab


class TestValidateSlabs:

    def test_sorts_by_min_price(self):
        """Unordered valid slabs come back sorted ascending"""
        result = validate_slabs([slab(1000, None, 4), slab(0, 500, 10), slab(500, 1000, 7)])

        assert result.is_valid
        assert [s.min_price for s in result.slabs] == [Decimal('0'), Decimal('500'), Decimal('1000')]

    def test_adjacent_slabs_do_not_overlap_after_validation(self):
        result = validate_slabs([slab(500, 1000, 7), slab(0, 500, 10), slab(1000, None, 4)])

        assert result.is_valid
        for current, following in zip(result.slabs, result.slabs[1:]):
            assert current.max_price is not None
            assert current.max_price <= following.min_price

    def test_gap_between_slabs_is_allowed(self):
        result = validate_slabs([slab(0, 100, 10), slab(200, None, 5)])
        assert result.is_valid

    def test_empty_list_is_missing_slabs(self):
        result = validate_slabs([])

        assert not result.is_valid
        assert result.kind == SlabIssueKind.MISSING_SLABS
        assert result.issues == ["Tiered commission requires at least one slab."]

    def test_overlap_reported(self):
        result = validate_slabs([slab(0, 600, 10), slab(500, None, 5)])

        assert result.kind == SlabIssueKind.SLAB_OVERLAP
        assert "Slabs overlap between rows 1 and 2." in result.issues

    def test_collects_every_issue(self):
        """Validation is not fail-fast"""
        result = validate_slabs([
            slab(0, 600, 120),
            slab(500, 400, 5),
            slab(700, None, -1),
        ])

        assert result.kind == SlabIssueKind.SLAB_OVERLAP
        assert len(result.issues) >= 4
        assert any("commission_percent" in issue and "Slab 1" in issue for issue in result.issues)
        assert any("max_price must be greater than min_price" in issue for issue in result.issues)
        assert any("Slab 3: commission_percent" in issue for issue in result.issues)
        assert any("overlap" in issue for issue in result.issues)

    def test_open_ended_slab_must_be_last(self):
        result = validate_slabs([slab(0, None, 10), slab(500, 1000, 5)])

        assert result.kind == SlabIssueKind.SLAB_OVERLAP
        assert "Slab 1 is open-ended but is not the last slab." in result.issues

    def test_max_equal_to_min_rejected(self):
        result = validate_slabs([slab(100, 100, 5)])
        assert not result.is_valid


class TestSlabLookup:

    def setup_method(self):
        self.slabs = validate_slabs([slab(500, None, 5), slab(0, 500, 10)]).slabs

    def test_lower_bound_inclusive_upper_exclusive(self):
        assert find_slab(self.slabs, Decimal('0')).commission_percent == Decimal('10')
        assert find_slab(self.slabs, Decimal('499.99')).commission_percent == Decimal('10')
        assert find_slab(self.slabs, Decimal('500')).commission_percent == Decimal('5')

    def test_gap_returns_none(self):
        slabs = [slab(0, 100, 10), slab(200, None, 5)]
        assert find_slab(slabs, Decimal('150')) is None

    def test_price_range(self):
        assert slab_price_range(self.slabs) == (Decimal('0'), None)
        assert slab_price_range([slab(10, 20, 1), slab(20, 30, 2)]) == (Decimal('10'), Decimal('30'))
        assert slab_price_range([]) == (None, None)
