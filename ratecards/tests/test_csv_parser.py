"""
Tests for CSV parsing of draft rate cards

Run with: pytest ratecards/tests/test_csv_parser.py -v
"""

import json
from datetime import date
from decimal import Decimal

import pytest

from ..csv_parser import (
    RateCardRowParser, CsvLayout, canonical_column_name, normalize_headers, detect_layout,
    clean_number, parse_date, build_template_csv, flattened_columns,
)
from ..models import CommissionType, FeeType, SettlementBasis
from .factories import flat_csv, AMAZON_ROW


class TestValueParsing:

    def test_clean_number_strips_symbols(self):
        assert clean_number("₹1,250.50") == Decimal("1250.50")
        assert clean_number(" 15 % ") == Decimal("15")
        assert clean_number("") is None
        assert clean_number(None) is None
        assert clean_number(12.5) == Decimal("12.5")

    def test_clean_number_rejects_garbage(self):
        with pytest.raises(ValueError):
            clean_number("abc")
        with pytest.raises(ValueError):
            clean_number("1.2.3")

    def test_parse_iso_date(self):
        assert parse_date("2025-03-01") == date(2025, 3, 1)

    def test_parse_slash_date_day_first(self):
        assert parse_date("03/04/2025") == date(2025, 4, 3)

    def test_parse_slash_date_falls_back_to_month_first(self):
        assert parse_date("04/23/2025") == date(2025, 4, 23)

    def test_parse_excel_serial(self):
        assert parse_date("45658") == date(2025, 1, 1)

    def test_parse_invalid_dates(self):
        for value in ("2025-02-30", "31/31/2025", "next week"):
            with pytest.raises(ValueError):
                parse_date(value)
        assert parse_date("  ") is None


class TestHeaders:

    def test_canonical_column_name(self):
        assert canonical_column_name("T+ Days") == "tplusdays"
        assert canonical_column_name("Commission %") == "commission"

    def test_aliases_map_to_canonical_columns(self):
        headers = normalize_headers(["Marketplace", "Category", "Commission %", "Valid From", "T+ Days",
                                     "Fee Shipping Type", "Slab1 Min Price", "Fees JSON"])
        assert headers == ["platform_id", "category_id", "commission_percent", "effective_from",
                           "t_plus_days", "fee_shipping_type", "slab1_min_price", "fees_json"]

    def test_layout_detection_prefers_json_columns(self):
        assert detect_layout(["platform_id", "slabs_json", "fee_shipping_type"]) == CsvLayout.STRUCTURED
        assert detect_layout(["platform_id", "fees_json"]) == CsvLayout.STRUCTURED
        assert detect_layout(["platform_id", "slab1_min_price"]) == CsvLayout.FLATTENED


class TestRateCardRowParser:

    def setup_method(self):
        self.parser = RateCardRowParser()

    def test_flattened_flat_row(self):
        layout, drafts = self.parser.parse_csv(flat_csv(AMAZON_ROW))

        assert layout == CsvLayout.FLATTENED
        assert len(drafts) == 1
        draft = drafts[0]
        assert draft.row == 2
        assert draft.is_valid
        card = draft.card
        assert card.platform_id == "amazon"
        assert card.commission_type == CommissionType.FLAT
        assert card.commission_percent == Decimal("15")
        assert card.settlement.basis == SettlementBasis.T_PLUS
        assert card.settlement.t_plus_days == 7
        assert card.effective_to == date(2025, 6, 30)
        assert [(f.fee_code, f.fee_type, f.fee_value) for f in card.fees] == [("shipping", FeeType.AMOUNT, Decimal("40"))]

    def test_missing_settlement_basis_is_reported(self):
        row = "amazon,apparel,flat,15,18,1,,7,0,2025-01-01,,amount,40"
        _, drafts = self.parser.parse_csv(flat_csv(row))

        assert not drafts[0].is_valid
        assert any("settlement_basis" in error for error in drafts[0].errors)

    def test_collects_all_errors(self):
        row = ",apparel,flat,150,40,1,weekly,,x,notadate,,amount,"
        _, drafts = self.parser.parse_csv(flat_csv(row))
        errors = drafts[0].errors

        assert "platform_id is required" in errors
        assert any(e.startswith("commission_percent must be between") for e in errors)
        assert any(e.startswith("gst_percent must be between") for e in errors)
        assert "weekly_weekday is required" in errors
        assert any(e.startswith("grace_days: invalid number") for e in errors)
        assert any(e.startswith("effective_from: invalid date") for e in errors)
        assert "fee_shipping_value is required" in errors

    def test_defaults_for_taxes_and_grace(self):
        csv_text = (
            "platform_id,category_id,commission_type,commission_percent,settlement_basis,monthly_day,effective_from\n"
            "Myntra,Apparel,Flat,20,Monthly,EOM,01/02/2025\n"
        )
        _, drafts = self.parser.parse_csv(csv_text)
        card = drafts[0].card

        assert card.platform_id == "myntra"
        assert card.gst_percent == Decimal("18")
        assert card.tcs_percent == Decimal("1")
        assert card.settlement.grace_days == 0
        assert card.settlement.monthly_day == "eom"
        assert card.effective_from == date(2025, 2, 1)

    def test_flattened_tiered_slabs_sorted(self):
        csv_text = (
            "platform_id,category_id,commission_type,settlement_basis,weekly_weekday,effective_from,"
            "slab1_min_price,slab1_max_price,slab1_commission_percent,"
            "slab2_min_price,slab2_max_price,slab2_commission_percent\n"
            "flipkart,electronics,tiered,weekly,5,2025-01-01,500,,5,0,500,10\n"
        )
        _, drafts = self.parser.parse_csv(csv_text)
        card = drafts[0].card

        assert card.commission_type == CommissionType.TIERED
        assert [(s.min_price, s.max_price) for s in card.slabs] == [
            (Decimal("0"), Decimal("500")), (Decimal("500"), None)
        ]
        assert card.commission_percent is None

    def test_tiered_without_slabs(self):
        csv_text = (
            "platform_id,category_id,commission_type,settlement_basis,t_plus_days,effective_from\n"
            "flipkart,electronics,tiered,t_plus,10,2025-01-01\n"
        )
        _, drafts = self.parser.parse_csv(csv_text)
        assert drafts[0].errors == ["Tiered commission requires at least one slab."]

    def test_structured_layout(self):
        slabs = json.dumps([{"min_price": 0, "max_price": 500, "commission_percent": 10},
                            {"min_price": 500, "max_price": None, "commission_percent": 5}])
        fees = json.dumps([{"fee_code": "fixed", "fee_type": "amount", "fee_value": 20},
                           {"code": "collection", "type": "percent", "value": 1.5}])
        csv_text = (
            "platform_id,category_id,commission_type,settlement_basis,bi_weekly_weekday,bi_weekly_which,"
            "effective_from,slabs_json,fees_json\n"
            f"flipkart,electronics,tiered,bi-weekly,1,Second,2025-01-01,\"{slabs.replace(chr(34), chr(34) * 2)}\","
            f"\"{fees.replace(chr(34), chr(34) * 2)}\"\n"
        )
        layout, drafts = self.parser.parse_csv(csv_text)
        card = drafts[0].card

        assert layout == CsvLayout.STRUCTURED
        assert drafts[0].errors == []
        assert len(card.slabs) == 2
        assert {f.fee_code for f in card.fees} == {"fixed", "collection"}
        assert card.settlement.basis == SettlementBasis.BI_WEEKLY
        assert card.settlement.bi_weekly_which == "second"

    def test_structured_malformed_json(self):
        csv_text = (
            "platform_id,category_id,commission_type,commission_percent,settlement_basis,t_plus_days,"
            "effective_from,fees_json\n"
            "amazon,apparel,flat,15,t_plus,7,2025-01-01,[not json\n"
        )
        _, drafts = self.parser.parse_csv(csv_text)
        assert "fees_json: malformed JSON" in drafts[0].errors

    def test_duplicate_fee_pair_rejected(self):
        payload = self._payload(fees=[
            {"fee_code": "shipping", "fee_type": "amount", "fee_value": 40},
            {"fee_code": "shipping", "fee_type": "amount", "fee_value": 50},
        ])
        card, errors = self.parser.parse_payload(payload)

        assert card is None
        assert "Duplicate fee shipping (amount)" in errors

    def test_unknown_fee_code_rejected(self):
        _, errors = self.parser.parse_payload(self._payload(fees=[
            {"fee_code": "marketing", "fee_type": "amount", "fee_value": 5}
        ]))
        assert any("Unknown fee code 'marketing'" in error for error in errors)

    def test_effective_to_must_follow_from(self):
        _, errors = self.parser.parse_payload(self._payload(effective_to="2025-01-01"))
        assert "effective_to must be after effective_from" in errors

    def test_unknown_commission_type(self):
        _, errors = self.parser.parse_payload(self._payload(commission_type="banded"))
        assert "Unknown commission_type 'banded' (use flat or tiered)" in errors

    def test_monthly_day_out_of_range(self):
        _, errors = self.parser.parse_payload(self._payload(settlement_basis="monthly", monthly_day="32"))
        assert any(error.startswith("monthly_day must be 1-31 or eom") for error in errors)

    def test_payload_round_trip_of_card_dict(self):
        card, errors = self.parser.parse_payload(self._payload())
        again, errors_again = self.parser.parse_payload(card.to_dict())

        assert errors == [] and errors_again == []
        assert again == card

    def test_blank_lines_skipped_but_counted(self):
        _, drafts = self.parser.parse_csv(flat_csv(AMAZON_ROW, ",,,,", AMAZON_ROW))
        assert [draft.row for draft in drafts] == [2, 4]

    def test_empty_file_rejected(self):
        with pytest.raises(ValueError):
            self.parser.parse_csv("")

    def test_extra_decimal_places_rejected(self):
        card, errors = self.parser.parse_payload(self._payload(
            commission_percent="15.12345",
            fees=[{"fee_code": "shipping", "fee_type": "amount", "fee_value": "40.1234"}],
        ))

        assert card is None
        assert "commission_percent must have at most 3 decimal places" in errors
        assert "fees_json[1].fee_value must have at most 3 decimal places" in errors

    def test_trailing_zeros_do_not_count_as_places(self):
        card, errors = self.parser.parse_payload(self._payload(commission_percent="15.1230000", gst_percent="18.000"))

        assert errors == []
        assert card.commission_percent == Decimal("15.123")

    def test_settlement_days_bounded(self):
        _, errors = self.parser.parse_payload(self._payload(t_plus_days=3000000, grace_days=366))

        assert "t_plus_days must be between 0 and 365" in errors
        assert "grace_days must be between 0 and 365" in errors

    def test_prices_bounded_by_storage(self):
        _, errors = self.parser.parse_payload(self._payload(global_max_price="12345678901234"))
        assert "global_max_price must be between 0 and 9999999999.99" in errors

    def test_multiline_cell_keeps_line_numbers(self):
        csv_text = (
            "platform_id,category_id,commission_type,commission_percent,settlement_basis,t_plus_days,"
            "effective_from,fees_json\n"
            "amazon,apparel,flat,15,t_plus,7,2025-01-01,\"[\n"
            "{\"\"fee_code\"\": \"\"fixed\"\", \"\"fee_type\"\": \"\"amount\"\", \"\"fee_value\"\": 20}\n"
            "]\"\n"
            "myntra,apparel,flat,12,t_plus,7,2025-01-01,\n"
        )
        _, drafts = self.parser.parse_csv(csv_text)

        assert [draft.row for draft in drafts] == [2, 5]
        assert all(draft.is_valid for draft in drafts)
        assert drafts[0].card.fees[0].fee_code == "fixed"

    @staticmethod
    def _payload(**overrides):
        payload = {
            "platform_id": "amazon",
            "category_id": "apparel",
            "commission_type": "flat",
            "commission_percent": 15,
            "settlement_basis": "t_plus",
            "t_plus_days": 7,
            "effective_from": "2025-01-01",
            "fees": [],
        }
        payload.update(overrides)
        return payload


class TestTemplate:

    def test_flattened_template_parses_cleanly(self):
        parser = RateCardRowParser()
        layout, drafts = parser.parse_csv(build_template_csv(CsvLayout.FLATTENED))

        assert layout == CsvLayout.FLATTENED
        assert [draft.errors for draft in drafts] == [[], []]
        assert drafts[1].card.commission_type == CommissionType.TIERED

    def test_structured_template_parses_cleanly(self):
        layout, drafts = RateCardRowParser().parse_csv(build_template_csv(CsvLayout.STRUCTURED))

        assert layout == CsvLayout.STRUCTURED
        assert all(draft.is_valid for draft in drafts)

    def test_flattened_columns_cover_every_fee_code(self):
        columns = flattened_columns(max_slabs=2)
        assert "fee_storage_value" in columns
        assert "slab2_commission_percent" in columns
        assert "slab3_min_price" not in columns
