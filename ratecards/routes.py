"""
Flask routes for the rate card API

Provides endpoints for:
- Rate card listing, creation and archiving
- CSV bulk import (template, parse/classify, import)
- Expected payout calculation and reconciliation against settlements
- Expected settlement date scheduling
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import Blueprint, Response, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .csv_parser import RateCardRowParser, CsvLayout, build_template_csv
from .database import get_db_service
from .errors import (
    RateCardAPIError, RateCardConflictError, ErrorCode, raise_validation_error, raise_not_found_error
)
from .import_classifier import RateCardImportClassifier, format_label
from .models import CommissionType, CardStatus, MAX_PRICE, to_decimal
from .payout_calculator import PayoutCalculator, PayoutErrorKind, reconcile, round_money
from .resolver import RateCardResolver
from .settlement_scheduler import SettlementScheduler, SettlementDateOutOfRange

bp = Blueprint("rate_cards", __name__)
logger = logging.getLogger(__name__)

PAYOUT_REQUIRED_FIELDS = ('mrp', 'order_id', 'marketplace', 'category', 'date', 'actual_settlement_amount')


def success_response(data: Any = None, message: str = "Success", code: int = 200) -> tuple:
    """Standard success response format"""
    response = {"success": True, "message": message}
    if data is not None:
        response["data"] = data
    return jsonify(response), code


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise_validation_error("JSON request body required", error_code=ErrorCode.VALIDATION_MISSING_FIELD)
    return data


def _iso_date(data: Dict[str, Any], field: str, required: bool = True) -> Optional[date]:
    value = data.get(field)
    if value in (None, ''):
        if required:
            raise_validation_error(f"{field} is required", field=field,
                                   error_code=ErrorCode.VALIDATION_MISSING_FIELD)
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise_validation_error(f"{field} must be a date (YYYY-MM-DD)", field=field, value=value)


def _amount(data: Dict[str, Any], field: str) -> Decimal:
    try:
        value = to_decimal(data.get(field))
    except ValueError:
        value = None
    if value is None:
        raise_validation_error(f"{field} must be a number", field=field, value=data.get(field),
                               error_code=ErrorCode.VALIDATION_INVALID_AMOUNT)
    return value


def _parser() -> RateCardRowParser:
    config = current_app.config
    return RateCardRowParser(
        max_flattened_slabs=config.get('MAX_FLATTENED_SLABS', 5),
        default_gst_percent=config.get('DEFAULT_GST_PERCENT', 18),
        default_tcs_percent=config.get('DEFAULT_TCS_PERCENT', 1),
    )


def _classifier() -> RateCardImportClassifier:
    return RateCardImportClassifier(get_db_service(), _parser())


def _calculator() -> PayoutCalculator:
    return PayoutCalculator(include_tcs=current_app.config.get('INCLUDE_TCS_IN_PAYOUT', False))


def _settlement_date(dispatch_date: date, card) -> date:
    try:
        return SettlementScheduler().schedule(dispatch_date, card.settlement)
    except SettlementDateOutOfRange as exc:
        raise_validation_error(str(exc), field="dispatch_date", value=dispatch_date.isoformat(),
                               error_code=ErrorCode.VALIDATION_OUT_OF_RANGE)


def _database_error(action: str, exc: Exception):
    logger.error(f"Database error while {action}: {exc}", exc_info=True)
    raise RateCardAPIError(
        error_code=ErrorCode.SYSTEM_DATABASE_ERROR,
        message=f"Database error while {action}",
        http_status=500
    )


# === RATE CARDS ===

@bp.route("/rate-cards", methods=["GET"])
def list_rate_cards():
    """
    List rate cards with their status and aggregate metrics

    Query:
        platform_id, category_id: Optional filters
        status: Optional status filter (active, upcoming, expired, archived)
    """
    today = date.today()
    status_filter = request.args.get("status")
    try:
        cards = get_db_service().list_rate_cards(
            platform_id=request.args.get("platform_id"),
            category_id=request.args.get("category_id"),
        )
    except SQLAlchemyError as exc:
        _database_error("listing rate cards", exc)

    items = []
    metrics = {status.value: 0 for status in CardStatus}
    flat_percents = []
    for card in cards:
        status = card.status(today)
        metrics[status.value] += 1
        if card.commission_type == CommissionType.FLAT and not card.archived and card.commission_percent is not None:
            flat_percents.append(card.commission_percent)
        if status_filter and status.value != status_filter:
            continue
        item = card.to_dict()
        item["status"] = status.value
        item["label"] = format_label(card.platform_id, card.category_id)
        items.append(item)

    metrics["total"] = len(cards)
    metrics["flat_count"] = len(flat_percents)
    metrics["avg_flat_commission"] = (
        float(round_money(sum(flat_percents) / len(flat_percents))) if flat_percents else None
    )
    return success_response({"rate_cards": items, "metrics": metrics})


@bp.route("/rate-cards", methods=["POST"])
def create_rate_card():
    """
    Create a single rate card

    Body:
        Rate card fields (same shape as an import payload)
        confirm_overlap: Accept overlap with a live card of different structure

    Returns:
        201: Card created
        400: Validation errors
        409: Exact duplicate, or overlap without confirmation
    """
    data = _json_body()
    card, errors = _parser().parse_payload(data)
    if errors:
        raise RateCardAPIError(
            error_code=ErrorCode.VALIDATION_INVALID_RATE_CARD,
            message="; ".join(errors),
            details={"errors": errors},
            http_status=400
        )

    try:
        saved = get_db_service().insert_rate_card(card, allow_overlap=bool(data.get("confirm_overlap")))
    except RateCardConflictError as exc:
        raise RateCardAPIError(
            error_code=exc.error_code,
            message=exc.message,
            details={"existing_id": exc.existing_id},
            http_status=409
        )
    except SQLAlchemyError as exc:
        _database_error("creating a rate card", exc)

    return success_response(saved.to_dict(), "Rate card created", 201)


@bp.route("/rate-cards/<rate_card_id>", methods=["GET"])
def get_rate_card(rate_card_id):
    card = get_db_service().get_rate_card(rate_card_id)
    if card is None:
        raise_not_found_error("Rate card", rate_card_id)
    data = card.to_dict()
    data["status"] = card.status(date.today()).value
    return success_response(data)


@bp.route("/rate-cards/<rate_card_id>/archive", methods=["POST"])
def archive_rate_card(rate_card_id):
    """Archive a rate card; archived cards are ignored by resolution and imports."""
    card = get_db_service().archive_rate_card(rate_card_id)
    if card is None:
        raise_not_found_error("Rate card", rate_card_id)
    return success_response(card.to_dict(), "Rate card archived")


# === BULK IMPORT ===

@bp.route("/rate-cards/import/template", methods=["GET"])
def download_template():
    """
    Download a CSV template

    Query:
        layout: flattened (default) or structured
    """
    raw_layout = request.args.get("layout", CsvLayout.FLATTENED.value)
    try:
        layout = CsvLayout(raw_layout)
    except ValueError:
        raise_validation_error("layout must be flattened or structured", field="layout", value=raw_layout)

    csv_text = build_template_csv(layout, current_app.config.get('MAX_FLATTENED_SLABS', 5))
    return Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=rate_cards_{layout.value}_template.csv"}
    )


@bp.route("/rate-cards/import/parse", methods=["POST"])
def parse_import():
    """
    Parse and classify an uploaded CSV

    Body (multipart):
        file: CSV file in the flattened or structured layout

    Returns:
        200: {summary: {total, valid, similar, duplicate, error}, rows: [...]}
        400: Missing or unreadable file
    """
    upload = request.files.get("file")
    if upload is not None:
        raw = upload.read()
        filename = upload.filename
    elif request.mimetype == "text/csv":
        raw = request.get_data()
        filename = None
    else:
        raise_validation_error("CSV file required (multipart field 'file')", field="file",
                               error_code=ErrorCode.VALIDATION_MISSING_FIELD)

    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise_validation_error("CSV file must be UTF-8 encoded", field="file")

    try:
        report = _classifier().parse_upload(text)
    except ValueError as exc:
        raise_validation_error(str(exc), field="file")
    except SQLAlchemyError as exc:
        _database_error("classifying the upload", exc)

    logger.info(f"Parsed upload {filename or '<body>'}: {report.summary}")
    return success_response(report.to_dict(), "File parsed")


@bp.route("/rate-cards/import", methods=["POST"])
def import_rate_cards():
    """
    Import parsed rows

    Body:
        rows: Rows as returned by the parse endpoint ({row, status, payload})
        include_similar: Also import rows flagged similar

    Returns:
        200: {summary: {inserted, skipped}, results: [...]}
    """
    data = _json_body()
    rows = data.get("rows")
    if not isinstance(rows, list):
        raise_validation_error("rows must be a list", field="rows")

    report = _classifier().import_rows(rows, include_similar=bool(data.get("include_similar")))
    return success_response(report.to_dict(), "Import finished")


# === PAYOUTS & SETTLEMENTS ===

@bp.route("/payouts/calculate", methods=["POST"])
def calculate_payout():
    """
    Compute the expected payout of an order and compare it with the settled amount

    Body:
        mrp, order_id, marketplace, category, date, actual_settlement_amount
        dispatch_date: Optional, adds expected_settlement_date when a card applies

    Returns:
        200: expected_payout, delta, mismatch_flag, calculation_breakdown, rate_card_found, rate_card_id
        400: Missing or invalid fields
        422: The resolved card cannot price this order
    """
    data = _json_body()
    missing = [name for name in PAYOUT_REQUIRED_FIELDS if data.get(name) in (None, '')]
    if missing:
        raise RateCardAPIError(
            error_code=ErrorCode.VALIDATION_MISSING_FIELD,
            message=f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
            http_status=400
        )

    mrp = _amount(data, "mrp")
    actual = _amount(data, "actual_settlement_amount")
    if mrp <= 0:
        raise_validation_error("mrp must be greater than 0", field="mrp", value=mrp,
                               error_code=ErrorCode.VALIDATION_INVALID_AMOUNT)
    if actual < 0:
        raise_validation_error("actual_settlement_amount must be 0 or greater",
                               field="actual_settlement_amount", value=actual,
                               error_code=ErrorCode.VALIDATION_INVALID_AMOUNT)
    for name, value in (("mrp", mrp), ("actual_settlement_amount", actual)):
        if value > MAX_PRICE:
            raise_validation_error(f"{name} must be {MAX_PRICE} or less", field=name, value=value,
                                   error_code=ErrorCode.VALIDATION_OUT_OF_RANGE)
    order_date = _iso_date(data, "date")
    dispatch_date = _iso_date(data, "dispatch_date", required=False)

    db = get_db_service()
    resolution = RateCardResolver(db).resolve(data["marketplace"], data["category"], order_date, mrp)
    result = _calculator().calculate(mrp, resolution.rate_card)

    if not result.ok:
        error_code = (ErrorCode.RATE_CARD_PRICE_OUT_OF_RANGE
                      if result.error == PayoutErrorKind.PRICE_OUT_OF_RANGE
                      else ErrorCode.RATE_CARD_NO_MATCHING_SLAB)
        raise RateCardAPIError(
            error_code=error_code,
            message=result.message,
            details={"kind": result.error.value, "rate_card_id": resolution.rate_card.id},
            http_status=422
        )

    breakdown = result.breakdown
    check = reconcile(breakdown.expected_payout, actual)
    response = {
        "order_id": str(data["order_id"]),
        "marketplace": str(data["marketplace"]),
        "category": str(data["category"]),
        "mrp": float(mrp),
        "actual_settlement_amount": float(actual),
        "expected_payout": float(check.expected_payout),
        "delta": float(check.delta),
        "mismatch_flag": check.mismatch_flag,
        "calculation_breakdown": breakdown.to_dict(),
        "rate_card_found": breakdown.rate_card_found,
        "rate_card_id": breakdown.rate_card_id,
    }
    if not resolution.found and resolution.excluded_by_price:
        response["note"] = "Rate cards exist for this date but none accepts this price"

    if dispatch_date and resolution.found:
        settlement_date = _settlement_date(dispatch_date, resolution.rate_card)
        response["expected_settlement_date"] = settlement_date.isoformat()

    try:
        response["reconciliation_id"] = db.record_reconciliation({
            "order_id": response["order_id"],
            "marketplace": response["marketplace"],
            "category": response["category"],
            "order_date": order_date,
            "mrp": mrp,
            "actual_settlement_amount": actual,
            "expected_payout": check.expected_payout,
            "delta": check.delta,
            "mismatch_flag": check.mismatch_flag,
            "reco_status": "mismatch" if check.mismatch_flag else "matched",
            "rate_card_id": breakdown.rate_card_id,
            "breakdown": response["calculation_breakdown"],
        })
    except SQLAlchemyError as exc:
        _database_error("recording the reconciliation", exc)

    return success_response(response, "Payout calculated")


@bp.route("/settlements/expected-date", methods=["POST"])
def expected_settlement_date():
    """
    Compute the expected settlement date of a dispatched order

    Body:
        dispatch_date: Reference date
        rate_card_id: Card to use; or marketplace, category, date (+ optional price) to resolve one
    """
    data = _json_body()
    dispatch_date = _iso_date(data, "dispatch_date")
    db = get_db_service()

    if data.get("rate_card_id"):
        card = db.get_rate_card(str(data["rate_card_id"]))
        if card is None:
            raise_not_found_error("Rate card", str(data["rate_card_id"]))
    else:
        missing = [name for name in ("marketplace", "category") if not data.get(name)]
        if missing:
            raise RateCardAPIError(
                error_code=ErrorCode.VALIDATION_MISSING_FIELD,
                message=f"rate_card_id or {' and '.join(missing)} required",
                details={"missing": missing},
                http_status=400
            )
        order_date = _iso_date(data, "date", required=False) or dispatch_date
        price = _amount(data, "price") if data.get("price") not in (None, '') else None
        resolution = RateCardResolver(db).resolve(data["marketplace"], data["category"], order_date, price)
        if not resolution.found:
            raise_not_found_error("Rate card")
        card = resolution.rate_card

    settlement_date = _settlement_date(dispatch_date, card)
    return success_response({
        "rate_card_id": card.id,
        "settlement_basis": card.settlement.basis.value,
        "grace_days": card.settlement.grace_days,
        "dispatch_date": dispatch_date.isoformat(),
        "expected_settlement_date": settlement_date.isoformat(),
    })
