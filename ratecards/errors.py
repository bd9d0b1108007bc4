"""
Error handling with explicit error codes and traceability.
"""

import logging
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Union
from flask import jsonify, request

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """Standardized API error codes."""

    # Validation errors (2000-2099)
    VALIDATION_MISSING_FIELD = "VAL_2001"
    VALIDATION_INVALID_FORMAT = "VAL_2002"
    VALIDATION_OUT_OF_RANGE = "VAL_2003"
    VALIDATION_INVALID_AMOUNT = "VAL_2004"
    VALIDATION_INVALID_RATE_CARD = "VAL_2005"

    # Resource errors (3000-3099)
    RESOURCE_NOT_FOUND = "RES_3001"
    RESOURCE_PAYLOAD_TOO_LARGE = "RES_3005"

    # Rate card domain errors (4000-4099)
    RATE_CARD_PRICE_OUT_OF_RANGE = "RCD_4001"
    RATE_CARD_NO_MATCHING_SLAB = "RCD_4002"
    RATE_CARD_DUPLICATE = "RCD_4003"
    RATE_CARD_OVERLAP_UNCONFIRMED = "RCD_4004"

    # System errors (9000-9099)
    SYSTEM_INTERNAL_ERROR = "SYS_9001"
    SYSTEM_DATABASE_ERROR = "SYS_9002"
    SYSTEM_METHOD_NOT_ALLOWED = "SYS_9003"


class RateCardAPIError(Exception):
    """API error carrying a code, an HTTP status and a traceable id."""

    def __init__(self, error_code: ErrorCode, message: str,
                 details: Optional[Dict[str, Any]] = None,
                 http_status: int = 400):
        """
        Initialize an API error.

        Args:
            error_code: Standardized error code
            message: Message shown to the caller
            details: Additional details
            http_status: HTTP status code
        """
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.http_status = http_status
        self.error_id = secrets.token_hex(8)
        self.timestamp = datetime.now(timezone.utc)

        super().__init__(f"{error_code.value}: {message}")


class RateCardConflictError(Exception):
    """Raised by the store when an insert would duplicate or overlap an existing card."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.RATE_CARD_DUPLICATE,
                 existing_id: Optional[str] = None):
        self.message = message
        self.error_code = error_code
        self.existing_id = existing_id
        super().__init__(message)


class ErrorHandler:
    """Centralized error formatting."""

    @staticmethod
    def format_error_response(error: Union[RateCardAPIError, Exception],
                              request_context: Optional[Dict[str, Any]] = None) -> tuple:
        """
        Format a standardized error response.

        Args:
            error: Exception to format
            request_context: Request context for the logs

        Returns:
            Tuple (response_dict, http_status)
        """
        if isinstance(error, RateCardAPIError):
            response = {
                'success': False,
                'error': {
                    'code': error.error_code.value,
                    'message': error.message,
                    'error_id': error.error_id,
                    'timestamp': error.timestamp.isoformat()
                }
            }

            if error.details:
                response['error']['details'] = error.details

            log = logger.error if error.http_status >= 500 else logger.warning
            log(
                f"API Error [{error.error_id}]: {error.error_code.value} - {error.message}",
                extra={
                    'error_code': error.error_code.value,
                    'error_id': error.error_id,
                    'details': error.details,
                    'request_context': request_context
                }
            )

            return response, error.http_status

        error_id = secrets.token_hex(8)

        response = {
            'success': False,
            'error': {
                'code': ErrorCode.SYSTEM_INTERNAL_ERROR.value,
                'message': 'An internal error occurred',
                'error_id': error_id,
                'timestamp': datetime.now(timezone.utc).isoformat()
            }
        }

        logger.error(
            f"Unhandled Error [{error_id}]: {type(error).__name__} - {str(error)}",
            exc_info=True,
            extra={
                'error_id': error_id,
                'error_type': type(error).__name__,
                'request_context': request_context
            }
        )

        return response, 500

    @staticmethod
    def get_request_context() -> Dict[str, Any]:
        """Collect request context for the logs."""
        try:
            return {
                'method': request.method,
                'path': request.path,
                'remote_addr': request.remote_addr,
                'endpoint': request.endpoint,
                'args': dict(request.args),
                'content_length': request.content_length
            }
        except RuntimeError:
            return {'context': 'unavailable'}


def _api_error_response(api_error: RateCardAPIError):
    context = ErrorHandler.get_request_context()
    response, status = ErrorHandler.format_error_response(api_error, context)
    return jsonify(response), status


def setup_error_handlers(app):
    """Register error handlers on the Flask application."""

    @app.errorhandler(RateCardAPIError)
    def handle_rate_card_api_error(error: RateCardAPIError):
        return _api_error_response(error)

    @app.errorhandler(400)
    def handle_bad_request(error):
        return _api_error_response(RateCardAPIError(
            error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
            message="Invalid request",
            details={'original_error': str(error)},
            http_status=400
        ))

    @app.errorhandler(404)
    def handle_not_found(error):
        return _api_error_response(RateCardAPIError(
            error_code=ErrorCode.RESOURCE_NOT_FOUND,
            message="Resource not found",
            details={'path': request.path},
            http_status=404
        ))

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return _api_error_response(RateCardAPIError(
            error_code=ErrorCode.SYSTEM_METHOD_NOT_ALLOWED,
            message="Method not allowed",
            http_status=405
        ))

    @app.errorhandler(413)
    def handle_payload_too_large(error):
        return _api_error_response(RateCardAPIError(
            error_code=ErrorCode.RESOURCE_PAYLOAD_TOO_LARGE,
            message="Uploaded file is too large",
            details={'max_bytes': app.config.get('MAX_CONTENT_LENGTH')},
            http_status=413
        ))

    @app.errorhandler(500)
    def handle_internal_error(error):
        context = ErrorHandler.get_request_context()
        original = getattr(error, 'original_exception', None) or error
        response, status = ErrorHandler.format_error_response(original, context)
        return jsonify(response), status


def raise_validation_error(message: str, field: str = None, value: Any = None,
                           error_code: ErrorCode = ErrorCode.VALIDATION_INVALID_FORMAT):
    """Raise a validation error."""
    details = {}
    if field:
        details['field'] = field
    if value is not None:
        details['value'] = str(value)[:100]

    raise RateCardAPIError(
        error_code=error_code,
        message=message,
        details=details,
        http_status=400
    )


def raise_not_found_error(resource_type: str, resource_id: str = None):
    """Raise a not-found error."""
    message = f"{resource_type} not found"
    details = {'resource_type': resource_type}
    if resource_id:
        details['resource_id'] = resource_id

    raise RateCardAPIError(
        error_code=ErrorCode.RESOURCE_NOT_FOUND,
        message=message,
        details=details,
        http_status=404
    )
