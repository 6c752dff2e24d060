"""
Shared utilities for the Punto Settlement API.

Common decorators, validation helpers and error mapping used across all
API blueprints.
"""

import secrets
from functools import wraps
from typing import Any

from flask import current_app, jsonify, request

from settlement_exceptions import (
    ChainRejectionError,
    DuplicateError,
    ExternalServiceError,
    NotFoundError,
    SettlementError,
    StateConflictError,
    ValidationError,
)

# Extension key the engine is registered under
ENGINE_KEY = "punto_engine"

MAX_CONTENT_LENGTH = 100_000
MAX_TITLE_LENGTH = 300
MAX_NOTES_LENGTH = 5_000
MAX_REFERENCE_LENGTH = 128


# ============================================================
# Engine Access
# ============================================================

def get_engine():
    """The SettlementEngine bound to the current app."""
    return current_app.extensions[ENGINE_KEY]


# ============================================================
# Validation Utilities
# ============================================================

def _type_name(expected) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _is_type(value: Any, expected) -> bool:
    # JSON true/false must not pass as integers
    if isinstance(value, bool) and bool not in (expected if isinstance(expected, tuple) else (expected,)):
        return False
    return isinstance(value, expected)


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type],
    optional_fields: dict[str, type] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data or data[field_name] is None:
            return False, f"Missing required field: {field_name}"
        if not _is_type(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    for field_name, expected_type in (optional_fields or {}).items():
        if data.get(field_name) is not None and not _is_type(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    for field_name, max_len in (max_lengths or {}).items():
        if isinstance(data.get(field_name), str) and len(data[field_name]) > max_len:
            return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def json_body(required_fields, optional_fields=None, max_lengths=None) -> dict[str, Any]:
    """
    Parse and validate the request body.

    Raises:
        ValidationError: Body missing, not JSON, or failing the schema
    """
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("Request body must be JSON")
    is_valid, error = validate_json_schema(data, required_fields, optional_fields, max_lengths)
    if not is_valid:
        raise ValidationError(error)
    return data


# ============================================================
# Authentication
# ============================================================

def require_api_key(f):
    """Decorator to require API key authentication."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        settings = get_engine().settings
        if not settings.require_auth:
            return f(*args, **kwargs)

        provided_key = request.headers.get('X-API-Key')

        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header"
            }), 401

        if not settings.api_key:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set PUNTO_API_KEY environment variable"
            }), 503

        if not secrets.compare_digest(provided_key, settings.api_key):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function


# ============================================================
# Error Mapping
# ============================================================

# Most specific first
ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (StateConflictError, 409),
    (ChainRejectionError, 422),
    (ExternalServiceError, 502),
)


def status_for(error: SettlementError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def error_response(error: SettlementError):
    """JSON body and status code for a settlement error."""
    body = error.to_dict()
    # Causes can carry driver internals
    body.pop("cause", None)
    return jsonify(body), status_for(error)
