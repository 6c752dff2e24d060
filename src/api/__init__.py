"""
Punto Settlement API Package.

Flask blueprints exposing the review, ledger, payout and funding
operations of a SettlementEngine.

Blueprints:
- submissions: Intake, lookup and review of submissions
- payments: Recording payouts and failures against payments
- issues: Pending queue, stipends, payout steps and funding status
- system: Health and Prometheus metrics
"""

import logging

from flask import Flask, jsonify

from api.issues import issues_bp
from api.payments import payments_bp
from api.submissions import submissions_bp
from api.system import system_bp
from api.utils import ENGINE_KEY, error_response
from monitoring import setup_request_logging
from settlement_exceptions import SettlementError

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (submissions_bp, ''),
    (payments_bp, ''),
    (issues_bp, ''),
    (system_bp, ''),
]


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app):
    """Map the settlement error taxonomy onto JSON responses."""

    @app.errorhandler(SettlementError)
    def handle_settlement_error(error: SettlementError):
        return error_response(error)

    @app.errorhandler(404)
    def handle_not_found(_error):
        return jsonify({"error": "not_found", "message": "Endpoint not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(_error):
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed"}), 405

    @app.errorhandler(500)
    def handle_internal_error(_error):
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def create_app(engine) -> Flask:
    """
    Create the Flask application around an assembled engine.

    Args:
        engine: SettlementEngine from engine.build_engine()
    """
    app = Flask("punto")
    app.config["JSON_SORT_KEYS"] = False
    app.extensions[ENGINE_KEY] = engine

    setup_request_logging(app)
    register_error_handlers(app)
    register_blueprints(app)

    if engine.settings.require_auth and not engine.settings.api_key:
        logger.warning("PUNTO_REQUIRE_AUTH is on but PUNTO_API_KEY is not set; protected routes will return 503")
    return app
