"""
System blueprint: health and metrics endpoints.
"""

from urllib.parse import urlparse

from flask import Blueprint, jsonify

from monitoring import metrics

from .utils import get_engine

system_bp = Blueprint("system", __name__)


@system_bp.route("/health", methods=["GET"])
def health():
    """
    Liveness and store availability.

    Returns 503 when the Entity Store cannot be reached.
    """
    engine = get_engine()
    store_ok = engine.store.is_available()
    body = {
        "status": "healthy" if store_ok else "degraded",
        "store": engine.store.get_info(),
        "chain": {
            "rpc_host": "mock" if engine.settings.use_mock_chain else urlparse(engine.settings.chain_rpc_url).hostname,
            "token": engine.chain.token_address,
        },
    }
    return jsonify(body), 200 if store_ok else 503


@system_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    """Prometheus text exposition."""
    return metrics.to_prometheus(), 200, {"Content-Type": "text/plain; version=0.0.4; charset=utf-8"}
