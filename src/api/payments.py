"""
Payments blueprint.

Records the outcome of transfers made outside the payout processor
(e.g. from the wallet UI) and closes payments that will not be paid.
"""

from flask import Blueprint, jsonify

from .utils import MAX_NOTES_LENGTH, get_engine, json_body, require_api_key

payments_bp = Blueprint("payments", __name__)


@payments_bp.route("/payments/<payment_id>", methods=["GET"])
@require_api_key
def get_payment(payment_id):
    return jsonify(get_engine().ledger.get(payment_id).to_dict())


@payments_bp.route("/payments/<payment_id>/payout", methods=["POST"])
@require_api_key
def record_payout(payment_id):
    """
    Mark a payment PAID with its confirmed transfer.

    Request body:
    {
        "transaction_hash": "0x...",
        "block_number": 12345
    }

    Returns:
        The paid payment. 409 if it was already paid or failed;
        the stored hash and block are left untouched.
    """
    data = json_body(
        {"transaction_hash": str, "block_number": int},
        max_lengths={"transaction_hash": 66},
    )
    payment = get_engine().record_payout(payment_id, data["transaction_hash"], data["block_number"])
    return jsonify(payment.to_dict())


@payments_bp.route("/payments/<payment_id>/fail", methods=["POST"])
@require_api_key
def mark_failed(payment_id):
    """
    Close a PENDING payment as FAILED.

    Request body:
    {
        "reason": "Recipient wallet unreachable"
    }
    """
    data = json_body({"reason": str}, max_lengths={"reason": MAX_NOTES_LENGTH})
    payment = get_engine().mark_payment_failed(payment_id, data["reason"])
    return jsonify(payment.to_dict())
