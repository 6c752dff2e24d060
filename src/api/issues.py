"""
Issue settlement blueprint.

This blueprint handles:
- The pending payout queue of an issue
- Founder and editor stipends
- Single payout steps from the issue's treasury
- Funding status and treasury balance refresh
"""

from flask import Blueprint, jsonify

from .utils import MAX_REFERENCE_LENGTH, get_engine, json_body, require_api_key

issues_bp = Blueprint("issues", __name__)


@issues_bp.route("/issues/<issue_id>/payments/pending", methods=["GET"])
@require_api_key
def list_pending_payments(issue_id):
    """
    Get the payout queue of an issue, oldest first.

    Returns:
        Pending payments with their count and total
    """
    payments = get_engine().list_pending_payments(issue_id)
    return jsonify({
        "issue_id": issue_id,
        "count": len(payments),
        "total": sum(p.amount for p in payments),
        "payments": [p.to_dict() for p in payments],
    })


@issues_bp.route("/issues/<issue_id>/stipends", methods=["POST"])
@require_api_key
def grant_stipend(issue_id):
    """
    Add a founder or editor stipend to an issue.

    Request body:
    {
        "recipient": "0x... wallet address or user id",
        "role": "FOUNDER" | "EDITOR",
        "amount": 5000
    }
    """
    data = json_body(
        {"recipient": str, "role": str, "amount": int},
        max_lengths={"recipient": MAX_REFERENCE_LENGTH, "role": 16},
    )
    payment = get_engine().grant_stipend(issue_id, data["recipient"], data["role"], data["amount"])
    return jsonify(payment.to_dict()), 201


@issues_bp.route("/issues/<issue_id>/payouts/next", methods=["POST"])
@require_api_key
def process_next_payout(issue_id):
    """
    Pay the head of the issue's queue and wait for confirmation.

    Returns:
        The confirmed payout, or ``{"paid": null}`` when nothing is pending.
        400 if the issue treasury is not the configured signer,
        409 if another payout is in flight or an earlier one is unresolved,
        422 if the signer declined or the transfer reverted.
    """
    result = get_engine().process_next_payout(issue_id)
    if result is None:
        return jsonify({"issue_id": issue_id, "paid": None, "message": "No pending payments"})
    return jsonify({"issue_id": issue_id, "paid": result.to_dict()})


@issues_bp.route("/issues/<issue_id>/funding", methods=["GET"])
@require_api_key
def get_funding_status(issue_id):
    """Required funding, publish threshold, shortfall and readiness."""
    return jsonify(get_engine().get_funding_status(issue_id).to_dict())


@issues_bp.route("/issues/<issue_id>/balance/refresh", methods=["POST"])
@require_api_key
def refresh_balance(issue_id):
    """Re-read the treasury balance from chain and return the new funding status."""
    return jsonify(get_engine().refresh_balance(issue_id).to_dict())
