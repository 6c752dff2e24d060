"""
Submission review blueprint.

This blueprint handles:
- Submission intake against a topic
- Submission lookup
- Editor review decisions (which create the payment on acceptance)
"""

from flask import Blueprint, jsonify

from .utils import (
    MAX_CONTENT_LENGTH,
    MAX_NOTES_LENGTH,
    MAX_REFERENCE_LENGTH,
    MAX_TITLE_LENGTH,
    get_engine,
    json_body,
    require_api_key,
)

submissions_bp = Blueprint("submissions", __name__)


@submissions_bp.route("/submissions", methods=["POST"])
@require_api_key
def create_submission():
    """
    Submit a piece to an open topic.

    Request body:
    {
        "topic_id": "top_...",
        "author": "0x... wallet address or user id",
        "content": "The piece",
        "title": "Optional title"
    }

    Returns:
        The created submission (201)
    """
    data = json_body(
        {"topic_id": str, "author": str, "content": str},
        optional_fields={"title": str},
        max_lengths={
            "topic_id": MAX_REFERENCE_LENGTH,
            "author": MAX_REFERENCE_LENGTH,
            "content": MAX_CONTENT_LENGTH,
            "title": MAX_TITLE_LENGTH,
        },
    )
    submission = get_engine().create_submission(
        data["topic_id"], data["author"], data["content"], title=data.get("title")
    )
    return jsonify(submission.to_dict()), 201


@submissions_bp.route("/submissions/<submission_id>", methods=["GET"])
@require_api_key
def get_submission(submission_id):
    """Get a submission with its payment, if one exists."""
    engine = get_engine()
    submission = engine.get_submission(submission_id)
    payment = engine.ledger.find_by_submission(submission_id)
    return jsonify({
        "submission": submission.to_dict(),
        "payment": payment.to_dict() if payment else None,
    })


@submissions_bp.route("/submissions/<submission_id>/review", methods=["POST"])
@require_api_key
def review_submission(submission_id):
    """
    Record an editor's decision on a submission.

    Request body:
    {
        "decision": "ACCEPTED" | "REJECTED" | "UNDER_REVIEW" | "SUBMITTED",
        "reviewer": "0x... wallet address or user id",
        "notes": "Optional notes"
    }

    Returns:
        The submission and, on acceptance, its payment.
        409 when the submission was already decided.
    """
    data = json_body(
        {"decision": str, "reviewer": str},
        optional_fields={"notes": str},
        max_lengths={"reviewer": MAX_REFERENCE_LENGTH, "notes": MAX_NOTES_LENGTH},
    )
    engine = get_engine()
    submission = engine.review_submission(
        submission_id, data["decision"], data["reviewer"], notes=data.get("notes")
    )
    payment = engine.ledger.find_by_submission(submission_id) if submission.accepted_at else None
    return jsonify({
        "submission": submission.to_dict(),
        "payment": payment.to_dict() if payment else None,
    })
