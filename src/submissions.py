"""
Punto Settlement - Submission State Machine

Intake and review of submissions against an issue's topics.

States:
    SUBMITTED -> UNDER_REVIEW -> ACCEPTED | REJECTED
    UNDER_REVIEW -> SUBMITTED (decide later, then reopen)
    SUBMITTED -> ACCEPTED | REJECTED

ACCEPTED and REJECTED are terminal. Every status write is a
compare-and-set on the status that was read, so two reviewers racing on
the same submission cannot both win.
"""

import logging

from entities import (
    APPROVALS,
    SUBMISSIONS,
    TOPICS,
    Approval,
    Submission,
    SubmissionStatus,
    Topic,
    TopicStatus,
    generate_id,
    utcnow_iso,
)
from monitoring import metrics
from payment_ledger import PaymentLedger
from settlement_exceptions import (
    AlreadyReviewedError,
    BountyLockedError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    SettlementError,
    StateConflictError,
    TopicFullError,
    ValidationError,
    storage_errors,
)
from storage import StorageBackend

logger = logging.getLogger(__name__)

S = SubmissionStatus

# Legal transitions; terminal states have none
TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    S.SUBMITTED: frozenset({S.UNDER_REVIEW, S.ACCEPTED, S.REJECTED}),
    S.UNDER_REVIEW: frozenset({S.SUBMITTED, S.ACCEPTED, S.REJECTED}),
    S.ACCEPTED: frozenset(),
    S.REJECTED: frozenset(),
}

# Statuses that occupy a topic slot
LIVE_STATUSES = [S.SUBMITTED.value, S.UNDER_REVIEW.value, S.ACCEPTED.value]

DECISION_ALIASES = {
    "ACCEPT": S.ACCEPTED,
    "APPROVE": S.ACCEPTED,
    "REJECT": S.REJECTED,
    "DECLINE": S.REJECTED,
    "DEFER": S.UNDER_REVIEW,
    "REOPEN": S.SUBMITTED,
}

MAX_CONTENT_LENGTH = 100_000
MAX_TITLE_LENGTH = 300


def parse_decision(decision) -> SubmissionStatus:
    """
    Map a reviewer decision to a target status.

    Accepts a SubmissionStatus, a status value ("ACCEPTED") or a verb
    ("accept", "reject", "defer").

    Raises:
        ValidationError: Unrecognized decision
    """
    if isinstance(decision, SubmissionStatus):
        return decision
    if isinstance(decision, str):
        key = decision.strip().upper()
        if key in DECISION_ALIASES:
            return DECISION_ALIASES[key]
        try:
            return SubmissionStatus(key)
        except ValueError:
            pass
    raise ValidationError(f"Unknown review decision: {decision!r}", field="decision")


def can_transition(from_state: SubmissionStatus, to_state: SubmissionStatus) -> bool:
    return to_state in TRANSITIONS[from_state]


class SubmissionStateMachine:
    """
    Drives submissions through review and triggers payment creation.

    Review actions are not serialized; the guarded update is the only
    concurrency control.
    """

    def __init__(self, store: StorageBackend, ledger: PaymentLedger):
        self.store = store
        self.ledger = ledger

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_submission(self, submission_id: str) -> Submission:
        with storage_errors("Load submission"):
            row = self.store.get(SUBMISSIONS, submission_id)
        if row is None:
            raise NotFoundError("Submission", submission_id)
        return Submission.from_dict(row)

    def get_topic(self, topic_id: str) -> Topic:
        with storage_errors("Load topic"):
            row = self.store.get(TOPICS, topic_id)
        if row is None:
            raise NotFoundError("Topic", topic_id)
        return Topic.from_dict(row)

    def list_for_topic(self, topic_id: str, statuses: list[str] | None = None) -> list[Submission]:
        filters = {"topic_id": topic_id}
        if statuses:
            filters["status"] = statuses
        with storage_errors("List submissions"):
            rows = self.store.find(SUBMISSIONS, filters, order_by=("submitted_at", "id"))
        return [Submission.from_dict(row) for row in rows]

    # =========================================================================
    # Intake
    # =========================================================================

    def create_submission(
        self,
        topic_id: str,
        author_id: str,
        content: str,
        title: str | None = None,
    ) -> Submission:
        """
        Submit a piece against an open topic.

        The topic's current bounty is snapshotted onto the submission and
        is what the author will be paid on acceptance.

        Raises:
            ValidationError: Empty or oversized content/title
            NotFoundError: Unknown topic
            StateConflictError: Topic is closed
            DuplicateError: Author already submitted to this topic
            TopicFullError: Every slot already holds a live submission
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Submission content is required", field="content")
        if len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Content exceeds {MAX_CONTENT_LENGTH} characters", field="content")
        if title is not None and len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Title exceeds {MAX_TITLE_LENGTH} characters", field="title")

        topic = self.get_topic(topic_id)
        if topic.status != TopicStatus.OPEN.value:
            raise StateConflictError(f"Topic {topic_id} is not accepting submissions", current_state=topic.status)

        with storage_errors("Check existing submissions"):
            previous = self.store.find(SUBMISSIONS, {"topic_id": topic_id, "author_id": author_id})
            live = self.store.count(SUBMISSIONS, {"topic_id": topic_id, "status": LIVE_STATUSES})

        if previous:
            raise DuplicateError(
                f"Author already submitted to topic {topic_id}", existing_id=previous[0]["id"]
            )
        if live >= topic.slots_needed:
            raise TopicFullError(
                f"Topic {topic_id} has no open slots ({live}/{topic.slots_needed})",
                current_state=topic.status,
                details={"topic_id": topic_id, "live": live, "slots_needed": topic.slots_needed},
            )

        submission = Submission(
            id=generate_id("sub"),
            topic_id=topic.id,
            issue_id=topic.issue_id,
            author_id=author_id,
            content=content,
            bounty_amount=topic.bounty_amount,
            title=(title or "").strip() or "Untitled",
        )
        with storage_errors("Create submission"):
            self.store.insert(SUBMISSIONS, submission.to_dict())

        metrics.increment("submissions_created_total")
        logger.info("Submission %s created for topic %s", submission.id, topic_id)
        return submission

    def reprice_topic(self, topic_id: str, bounty_amount: int) -> Topic:
        """
        Change a topic's bounty while nobody has submitted against it.

        Raises:
            ValidationError: Non-positive amount
            NotFoundError: Unknown topic
            BountyLockedError: Submissions exist, or the bounty changed concurrently
        """
        if not isinstance(bounty_amount, int) or isinstance(bounty_amount, bool) or bounty_amount <= 0:
            raise ValidationError("Bounty must be a positive integer", field="bounty_amount")

        topic = self.get_topic(topic_id)
        with storage_errors("Count submissions"):
            existing = self.store.count(SUBMISSIONS, {"topic_id": topic_id})
        if existing:
            raise BountyLockedError(
                f"Topic {topic_id} bounty is locked: {existing} submission(s) exist",
                current_state=str(topic.bounty_amount),
            )

        with storage_errors("Update topic bounty"):
            row = self.store.update_where(
                TOPICS, topic_id, {"bounty_amount": topic.bounty_amount}, {"bounty_amount": bounty_amount}
            )
        if row is None:
            latest = self.get_topic(topic_id)
            raise BountyLockedError(
                f"Topic {topic_id} bounty changed concurrently", current_state=str(latest.bounty_amount)
            )

        logger.info("Topic %s repriced %d -> %d", topic_id, topic.bounty_amount, bounty_amount)
        return Topic.from_dict(row)

    # =========================================================================
    # Review
    # =========================================================================

    def review(
        self,
        submission_id: str,
        decision,
        reviewer_id: str,
        notes: str | None = None,
    ) -> Submission:
        """
        Apply a reviewer's decision.

        On acceptance an approval record and the submission's payment are
        created after the status write. Their failure is logged for
        reconciliation and does not undo the acceptance.

        Args:
            submission_id: Submission to review
            decision: Target status or verb (see parse_decision)
            reviewer_id: User id of the reviewer
            notes: Optional reviewer notes kept on the approval record

        Returns:
            The submission as persisted after the decision

        Raises:
            ValidationError: Unknown decision or missing reviewer
            NotFoundError: Unknown submission
            AlreadyReviewedError: Submission already ACCEPTED or REJECTED
            InvalidTransitionError: Decision not reachable from the current state
        """
        target = parse_decision(decision)
        if not reviewer_id:
            raise ValidationError("Reviewer is required", field="reviewer_id")

        current = self.get_submission(submission_id)
        from_state = current.status_enum

        if from_state.is_terminal:
            raise AlreadyReviewedError(submission_id, from_state.value)
        if not can_transition(from_state, target):
            raise InvalidTransitionError(from_state.value, target.value)

        now = utcnow_iso()
        changes = {"status": target.value, "reviewed_by": reviewer_id, "reviewed_at": now}
        if target is S.ACCEPTED:
            changes["accepted_at"] = now

        with storage_errors("Update submission status"):
            row = self.store.update_where(SUBMISSIONS, submission_id, {"status": from_state.value}, changes)

        if row is None:
            latest = self.get_submission(submission_id)
            logger.info(
                "Review of %s lost race: %s -> %s, now %s",
                submission_id, from_state.value, target.value, latest.status,
            )
            if latest.status_enum.is_terminal:
                raise AlreadyReviewedError(submission_id, latest.status)
            raise StateConflictError(
                f"Submission {submission_id} changed during review", current_state=latest.status
            )

        submission = Submission.from_dict(row)
        metrics.increment("submissions_reviewed_total", labels={"decision": target.value})
        logger.info("Submission %s %s -> %s by %s", submission_id, from_state.value, target.value, reviewer_id)

        if target is S.ACCEPTED:
            self._record_approval(submission, reviewer_id, notes)
            self._create_payment(submission)

        return submission

    def _record_approval(self, submission: Submission, reviewer_id: str, notes: str | None) -> None:
        approval = Approval(
            id=generate_id("apr"),
            submission_id=submission.id,
            editor_id=reviewer_id,
            notes=notes,
        )
        try:
            with storage_errors("Record approval"):
                self.store.insert(APPROVALS, approval.to_dict())
        except SettlementError as e:
            logger.warning("Approval record for %s not written: %s", submission.id, e)

    def _create_payment(self, submission: Submission) -> None:
        try:
            self.ledger.create(submission)
        except DuplicateError:
            logger.info("Payment for %s already exists", submission.id)
        except SettlementError as e:
            metrics.increment("payment_creation_failures_total")
            logger.error(
                "Payment creation failed after accepting %s: %s",
                submission.id,
                e,
                extra={"submission_id": submission.id, "reconciliation_required": True},
            )
