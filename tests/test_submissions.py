"""
Tests for the Submission State Machine (src/submissions.py)

Tests cover:
- Transition table
- Review decisions and their side effects
- Concurrent reviewers
- Best-effort payment creation after acceptance
- Intake rules and topic bounty lock
"""

import pytest

from entities import APPROVALS, PAYMENTS, SUBMISSIONS, TOPICS, SubmissionStatus
from monitoring import metrics
from settlement_exceptions import (
    AlreadyReviewedError,
    BountyLockedError,
    DuplicateError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
    TopicFullError,
    ValidationError,
)
from submissions import TRANSITIONS, can_transition, parse_decision

S = SubmissionStatus


class TestTransitionTable:
    """Tests for the legal transition table."""

    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[S.ACCEPTED] == frozenset()
        assert TRANSITIONS[S.REJECTED] == frozenset()

    def test_submitted_can_be_decided_or_deferred(self):
        assert can_transition(S.SUBMITTED, S.ACCEPTED)
        assert can_transition(S.SUBMITTED, S.REJECTED)
        assert can_transition(S.SUBMITTED, S.UNDER_REVIEW)
        assert not can_transition(S.SUBMITTED, S.SUBMITTED)

    def test_under_review_can_reopen(self):
        assert can_transition(S.UNDER_REVIEW, S.SUBMITTED)
        assert can_transition(S.UNDER_REVIEW, S.ACCEPTED)

    def test_parse_decision_accepts_verbs_and_values(self):
        assert parse_decision("accept") is S.ACCEPTED
        assert parse_decision("APPROVE") is S.ACCEPTED
        assert parse_decision("REJECTED") is S.REJECTED
        assert parse_decision("defer") is S.UNDER_REVIEW
        assert parse_decision(S.REJECTED) is S.REJECTED

    def test_parse_decision_rejects_unknown(self):
        with pytest.raises(ValidationError):
            parse_decision("maybe")


class TestReview:
    """Tests for review decisions."""

    @pytest.fixture
    def topic(self, make_topic):
        return make_topic(bounty_amount=5000, slots_needed=2)

    def test_accept_creates_pending_payment(self, engine, store, topic, submit, editor_a):
        """Should write the acceptance and exactly one PENDING payment."""
        submission = submit(topic)

        reviewed = engine.submissions.review(submission.id, "ACCEPTED", editor_a.id)

        assert reviewed.status == "ACCEPTED"
        assert reviewed.accepted_at is not None
        assert reviewed.reviewed_by == editor_a.id

        payments = store.find(PAYMENTS, {"submission_id": submission.id})
        assert len(payments) == 1
        assert payments[0]["status"] == "PENDING"
        assert payments[0]["amount"] == 5000
        assert payments[0]["recipient_id"] == submission.author_id
        assert payments[0]["role"] == "CONTRIBUTOR"

    def test_accept_writes_approval_record(self, engine, store, topic, submit, editor_a):
        submission = submit(topic)
        engine.submissions.review(submission.id, "ACCEPTED", editor_a.id, notes="Lovely")

        approvals = store.find(APPROVALS, {"submission_id": submission.id})
        assert len(approvals) == 1
        assert approvals[0]["editor_id"] == editor_a.id
        assert approvals[0]["decision"] == "APPROVE"
        assert approvals[0]["notes"] == "Lovely"

    def test_reject_has_no_payment(self, engine, store, topic, submit, editor_a):
        submission = submit(topic)
        reviewed = engine.submissions.review(submission.id, "REJECTED", editor_a.id)

        assert reviewed.status == "REJECTED"
        assert reviewed.accepted_at is None
        assert store.count(PAYMENTS) == 0

    def test_second_review_after_terminal_fails(self, engine, store, topic, submit, editor_a):
        """Should leave status and payment count unchanged."""
        submission = submit(topic)
        engine.submissions.review(submission.id, "ACCEPTED", editor_a.id)

        with pytest.raises(AlreadyReviewedError) as exc_info:
            engine.submissions.review(submission.id, "ACCEPTED", editor_a.id)

        assert exc_info.value.current_state == "ACCEPTED"
        assert store.get(SUBMISSIONS, submission.id)["status"] == "ACCEPTED"
        assert store.count(PAYMENTS) == 1

    def test_accept_then_reject_by_other_editor(self, engine, store, topic, submit, editor_a, editor_b):
        """Second editor's rejection fails; the acceptance and its single payment stand."""
        submission = submit(topic)
        engine.review_submission(submission.id, "ACCEPTED", editor_a.wallet_address)

        with pytest.raises(StateConflictError):
            engine.review_submission(submission.id, "REJECTED", editor_b.wallet_address)

        assert engine.get_submission(submission.id).status == "ACCEPTED"
        assert store.count(PAYMENTS, {"submission_id": submission.id}) == 1

    def test_defer_then_accept(self, engine, topic, submit, editor_a):
        submission = submit(topic)
        deferred = engine.submissions.review(submission.id, "UNDER_REVIEW", editor_a.id)
        assert deferred.status == "UNDER_REVIEW"

        accepted = engine.submissions.review(submission.id, "ACCEPTED", editor_a.id)
        assert accepted.status == "ACCEPTED"

    def test_same_state_transition_is_invalid(self, engine, topic, submit, editor_a):
        submission = submit(topic)
        with pytest.raises(InvalidTransitionError):
            engine.submissions.review(submission.id, "SUBMITTED", editor_a.id)

    def test_unknown_submission(self, engine, editor_a):
        with pytest.raises(NotFoundError):
            engine.submissions.review("sub_missing", "ACCEPTED", editor_a.id)

    def test_unknown_reviewer_through_engine(self, engine, topic, submit):
        submission = submit(topic)
        with pytest.raises(NotFoundError):
            engine.review_submission(submission.id, "ACCEPTED", "0x" + "ab" * 20)

    def test_lost_race_reports_persisted_state(self, engine, store, topic, submit, editor_a, editor_b, monkeypatch):
        """A reviewer whose guarded update loses sees the winner's decision."""
        submission = submit(topic)
        real_update = store.update_where

        def racing_update(table, row_id, expected, changes):
            if table == SUBMISSIONS and changes.get("status") == "REJECTED":
                # Another reviewer accepts between our read and our write
                monkeypatch.setattr(store, "update_where", real_update)
                engine.submissions.review(submission.id, "ACCEPTED", editor_a.id)
            return real_update(table, row_id, expected, changes)

        monkeypatch.setattr(store, "update_where", racing_update)

        with pytest.raises(AlreadyReviewedError) as exc_info:
            engine.submissions.review(submission.id, "REJECTED", editor_b.id)

        assert exc_info.value.current_state == "ACCEPTED"
        assert store.count(PAYMENTS, {"submission_id": submission.id}) == 1

    def test_payment_failure_keeps_acceptance(self, engine, store, topic, submit, editor_a, monkeypatch):
        """Payment creation failure is logged and counted, not raised."""
        submission = submit(topic)

        def broken_create(_submission):
            raise ExternalServiceError("store down", service="store")

        monkeypatch.setattr(engine.ledger, "create", broken_create)

        reviewed = engine.submissions.review(submission.id, "ACCEPTED", editor_a.id)

        assert reviewed.status == "ACCEPTED"
        assert store.count(PAYMENTS) == 0
        assert metrics.get_counter("payment_creation_failures_total") == 1

    def test_review_counts_decisions(self, engine, topic, submit, editor_a):
        engine.submissions.review(submit(topic).id, "ACCEPTED", editor_a.id)
        assert metrics.get_counter("submissions_reviewed_total", {"decision": "ACCEPTED"}) == 1


class TestIntake:
    """Tests for submission intake."""

    def test_bounty_is_snapshotted(self, engine, store, make_topic, submit):
        topic = make_topic(bounty_amount=7500)
        submission = submit(topic)

        assert submission.bounty_amount == 7500
        assert submission.issue_id == topic.issue_id
        assert submission.status == "SUBMITTED"
        assert submission.title == "Untitled"

    def test_list_for_topic(self, engine, make_topic, submit, editor_a):
        topic = make_topic(slots_needed=3)
        first, second = submit(topic), submit(topic)
        engine.submissions.review(second.id, "REJECTED", editor_a.id)

        assert [s.id for s in engine.submissions.list_for_topic(topic.id)] == [first.id, second.id]
        assert [s.id for s in engine.submissions.list_for_topic(topic.id, statuses=["REJECTED"])] == [second.id]

    def test_closed_topic_rejects(self, engine, make_topic, make_user):
        topic = make_topic(status="closed")
        with pytest.raises(StateConflictError):
            engine.submissions.create_submission(topic.id, make_user().id, "content")

    def test_unknown_topic(self, engine, make_user):
        with pytest.raises(NotFoundError):
            engine.submissions.create_submission("top_missing", make_user().id, "content")

    def test_one_submission_per_author_per_topic(self, make_topic, submit, make_user):
        topic = make_topic(slots_needed=3)
        author = make_user()
        submit(topic, author=author)

        with pytest.raises(DuplicateError):
            submit(topic, author=author)

    def test_topic_full(self, make_topic, submit):
        topic = make_topic(slots_needed=1)
        submit(topic)

        with pytest.raises(TopicFullError):
            submit(topic)

    def test_rejected_submission_frees_slot(self, engine, make_topic, submit, editor_a):
        topic = make_topic(slots_needed=1)
        first = submit(topic)
        engine.submissions.review(first.id, "REJECTED", editor_a.id)

        second = submit(topic)
        assert second.status == "SUBMITTED"

    def test_empty_content(self, engine, make_topic, make_user):
        with pytest.raises(ValidationError):
            engine.submissions.create_submission(make_topic().id, make_user().id, "   ")

    def test_create_through_engine_resolves_wallet(self, engine, make_topic, make_user):
        author = make_user()
        submission = engine.create_submission(make_topic().id, author.wallet_address, "words", title="Title")
        assert submission.author_id == author.id
        assert submission.title == "Title"


class TestTopicBountyLock:
    """Tests for repricing a topic."""

    def test_reprice_before_submissions(self, engine, store, make_topic):
        topic = make_topic(bounty_amount=5000)
        updated = engine.submissions.reprice_topic(topic.id, 6000)

        assert updated.bounty_amount == 6000
        assert store.get(TOPICS, topic.id)["bounty_amount"] == 6000

    def test_reprice_locked_once_submitted(self, engine, store, make_topic, submit):
        topic = make_topic(bounty_amount=5000)
        submit(topic)

        with pytest.raises(BountyLockedError):
            engine.submissions.reprice_topic(topic.id, 9000)
        assert store.get(TOPICS, topic.id)["bounty_amount"] == 5000

    def test_reprice_requires_positive_amount(self, engine, make_topic):
        with pytest.raises(ValidationError):
            engine.submissions.reprice_topic(make_topic().id, 0)
