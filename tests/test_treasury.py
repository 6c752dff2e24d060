"""
Tests for the Treasury Funding Calculator (src/treasury.py)

Tests cover:
- Publish threshold rounding
- Required funding from topics and stipends
- Publish readiness
- Balance refresh from chain
"""

import pytest

from entities import ISSUES
from settlement_exceptions import NotFoundError, ValidationError
from treasury import FundingCalculator, publish_threshold

from conftest import TREASURY


class TestPublishThreshold:
    """Tests for the buffered threshold."""

    def test_exact(self):
        assert publish_threshold(10000, 10) == 11000

    def test_rounds_up(self):
        # 1001 * 1.10 = 1101.1
        assert publish_threshold(1001, 10) == 1102

    def test_zero(self):
        assert publish_threshold(0, 10) == 0

    def test_no_buffer(self):
        assert publish_threshold(999, 0) == 999

    def test_negative(self):
        with pytest.raises(ValidationError):
            publish_threshold(-1, 10)


class TestRequiredFunding:
    """Tests for required funding."""

    def test_topics_and_slots(self, engine, issue, make_topic):
        make_topic(bounty_amount=5000, slots_needed=2)
        make_topic(bounty_amount=3000, slots_needed=1)

        status = engine.get_funding_status(issue.id)

        assert status.topic_total == 13000
        assert status.stipend_total == 0
        assert status.required_funding == 13000
        assert status.publish_threshold == 14300

    def test_stipends_count_unless_failed(self, engine, issue, make_topic, editor_a, editor_b):
        make_topic(bounty_amount=5000)
        engine.ledger.create_stipend(issue.id, editor_a.id, "EDITOR", 2000)
        failed = engine.ledger.create_stipend(issue.id, editor_b.id, "FOUNDER", 9999)
        engine.ledger.mark_failed(failed.id, "declined the stipend")

        assert engine.funding.stipend_total(issue.id) == 2000
        assert engine.funding.required_funding(issue.id) == 7000

    def test_paid_stipends_still_count(self, engine, issue, editor_a):
        stipend = engine.ledger.create_stipend(issue.id, editor_a.id, "EDITOR", 2000)
        engine.ledger.mark_paid(stipend.id, "0x1", 1)

        assert engine.funding.required_funding(issue.id) == 2000

    def test_contributor_payments_are_not_stipends(self, engine, issue, make_topic, submit, editor_a):
        topic = make_topic(bounty_amount=5000)
        engine.submissions.review(submit(topic).id, "ACCEPTED", editor_a.id)

        assert engine.funding.stipend_total(issue.id) == 0
        assert engine.funding.required_funding(issue.id) == 5000

    def test_declared_figure_is_reported_not_used(self, engine, store, issue, make_topic):
        store.update_where(ISSUES, issue.id, {}, {"required_funding": 1})
        make_topic(bounty_amount=5000)

        status = engine.get_funding_status(issue.id)
        assert status.declared_required_funding == 1
        assert status.required_funding == 5000

    def test_unknown_issue(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_funding_status("iss_missing")


class TestCanPublish:
    """Tests for publish readiness."""

    @pytest.fixture
    def funded(self, store, issue):
        def _fund(balance):
            store.update_where(ISSUES, issue.id, {}, {"current_balance": balance})

        return _fund

    def test_filled_and_funded(self, engine, issue, make_topic, submit, editor_a, funded):
        topic = make_topic(bounty_amount=10000)
        engine.submissions.review(submit(topic).id, "ACCEPTED", editor_a.id)
        funded(11000)

        status = engine.get_funding_status(issue.id)
        assert status.all_slots_filled
        assert status.shortfall == 0
        assert status.can_publish

    def test_one_below_threshold(self, engine, issue, make_topic, submit, editor_a, funded):
        topic = make_topic(bounty_amount=10000)
        engine.submissions.review(submit(topic).id, "ACCEPTED", editor_a.id)
        funded(10999)

        assert engine.funding.shortfall(issue.id) == 1
        assert engine.funding.can_publish(issue.id) is False

    def test_unfilled_slot(self, engine, issue, make_topic, submit, editor_a, funded):
        topic = make_topic(bounty_amount=10000, slots_needed=2)
        engine.submissions.review(submit(topic).id, "ACCEPTED", editor_a.id)
        funded(1_000_000)

        status = engine.get_funding_status(issue.id)
        assert status.all_slots_filled is False
        assert status.can_publish is False

    def test_pending_review_does_not_fill(self, engine, issue, make_topic, submit, funded):
        submit(make_topic(bounty_amount=100))
        funded(1_000_000)

        assert engine.funding.can_publish(issue.id) is False

    def test_breakdown(self, engine, issue, make_topic, submit, editor_a):
        first = make_topic(bounty_amount=5000, slots_needed=2, title="Night markets")
        make_topic(bounty_amount=3000, title="Street food")
        engine.submissions.review(submit(first).id, "ACCEPTED", editor_a.id)

        data = engine.get_funding_status(issue.id).to_dict()

        assert [t["title"] for t in data["topics"]] == ["Night markets", "Street food"]
        assert data["topics"][0]["filled"] == 1
        assert data["topics"][0]["bounty_total"] == 10000
        assert data["topics"][0]["is_filled"] is False
        assert data["treasury_address"] == TREASURY


class TestRefreshBalance:
    """Tests for reading the treasury balance from chain."""

    def test_converts_and_stores(self, engine, store, chain, issue):
        chain.set_balance(TREASURY, 123_456_789)  # 123.456789 USDC

        status = engine.refresh_balance(issue.id)

        assert status.current_balance == 12345
        assert store.get(ISSUES, issue.id)["current_balance"] == 12345

    def test_tracks_payouts(self, engine, chain, issue, make_topic, submit, editor_a):
        chain.set_balance(TREASURY, 100 * 10**6)
        topic = make_topic(bounty_amount=2500)
        engine.submissions.review(submit(topic).id, "ACCEPTED", editor_a.id)
        engine.process_next_payout(issue.id)

        assert engine.refresh_balance(issue.id).current_balance == 7500

    def test_requires_chain(self, store, issue):
        with pytest.raises(ValidationError):
            FundingCalculator(store).refresh_balance(issue.id)

    def test_unknown_issue(self, engine):
        with pytest.raises(NotFoundError):
            engine.refresh_balance("iss_missing")
