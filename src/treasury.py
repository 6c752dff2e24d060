"""
Punto Settlement - Treasury Funding Calculator

Decides whether an issue's treasury holds enough to pay everyone it owes
and whether the issue is ready to publish.

Core Properties:
- Derived on every call from live topics, submissions and payments
- Nothing derived is stored; only the observed balance is persisted
- Integer minor units throughout, buffer rounded up
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from chain_interface import ChainInterface, token_units_to_minor_units
from entities import (
    ISSUES,
    PAYMENTS,
    SUBMISSIONS,
    TOPICS,
    Issue,
    PaymentStatus,
    SubmissionStatus,
    Topic,
    utcnow_iso,
)
from settlement_exceptions import NotFoundError, ValidationError, storage_errors
from storage import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_PERCENT = 10


def publish_threshold(required: int, buffer_percent: int = DEFAULT_BUFFER_PERCENT) -> int:
    """ceil(required * (1 + buffer_percent / 100)) without floats."""
    if required < 0 or buffer_percent < 0:
        raise ValidationError("Funding figures cannot be negative")
    return (required * (100 + buffer_percent) + 99) // 100


@dataclass
class TopicFunding:
    """Per-topic slice of an issue's funding."""

    topic_id: str
    title: str
    bounty_amount: int
    slots_needed: int
    filled: int

    @property
    def bounty_total(self) -> int:
        return self.bounty_amount * self.slots_needed

    @property
    def is_filled(self) -> bool:
        return self.filled >= self.slots_needed

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["bounty_total"] = self.bounty_total
        data["is_filled"] = self.is_filled
        return data


@dataclass
class FundingStatus:
    """Snapshot of an issue's funding position."""

    issue_id: str
    treasury_address: str
    topic_total: int
    stipend_total: int
    publish_threshold: int
    current_balance: int
    declared_required_funding: int
    topics: list[TopicFunding] = field(default_factory=list)
    computed_at: str = field(default_factory=utcnow_iso)

    @property
    def required_funding(self) -> int:
        return self.topic_total + self.stipend_total

    @property
    def shortfall(self) -> int:
        return max(0, self.publish_threshold - self.current_balance)

    @property
    def all_slots_filled(self) -> bool:
        return all(topic.is_filled for topic in self.topics)

    @property
    def can_publish(self) -> bool:
        return self.all_slots_filled and self.current_balance >= self.publish_threshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "treasury_address": self.treasury_address,
            "required_funding": self.required_funding,
            "topic_total": self.topic_total,
            "stipend_total": self.stipend_total,
            "publish_threshold": self.publish_threshold,
            "current_balance": self.current_balance,
            "shortfall": self.shortfall,
            "all_slots_filled": self.all_slots_filled,
            "can_publish": self.can_publish,
            "declared_required_funding": self.declared_required_funding,
            "topics": [topic.to_dict() for topic in self.topics],
            "computed_at": self.computed_at,
        }


class FundingCalculator:
    """Derives funding requirements and publish readiness for issues."""

    def __init__(
        self,
        store: StorageBackend,
        chain: ChainInterface | None = None,
        buffer_percent: int = DEFAULT_BUFFER_PERCENT,
        minor_unit_decimals: int = 2,
        token_decimals: int = 6,
    ):
        self.store = store
        self.chain = chain
        self.buffer_percent = buffer_percent
        self.minor_unit_decimals = minor_unit_decimals
        self.token_decimals = token_decimals

    def get_issue(self, issue_id: str) -> Issue:
        with storage_errors("Load issue"):
            row = self.store.get(ISSUES, issue_id)
        if row is None:
            raise NotFoundError("Issue", issue_id)
        return Issue.from_dict(row)

    def _topic_funding(self, issue_id: str) -> list[TopicFunding]:
        with storage_errors("Load topics"):
            topics = [Topic.from_dict(r) for r in self.store.find(TOPICS, {"issue_id": issue_id}, order_by=("position", "id"))]
            accepted = self.store.find(
                SUBMISSIONS,
                {"issue_id": issue_id, "status": SubmissionStatus.ACCEPTED.value},
                order_by=("submitted_at", "id"),
            )

        filled: dict[str, int] = {}
        for row in accepted:
            filled[row["topic_id"]] = filled.get(row["topic_id"], 0) + 1

        return [
            TopicFunding(
                topic_id=topic.id,
                title=topic.title,
                bounty_amount=topic.bounty_amount,
                slots_needed=topic.slots_needed,
                filled=filled.get(topic.id, 0),
            )
            for topic in topics
        ]

    def stipend_total(self, issue_id: str) -> int:
        """Founder and editor stipends the treasury still has to cover (or has paid)."""
        with storage_errors("Load stipends"):
            rows = self.store.find(PAYMENTS, {"issue_id": issue_id, "submission_id": None})
        return sum(r["amount"] for r in rows if r["status"] != PaymentStatus.FAILED.value)

    # =========================================================================
    # Derived figures
    # =========================================================================

    def required_funding(self, issue_id: str) -> int:
        """Sum of every topic's bounty x slots plus non-failed stipends."""
        self.get_issue(issue_id)
        topic_total = sum(t.bounty_total for t in self._topic_funding(issue_id))
        return topic_total + self.stipend_total(issue_id)

    def publish_threshold(self, issue_id: str) -> int:
        return publish_threshold(self.required_funding(issue_id), self.buffer_percent)

    def shortfall(self, issue_id: str) -> int:
        return self.get_funding_status(issue_id).shortfall

    def can_publish(self, issue_id: str) -> bool:
        return self.get_funding_status(issue_id).can_publish

    def get_funding_status(self, issue_id: str) -> FundingStatus:
        """
        Compute the funding position of an issue from live data.

        Raises:
            NotFoundError: Unknown issue
            ExternalServiceError: Store failure
        """
        issue = self.get_issue(issue_id)
        topics = self._topic_funding(issue_id)
        topic_total = sum(t.bounty_total for t in topics)
        stipends = self.stipend_total(issue_id)

        return FundingStatus(
            issue_id=issue.id,
            treasury_address=issue.treasury_address,
            topic_total=topic_total,
            stipend_total=stipends,
            publish_threshold=publish_threshold(topic_total + stipends, self.buffer_percent),
            current_balance=issue.current_balance,
            declared_required_funding=issue.required_funding,
            topics=topics,
        )

    # =========================================================================
    # Balance
    # =========================================================================

    def refresh_balance(self, issue_id: str) -> Issue:
        """
        Read the treasury's token balance from chain and store it.

        The balance is converted to minor units, rounding down.

        Raises:
            NotFoundError: Unknown issue
            ValidationError: No chain interface configured
            ExternalServiceError: Chain or store failure
        """
        if self.chain is None:
            raise ValidationError("No chain interface configured for balance refresh")

        issue = self.get_issue(issue_id)
        units = self.chain.get_token_balance(issue.treasury_address)
        balance = token_units_to_minor_units(units, self.minor_unit_decimals, self.token_decimals)

        with storage_errors("Update issue balance"):
            row = self.store.update_where(
                ISSUES, issue_id, {"current_balance": issue.current_balance}, {"current_balance": balance}
            )
        if row is None:
            # A concurrent refresh won; its reading is as fresh as ours
            return self.get_issue(issue_id)

        logger.info("Treasury %s balance %d -> %d", issue.treasury_address, issue.current_balance, balance)
        return Issue.from_dict(row)
