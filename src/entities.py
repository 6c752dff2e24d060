"""
Punto Settlement - Domain Records

Plain dataclasses for the records the engine reads and writes. The Entity
Store persists their dict form (one table per record type); amounts are
always integer minor units.
"""

import secrets
import threading
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


class SubmissionStatus(Enum):
    """Lifecycle of a submission."""
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionStatus.ACCEPTED, SubmissionStatus.REJECTED)


class PaymentStatus(Enum):
    """Lifecycle of a payment."""
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class PaymentRole(Enum):
    """Why a payment is owed."""
    CONTRIBUTOR = "CONTRIBUTOR"  # Bounty for an accepted submission
    FOUNDER = "FOUNDER"          # Stipend
    EDITOR = "EDITOR"            # Stipend


class AttemptStatus(Enum):
    """Lifecycle of a broadcast transfer."""
    BROADCAST = "BROADCAST"
    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"


class TopicStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


# Table names used by every storage backend
SUBMISSIONS = "submissions"
PAYMENTS = "payments"
TOPICS = "topics"
ISSUES = "issues"
APPROVALS = "approvals"
USERS = "users"
PAYOUT_ATTEMPTS = "payout_attempts"

ALL_TABLES = (SUBMISSIONS, PAYMENTS, TOPICS, ISSUES, APPROVALS, USERS, PAYOUT_ATTEMPTS)

# Columns that must be unique among non-null values
UNIQUE_CONSTRAINTS: dict[str, tuple[str, ...]] = {
    PAYMENTS: ("submission_id",),
    USERS: ("wallet_address",),
}


_clock_lock = threading.Lock()
_last_timestamp: datetime | None = None


def utcnow_iso() -> str:
    """
    Strictly increasing UTC ISO timestamp.

    Ledger ordering is by creation time, so two records created in the same
    microsecond must still sort in creation order.
    """
    global _last_timestamp
    with _clock_lock:
        now = datetime.now(UTC)
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
        return now.isoformat()


def generate_id(prefix: str) -> str:
    """Generate a record identifier such as ``pay_3f9a0c2e1b7d4a55``."""
    return f"{prefix}_{secrets.token_hex(8)}"


class Record:
    """Shared dict conversion for stored records."""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Issue(Record):
    """An issue of a zine and its treasury."""
    id: str
    treasury_address: str
    required_funding: int = 0
    current_balance: int = 0
    deadline: str | None = None
    status: str = "draft"
    title: str | None = None
    magazine_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class Topic(Record):
    """A call for submissions within an issue."""
    id: str
    issue_id: str
    bounty_amount: int
    slots_needed: int = 1
    title: str = ""
    position: int = 0
    status: str = TopicStatus.OPEN.value
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class Submission(Record):
    """A contributor's response to a topic."""
    id: str
    topic_id: str
    issue_id: str
    author_id: str
    content: str
    bounty_amount: int
    status: str = SubmissionStatus.SUBMITTED.value
    title: str = "Untitled"
    submitted_at: str = field(default_factory=utcnow_iso)
    accepted_at: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    payment_status: str = "UNPAID"
    paid_at: str | None = None
    transaction_hash: str | None = None

    @property
    def status_enum(self) -> SubmissionStatus:
        return SubmissionStatus(self.status)


@dataclass
class Payment(Record):
    """Money owed to a recipient for an issue."""
    id: str
    issue_id: str
    recipient_id: str
    amount: int
    submission_id: str | None = None
    currency: str = "USDC"
    role: str = PaymentRole.CONTRIBUTOR.value
    status: str = PaymentStatus.PENDING.value
    transaction_hash: str | None = None
    block_number: int | None = None
    created_at: str = field(default_factory=utcnow_iso)
    paid_at: str | None = None
    failed_at: str | None = None
    failure_reason: str | None = None

    @property
    def is_stipend(self) -> bool:
        return self.submission_id is None


@dataclass
class Approval(Record):
    """Audit record of an editor's acceptance."""
    id: str
    submission_id: str
    editor_id: str
    decision: str = "APPROVE"
    notes: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class User(Record):
    """A wallet-backed identity."""
    id: str
    wallet_address: str
    display_name: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class PayoutAttempt(Record):
    """A transfer that was handed to the chain for a payment."""
    id: str
    payment_id: str
    issue_id: str
    transaction_hash: str
    to_address: str
    token_amount: int
    status: str = AttemptStatus.BROADCAST.value
    block_number: int | None = None
    submitted_at: str = field(default_factory=utcnow_iso)
    resolved_at: str | None = None
