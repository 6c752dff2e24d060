"""
Punto Settlement - Payment Ledger

Records money owed for accepted submissions (and stipends) and tracks
each payment from PENDING to PAID or FAILED.

Core Properties:
- One payment per submission, enforced up front and by the store
- Amounts are frozen at creation from the submission's bounty snapshot
- Every status change is a guarded update on ``status = PENDING``
- PAID always carries a transaction hash and block number
"""

import logging
import re

from entities import (
    PAYMENTS,
    SUBMISSIONS,
    Payment,
    PaymentRole,
    PaymentStatus,
    Submission,
    SubmissionStatus,
    generate_id,
    utcnow_iso,
)
from monitoring import metrics
from settlement_exceptions import (
    AlreadyPaidError,
    DuplicateError,
    NotFoundError,
    SettlementError,
    StateConflictError,
    ValidationError,
    storage_errors,
)
from storage import StorageBackend

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{1,64}$")

STIPEND_ROLES = (PaymentRole.FOUNDER.value, PaymentRole.EDITOR.value)


def validate_receipt(transaction_hash: str, block_number: int) -> None:
    """
    Check a transaction hash / block number pair before recording it.

    Raises:
        ValidationError: Malformed hash or negative/non-integer block
    """
    if not isinstance(transaction_hash, str) or not TX_HASH_PATTERN.match(transaction_hash):
        raise ValidationError(f"Malformed transaction hash: {transaction_hash!r}", field="transaction_hash")
    if not isinstance(block_number, int) or isinstance(block_number, bool) or block_number < 0:
        raise ValidationError(f"Invalid block number: {block_number!r}", field="block_number")


class PaymentLedger:
    """Ledger of payments for every issue."""

    def __init__(self, store: StorageBackend, currency: str = "USDC"):
        self.store = store
        self.currency = currency

    # =========================================================================
    # Creation
    # =========================================================================

    def create(self, submission: Submission) -> Payment:
        """
        Create the PENDING payment owed for an accepted submission.

        Args:
            submission: The accepted submission; its bounty snapshot is the amount

        Returns:
            The new payment

        Raises:
            StateConflictError: Submission is not ACCEPTED
            DuplicateError: A payment already exists for the submission
            ExternalServiceError: Store failure
        """
        if submission.status != SubmissionStatus.ACCEPTED.value:
            raise StateConflictError(
                f"Submission {submission.id} is {submission.status}, payment requires ACCEPTED",
                current_state=submission.status,
            )

        existing = self.find_by_submission(submission.id)
        if existing is not None:
            raise DuplicateError(
                f"Payment already exists for submission {submission.id}",
                existing_id=existing.id,
            )

        payment = Payment(
            id=generate_id("pay"),
            issue_id=submission.issue_id,
            recipient_id=submission.author_id,
            amount=submission.bounty_amount,
            submission_id=submission.id,
            currency=self.currency,
            role=PaymentRole.CONTRIBUTOR.value,
        )

        # The unique index on submission_id settles a race with a concurrent create
        with storage_errors("Create payment"):
            self.store.insert(PAYMENTS, payment.to_dict())

        metrics.increment("payments_created_total", labels={"role": payment.role})
        logger.info(
            "Created payment %s for submission %s (%d)", payment.id, submission.id, payment.amount
        )
        return payment

    def create_stipend(self, issue_id: str, recipient_id: str, role: str, amount: int) -> Payment:
        """
        Create a PENDING founder/editor stipend for an issue.

        Raises:
            ValidationError: Unknown role or non-positive amount
            ExternalServiceError: Store failure
        """
        role = role.upper() if isinstance(role, str) else role
        if role not in STIPEND_ROLES:
            raise ValidationError(f"Stipend role must be one of {STIPEND_ROLES}", field="role")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Stipend amount must be a positive integer", field="amount")
        if not recipient_id:
            raise ValidationError("Recipient is required", field="recipient_id")

        payment = Payment(
            id=generate_id("pay"),
            issue_id=issue_id,
            recipient_id=recipient_id,
            amount=amount,
            currency=self.currency,
            role=role,
        )
        with storage_errors("Create stipend"):
            self.store.insert(PAYMENTS, payment.to_dict())

        metrics.increment("payments_created_total", labels={"role": role})
        logger.info("Created %s stipend %s for issue %s (%d)", role.lower(), payment.id, issue_id, amount)
        return payment

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, payment_id: str) -> Payment:
        with storage_errors("Load payment"):
            row = self.store.get(PAYMENTS, payment_id)
        if row is None:
            raise NotFoundError("Payment", payment_id)
        return Payment.from_dict(row)

    def find_by_submission(self, submission_id: str) -> Payment | None:
        with storage_errors("Find payment"):
            rows = self.store.find(PAYMENTS, {"submission_id": submission_id})
        return Payment.from_dict(rows[0]) if rows else None

    def list_pending(self, issue_id: str) -> list[Payment]:
        """
        PENDING payments for an issue, oldest first.

        This is the payout queue: its head is the next payment to send.
        """
        with storage_errors("List pending payments"):
            rows = self.store.find(
                PAYMENTS,
                {"issue_id": issue_id, "status": PaymentStatus.PENDING.value},
                order_by=("created_at", "id"),
            )
        return [Payment.from_dict(row) for row in rows]

    def list_for_issue(self, issue_id: str, status: str | None = None) -> list[Payment]:
        filters = {"issue_id": issue_id}
        if status is not None:
            filters["status"] = status
        with storage_errors("List payments"):
            rows = self.store.find(PAYMENTS, filters, order_by=("created_at", "id"))
        return [Payment.from_dict(row) for row in rows]

    # =========================================================================
    # Transitions
    # =========================================================================

    def mark_paid(self, payment_id: str, transaction_hash: str, block_number: int) -> Payment:
        """
        Record the confirmed transfer for a payment (PENDING -> PAID).

        Raises:
            ValidationError: Malformed hash or block
            NotFoundError: Unknown payment
            AlreadyPaidError: Payment is not PENDING; nothing is changed
            ExternalServiceError: Store failure
        """
        validate_receipt(transaction_hash, block_number)
        current = self.get(payment_id)
        if current.status != PaymentStatus.PENDING.value:
            raise AlreadyPaidError(payment_id, current.status, current.transaction_hash)

        paid_at = utcnow_iso()
        with storage_errors("Mark payment paid"):
            row = self.store.update_where(
                PAYMENTS,
                payment_id,
                {"status": PaymentStatus.PENDING.value},
                {
                    "status": PaymentStatus.PAID.value,
                    "transaction_hash": transaction_hash,
                    "block_number": block_number,
                    "paid_at": paid_at,
                },
            )

        if row is None:
            # Lost a race with another writer
            latest = self.get(payment_id)
            raise AlreadyPaidError(payment_id, latest.status, latest.transaction_hash)

        payment = Payment.from_dict(row)
        metrics.increment("payments_paid_total")
        logger.info(
            "Payment %s paid in %s (block %d)", payment_id, transaction_hash, block_number
        )

        if payment.submission_id:
            self.mirror_paid(payment)
        return payment

    def mark_failed(self, payment_id: str, reason: str) -> Payment:
        """
        Close a payment as FAILED (PENDING -> FAILED). Terminal.

        Raises:
            ValidationError: Empty reason
            NotFoundError: Unknown payment
            AlreadyPaidError: Payment is not PENDING
            ExternalServiceError: Store failure
        """
        if not reason or not str(reason).strip():
            raise ValidationError("A failure reason is required", field="reason")

        current = self.get(payment_id)
        if current.status != PaymentStatus.PENDING.value:
            raise AlreadyPaidError(payment_id, current.status, current.transaction_hash)

        with storage_errors("Mark payment failed"):
            row = self.store.update_where(
                PAYMENTS,
                payment_id,
                {"status": PaymentStatus.PENDING.value},
                {
                    "status": PaymentStatus.FAILED.value,
                    "failed_at": utcnow_iso(),
                    "failure_reason": str(reason).strip(),
                },
            )
        if row is None:
            latest = self.get(payment_id)
            raise AlreadyPaidError(payment_id, latest.status, latest.transaction_hash)

        logger.warning("Payment %s marked failed: %s", payment_id, reason)
        return Payment.from_dict(row)

    def mirror_paid(self, payment: Payment) -> None:
        """Copy paid status onto the submission for display; the payment stays authoritative."""
        try:
            with storage_errors("Mirror payment status"):
                self.store.update_where(
                    SUBMISSIONS,
                    payment.submission_id,
                    {"payment_status": "UNPAID"},
                    {
                        "payment_status": "PAID",
                        "paid_at": payment.paid_at,
                        "transaction_hash": payment.transaction_hash,
                    },
                )
        except SettlementError as e:
            logger.warning(
                "Could not mirror paid status onto submission %s: %s",
                payment.submission_id,
                e,
                extra={"payment_id": payment.id, "reconciliation_required": True},
            )


__all__ = ["PaymentLedger", "validate_receipt"]
