"""
Punto Settlement - Ledger Reconciliation

Acceptance and payment creation are separate writes, and the payout
processor can stop between broadcasting a transfer and recording it.
This job finds the gaps those leave behind:

- ACCEPTED submissions with no payment (repairable)
- PAID payments whose submission still shows UNPAID (repairable)
- PAID payments missing a transaction hash or block number
- Payments whose amount differs from the submission's bounty snapshot
- Transfers still BROADCAST (operator must run ``punto resolve``)

Report-only unless ``repair`` is requested.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from entities import (
    PAYMENTS,
    SUBMISSIONS,
    Payment,
    PaymentStatus,
    Submission,
    SubmissionStatus,
    utcnow_iso,
)
from payment_ledger import PaymentLedger
from payout_processor import PayoutProcessor
from settlement_exceptions import DuplicateError, SettlementError, storage_errors
from storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    """Findings of one reconciliation pass."""

    issue_id: str | None = None
    repair: bool = False
    missing_payments: list[str] = field(default_factory=list)
    created_payments: list[str] = field(default_factory=list)
    repaired_submissions: list[str] = field(default_factory=list)
    unmirrored_payments: list[str] = field(default_factory=list)
    paid_without_receipt: list[str] = field(default_factory=list)
    amount_mismatches: list[dict[str, Any]] = field(default_factory=list)
    unresolved_attempts: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    checked_at: str = field(default_factory=utcnow_iso)

    @property
    def is_clean(self) -> bool:
        """No outstanding findings after any repairs."""
        return not (
            set(self.missing_payments) - set(self.repaired_submissions)
            or (self.unmirrored_payments and not self.repair)
            or self.paid_without_receipt
            or self.amount_mismatches
            or self.unresolved_attempts
            or self.errors
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "repair": self.repair,
            "missing_payments": self.missing_payments,
            "created_payments": self.created_payments,
            "unmirrored_payments": self.unmirrored_payments,
            "paid_without_receipt": self.paid_without_receipt,
            "amount_mismatches": self.amount_mismatches,
            "unresolved_attempts": self.unresolved_attempts,
            "errors": self.errors,
            "is_clean": self.is_clean,
            "checked_at": self.checked_at,
        }


class Reconciler:
    """Cross-checks submissions, payments and payout attempts."""

    def __init__(self, store: StorageBackend, ledger: PaymentLedger, processor: PayoutProcessor):
        self.store = store
        self.ledger = ledger
        self.processor = processor

    def run(self, issue_id: str | None = None, repair: bool = False) -> ReconciliationReport:
        report = ReconciliationReport(issue_id=issue_id, repair=repair)
        scope = {"issue_id": issue_id} if issue_id else {}

        with storage_errors("Load accepted submissions"):
            accepted = [
                Submission.from_dict(r)
                for r in self.store.find(
                    SUBMISSIONS,
                    {**scope, "status": SubmissionStatus.ACCEPTED.value},
                    order_by=("submitted_at", "id"),
                )
            ]
            payments = [Payment.from_dict(r) for r in self.store.find(PAYMENTS, scope)]

        by_submission = {p.submission_id: p for p in payments if p.submission_id}

        for submission in accepted:
            payment = by_submission.get(submission.id)
            if payment is None:
                report.missing_payments.append(submission.id)
                if repair:
                    self._create_missing(submission, report)
            elif payment.amount != submission.bounty_amount:
                report.amount_mismatches.append(
                    {
                        "payment_id": payment.id,
                        "submission_id": submission.id,
                        "payment_amount": payment.amount,
                        "bounty_amount": submission.bounty_amount,
                    }
                )

        submissions_by_id = {s.id: s for s in accepted}
        for payment in payments:
            if payment.status != PaymentStatus.PAID.value:
                continue
            if not payment.transaction_hash or payment.block_number is None:
                report.paid_without_receipt.append(payment.id)
            submission = submissions_by_id.get(payment.submission_id)
            if submission is not None and submission.payment_status != "PAID":
                report.unmirrored_payments.append(payment.id)
                if repair:
                    self.ledger.mirror_paid(payment)

        for attempt in self.processor.unresolved_attempts(issue_id):
            report.unresolved_attempts.append(
                {
                    "attempt_id": attempt.id,
                    "payment_id": attempt.payment_id,
                    "transaction_hash": attempt.transaction_hash,
                    "submitted_at": attempt.submitted_at,
                }
            )

        logger.info(
            "Reconciliation%s: %d missing payment(s), %d created, %d unresolved transfer(s)",
            f" of {issue_id}" if issue_id else "",
            len(report.missing_payments),
            len(report.created_payments),
            len(report.unresolved_attempts),
        )
        return report

    def _create_missing(self, submission: Submission, report: ReconciliationReport) -> None:
        try:
            payment = self.ledger.create(submission)
        except DuplicateError:
            # Created concurrently since the scan
            report.repaired_submissions.append(submission.id)
            return
        except SettlementError as e:
            report.errors.append(f"{submission.id}: {e}")
            logger.error("Could not create payment for %s: %s", submission.id, e)
            return
        report.created_payments.append(payment.id)
        report.repaired_submissions.append(submission.id)
