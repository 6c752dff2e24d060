"""
Punto Settlement - Payout Queue & Processor

Pays an issue's PENDING payments one at a time from its treasury wallet.

Protocol per step:
1. Re-read the pending queue; its head is the payment to send
2. Convert the amount to token base units and resolve the recipient wallet
3. Submit exactly one transfer
4. Persist a BROADCAST attempt, then wait for inclusion
5. On success mark the payment PAID; on rejection or revert leave it PENDING

There is no cursor: the queue is re-derived from the ledger after every
step, so payments added or closed elsewhere mid-run are picked up.

A BROADCAST attempt that was never resolved (crash, dropped connection,
store failure after the transfer) blocks the issue until an operator
resolves it. The processor never resends on its own.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from chain_interface import (
    ChainInterface,
    TransferReceipt,
    TransferStatusUnknownError,
    minor_units_to_token_units,
)
from entities import (
    ISSUES,
    PAYOUT_ATTEMPTS,
    AttemptStatus,
    Issue,
    Payment,
    PayoutAttempt,
    generate_id,
    utcnow_iso,
)
from identity import IdentityResolver
from monitoring import metrics
from payment_ledger import PaymentLedger
from retry import RetryConfig, retry_call
from settlement_exceptions import (
    AlreadyPaidError,
    AmbiguousPayoutError,
    ChainRejectionError,
    ExternalServiceError,
    NotFoundError,
    PayoutInProgressError,
    QueueHeadChangedError,
    SettlementError,
    ValidationError,
    storage_errors,
)
from storage import StorageBackend

logger = logging.getLogger(__name__)


# =============================================================================
# Treasury Locks
# =============================================================================

_treasury_locks: dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def treasury_lock(treasury_address: str) -> threading.Lock:
    """Process-wide lock serializing transfers sent from one wallet."""
    with _registry_lock:
        return _treasury_locks.setdefault(treasury_address.lower(), threading.Lock())


# =============================================================================
# Results
# =============================================================================


@dataclass
class PayoutResult:
    """Outcome of one confirmed payout step."""

    payment: Payment
    attempt: PayoutAttempt
    receipt: TransferReceipt

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment": self.payment.to_dict(),
            "attempt": self.attempt.to_dict(),
            "transaction_hash": self.receipt.transaction_hash,
            "block_number": self.receipt.block_number,
        }


@dataclass
class PayoutRun:
    """Summary of an operator payout session."""

    issue_id: str
    paid: list[PayoutResult] = field(default_factory=list)
    stopped_reason: str = "queue_empty"
    error: SettlementError | None = None

    @property
    def total_paid(self) -> int:
        return sum(result.payment.amount for result in self.paid)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "paid": [result.to_dict() for result in self.paid],
            "total_paid": self.total_paid,
            "stopped_reason": self.stopped_reason,
            "error": self.error.to_dict() if self.error else None,
        }


# =============================================================================
# Processor
# =============================================================================


class PayoutProcessor:
    """Sequential payout of an issue's pending payments."""

    def __init__(
        self,
        store: StorageBackend,
        ledger: PaymentLedger,
        identity: IdentityResolver,
        chain: ChainInterface,
        token_decimals: int = 6,
        minor_unit_decimals: int = 2,
        queue_retry: RetryConfig | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.identity = identity
        self.chain = chain
        self.token_decimals = token_decimals
        self.minor_unit_decimals = minor_unit_decimals
        self.queue_retry = queue_retry or RetryConfig.from_env(retryable_exceptions=(ExternalServiceError,))

    def to_token_units(self, amount: int) -> int:
        return minor_units_to_token_units(amount, self.minor_unit_decimals, self.token_decimals)

    def get_issue(self, issue_id: str) -> Issue:
        with storage_errors("Load issue"):
            row = self.store.get(ISSUES, issue_id)
        if row is None:
            raise NotFoundError("Issue", issue_id)
        return Issue.from_dict(row)

    # =========================================================================
    # Queue
    # =========================================================================

    def pending_queue(self, issue_id: str) -> list[Payment]:
        """Pending payments in payout order, re-fetched with backoff."""
        return retry_call(self.ledger.list_pending, args=(issue_id,), config=self.queue_retry)

    def current_payment(self, issue_id: str) -> Payment | None:
        """Head of the queue, or None when everything is paid."""
        queue = self.pending_queue(issue_id)
        return queue[0] if queue else None

    def get_attempt(self, attempt_id: str) -> PayoutAttempt:
        with storage_errors("Load payout attempt"):
            row = self.store.get(PAYOUT_ATTEMPTS, attempt_id)
        if row is None:
            raise NotFoundError("PayoutAttempt", attempt_id)
        return PayoutAttempt.from_dict(row)

    def unresolved_attempts(self, issue_id: str | None = None) -> list[PayoutAttempt]:
        filters = {"status": AttemptStatus.BROADCAST.value}
        if issue_id:
            filters["issue_id"] = issue_id
        with storage_errors("List payout attempts"):
            rows = self.store.find(PAYOUT_ATTEMPTS, filters, order_by=("submitted_at", "id"))
        return [PayoutAttempt.from_dict(row) for row in rows]

    # =========================================================================
    # Processing
    # =========================================================================

    def sending_wallet(self, issue: Issue) -> str:
        """
        The wallet transfers for ``issue`` leave from.

        The chain can only sign for its configured signer, so an issue is
        payable only when that signer is the issue's treasury.

        Raises:
            ValidationError: No signer configured, or it is not the issue's treasury
        """
        signer = self.chain.signer
        if not signer:
            raise ValidationError("No treasury signer configured", field="TREASURY_SIGNER")
        if issue.treasury_address.lower() != signer.lower():
            raise ValidationError(
                f"Issue {issue.id} is funded from {issue.treasury_address} but transfers are "
                f"signed by {signer}",
                field="treasury_address",
                details={"issue_id": issue.id},
            )
        return signer

    def process_next(self, issue_id: str, expected_payment_id: str | None = None) -> PayoutResult | None:
        """
        Pay the head of the issue's queue.

        Args:
            issue_id: Issue whose queue to pay
            expected_payment_id: Only pay if this payment is still the head

        Returns:
            The confirmed result, or None when the queue is empty

        Raises:
            NotFoundError: Unknown issue
            ValidationError: Issue treasury is not the signer, amount not
                representable or recipient has no wallet
            PayoutInProgressError: Another step is sending from this wallet
            AmbiguousPayoutError: An earlier transfer is unresolved
            QueueHeadChangedError: ``expected_payment_id`` is no longer the head
            ChainRejectionError: Signer declined or the transfer reverted;
                the payment stays PENDING
            ExternalServiceError: Store or chain unavailable
        """
        issue = self.get_issue(issue_id)
        sender = self.sending_wallet(issue)
        lock = treasury_lock(sender)
        if not lock.acquire(blocking=False):
            raise PayoutInProgressError(
                f"A payout from treasury {sender} is already in progress",
                current_state="in_progress",
                details={"issue_id": issue_id},
            )
        try:
            self._check_unresolved(issue_id)
            payment = self.current_payment(issue_id)
            if expected_payment_id is not None and (payment is None or payment.id != expected_payment_id):
                raise QueueHeadChangedError(expected_payment_id, payment.id if payment else None)
            if payment is None:
                return None
            return self._pay(issue, payment)
        finally:
            lock.release()

    def run(
        self,
        issue_id: str,
        confirm: Callable[[Payment], bool] | None = None,
        max_payments: int | None = None,
    ) -> PayoutRun:
        """
        Pay the queue until it is empty, an error occurs, or the operator stops.

        Args:
            issue_id: Issue whose queue to pay
            confirm: Asked before each payment; returning False stops the run.
                Only the payment it was asked about is paid; if the queue
                moved meanwhile it is asked again about the new head.
            max_payments: Stop after this many confirmed payments
        """
        self.get_issue(issue_id)
        summary = PayoutRun(issue_id=issue_id)
        while True:
            if max_payments is not None and len(summary.paid) >= max_payments:
                summary.stopped_reason = "max_payments"
                break
            try:
                expected = None
                if confirm is not None:
                    head = self.current_payment(issue_id)
                    if head is None:
                        break
                    if not confirm(head):
                        summary.stopped_reason = "declined"
                        break
                    expected = head.id
                result = self.process_next(issue_id, expected_payment_id=expected)
            except QueueHeadChangedError as e:
                logger.info("Payout run for %s: %s, asking again", issue_id, e)
                continue
            except SettlementError as e:
                summary.error = e
                summary.stopped_reason = "error"
                logger.warning("Payout run for %s stopped: %s", issue_id, e)
                break
            if result is None:
                break
            summary.paid.append(result)

        logger.info(
            "Payout run for %s finished: %d paid (%d), %s",
            issue_id, len(summary.paid), summary.total_paid, summary.stopped_reason,
        )
        return summary

    def _check_unresolved(self, issue_id: str) -> None:
        unresolved = self.unresolved_attempts(issue_id)
        if unresolved:
            attempt = unresolved[0]
            raise AmbiguousPayoutError(
                f"Transfer {attempt.transaction_hash or '(unknown hash)'} for payment "
                f"{attempt.payment_id} was never resolved; run 'punto resolve {attempt.id}'",
                current_state=attempt.status,
                details={"attempt_id": attempt.id, "payment_id": attempt.payment_id},
            )

    def _pay(self, issue: Issue, payment: Payment) -> PayoutResult:
        token_amount = self.to_token_units(payment.amount)
        to_address = self.identity.wallet_for(payment.recipient_id)

        logger.info(
            "Paying %s: %d to %s from %s", payment.id, payment.amount, payment.recipient_id, issue.treasury_address
        )

        try:
            pending = self.chain.submit_transfer(to_address, token_amount)
        except ChainRejectionError:
            metrics.increment("payouts_rejected_total", labels={"reason": "declined"})
            raise
        except TransferStatusUnknownError as e:
            attempt = self._record_attempt(issue, payment, "", to_address, token_amount)
            raise AmbiguousPayoutError(
                f"Transfer for payment {payment.id} may have been broadcast; "
                f"inspect the treasury and run 'punto resolve {attempt.id}'",
                current_state=AttemptStatus.BROADCAST.value,
                details={"attempt_id": attempt.id, "payment_id": payment.id},
            ) from e

        attempt = self._record_attempt(issue, payment, pending.transaction_hash, to_address, token_amount)

        with metrics.timer("payout_confirmation_ms"):
            try:
                receipt = self.chain.await_confirmation(pending)
            except ChainRejectionError as e:
                if e.reverted:
                    self._finish_attempt(attempt, AttemptStatus.REVERTED, e.block_number)
                metrics.increment("payouts_rejected_total", labels={"reason": "reverted"})
                raise

        paid = self.ledger.mark_paid(payment.id, receipt.transaction_hash, receipt.block_number)
        attempt = self._finish_attempt(attempt, AttemptStatus.CONFIRMED, receipt.block_number)
        return PayoutResult(payment=paid, attempt=attempt, receipt=receipt)

    def _record_attempt(
        self, issue: Issue, payment: Payment, tx_hash: str, to_address: str, token_amount: int
    ) -> PayoutAttempt:
        attempt = PayoutAttempt(
            id=generate_id("att"),
            payment_id=payment.id,
            issue_id=issue.id,
            transaction_hash=tx_hash,
            to_address=to_address,
            token_amount=token_amount,
        )
        try:
            with storage_errors("Record payout attempt"):
                self.store.insert(PAYOUT_ATTEMPTS, attempt.to_dict())
        except ExternalServiceError as e:
            # The transfer is already out; keep waiting for it
            logger.critical(
                "Broadcast %s for payment %s but could not record the attempt: %s",
                tx_hash, payment.id, e,
                extra={"payment_id": payment.id, "reconciliation_required": True},
            )
        return attempt

    def _finish_attempt(
        self, attempt: PayoutAttempt, status: AttemptStatus, block_number: int | None
    ) -> PayoutAttempt:
        changes = {"status": status.value, "block_number": block_number, "resolved_at": utcnow_iso()}
        try:
            with storage_errors("Resolve payout attempt"):
                row = self.store.update_where(
                    PAYOUT_ATTEMPTS, attempt.id, {"status": AttemptStatus.BROADCAST.value}, changes
                )
        except ExternalServiceError as e:
            logger.error("Attempt %s left BROADCAST: %s", attempt.id, e)
            return attempt
        if row is None:
            # Never recorded, or resolved by someone else
            with storage_errors("Load payout attempt"):
                current = self.store.get(PAYOUT_ATTEMPTS, attempt.id)
            return PayoutAttempt.from_dict(current) if current else attempt
        return PayoutAttempt.from_dict(row)

    # =========================================================================
    # Operator Resolution
    # =========================================================================

    def resolve_attempt(self, attempt_id: str, abandon: bool = False) -> PayoutAttempt:
        """
        Settle an unresolved attempt from the chain's point of view.

        Confirmed on chain: the payment is marked PAID. Reverted: the
        attempt is closed and the payment stays PENDING. Still unknown:
        nothing changes unless ``abandon`` is set, which records the
        operator's finding that the transfer never landed.

        Raises:
            NotFoundError: Unknown attempt
            AmbiguousPayoutError: No hash on file and not abandoning
        """
        attempt = self.get_attempt(attempt_id)
        if attempt.status != AttemptStatus.BROADCAST.value:
            logger.info("Attempt %s already %s", attempt_id, attempt.status)
            return attempt

        receipt = self.chain.get_receipt(attempt.transaction_hash) if attempt.transaction_hash else None

        if receipt is None:
            if abandon:
                logger.warning("Operator abandoned attempt %s for payment %s", attempt_id, attempt.payment_id)
                return self._finish_attempt(attempt, AttemptStatus.REVERTED, None)
            if not attempt.transaction_hash:
                raise AmbiguousPayoutError(
                    f"Attempt {attempt_id} has no transaction hash; inspect the treasury and abandon it "
                    "if no transfer landed",
                    current_state=attempt.status,
                    details={"attempt_id": attempt_id},
                )
            logger.info("Transfer %s still unmined", attempt.transaction_hash)
            return attempt

        if not receipt.success:
            return self._finish_attempt(attempt, AttemptStatus.REVERTED, receipt.block_number)

        try:
            self.ledger.mark_paid(attempt.payment_id, receipt.transaction_hash, receipt.block_number)
        except AlreadyPaidError as e:
            logger.error(
                "Transfer %s confirmed but payment %s is already %s",
                receipt.transaction_hash, attempt.payment_id, e.current_state,
                extra={"payment_id": attempt.payment_id, "reconciliation_required": True},
            )
        return self._finish_attempt(attempt, AttemptStatus.CONFIRMED, receipt.block_number)
