"""
Punto Settlement - Exception Hierarchy

Provides a consistent set of exceptions for the review, ledger and payout
components. Every exception carries a stable error code and structured
details so the HTTP layer and the operator CLI can report the persisted
state without string matching.
"""

from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from storage.base import DuplicateRecordError, StorageError


class SettlementError(Exception):
    """
    Base exception for all settlement engine errors.

    Includes a machine-readable code and structured details for
    logging and API serialization.
    """

    code = "settlement_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(UTC).isoformat()
        self.cause = cause

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error": self.code,
            "error_type": type(self).__name__,
            "message": self.message,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }
        return result

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


# =============================================================================
# Input Errors
# =============================================================================

class ValidationError(SettlementError):
    """Malformed input, rejected before any state mutation."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details={"field": field, **(details or {})})
        self.field = field


class NotFoundError(SettlementError):
    """Referenced record does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "id": entity_id}
        )
        self.entity = entity
        self.entity_id = entity_id


class DuplicateError(SettlementError):
    """A record that must be unique already exists."""

    code = "duplicate"

    def __init__(self, message: str, existing_id: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details={"existing_id": existing_id, **(details or {})})
        self.existing_id = existing_id


# =============================================================================
# State Conflicts
# =============================================================================

class StateConflictError(SettlementError):
    """
    Attempted a transition that the persisted state does not allow.

    Recovered locally: the mutation is not applied and the caller is
    told the current persisted state.
    """

    code = "state_conflict"

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, details={"current_state": current_state, **(details or {})})
        self.current_state = current_state


class AlreadyReviewedError(StateConflictError):
    """Submission already carries a terminal review decision."""

    code = "already_reviewed"

    def __init__(self, submission_id: str, current_state: str):
        super().__init__(
            f"Submission {submission_id} has already been {current_state.lower()}",
            current_state=current_state,
            details={"submission_id": submission_id}
        )


class InvalidTransitionError(StateConflictError):
    """Transition is not in the legal transition table."""

    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            f"Illegal transition: {from_state} -> {to_state}",
            current_state=from_state,
            details={"requested_state": to_state}
        )


class AlreadyPaidError(StateConflictError):
    """Payment is no longer PENDING."""

    code = "already_paid"

    def __init__(self, payment_id: str, current_state: str, transaction_hash: str | None = None):
        super().__init__(
            f"Payment {payment_id} is {current_state}, not PENDING",
            current_state=current_state,
            details={"payment_id": payment_id, "transaction_hash": transaction_hash}
        )


class TopicFullError(StateConflictError):
    """Topic already holds as many live submissions as it has slots."""

    code = "topic_full"


class BountyLockedError(StateConflictError):
    """Topic bounty cannot change once submissions have been priced against it."""

    code = "bounty_locked"


class PayoutInProgressError(StateConflictError):
    """Another transfer is already in flight for the same treasury."""

    code = "payout_in_progress"


class QueueHeadChangedError(StateConflictError):
    """The payment at the head of the queue is not the one the operator confirmed."""

    code = "queue_head_changed"

    def __init__(self, expected_payment_id: str, current_payment_id: str | None):
        super().__init__(
            f"Payment {expected_payment_id} is no longer next in the queue",
            current_state="head_changed",
            details={"expected_payment_id": expected_payment_id, "current_payment_id": current_payment_id}
        )


class AmbiguousPayoutError(StateConflictError):
    """
    A transfer for this payment was broadcast but never resolved.

    Requires operator inspection; the engine never resubmits on its own.
    """

    code = "ambiguous_payout"


# =============================================================================
# External Errors
# =============================================================================

class ExternalServiceError(SettlementError):
    """A store or chain call failed."""

    code = "external_service_error"

    def __init__(self, message: str, service: str = "unknown", cause: Exception | None = None):
        super().__init__(message, details={"service": service}, cause=cause)
        self.service = service


class ChainRejectionError(SettlementError):
    """The signer declined the transfer or the transaction reverted."""

    code = "chain_rejection"

    def __init__(
        self,
        message: str,
        transaction_hash: str | None = None,
        reverted: bool = False,
        block_number: int | None = None
    ):
        super().__init__(
            message,
            details={
                "transaction_hash": transaction_hash,
                "reverted": reverted,
                "block_number": block_number,
            }
        )
        self.transaction_hash = transaction_hash
        self.reverted = reverted
        self.block_number = block_number


# =============================================================================
# Store Boundary
# =============================================================================

@contextmanager
def storage_errors(operation: str):
    """
    Translate Entity Store failures raised inside the block.

    A unique-constraint violation becomes DuplicateError; any other
    StorageError becomes ExternalServiceError.
    """
    try:
        yield
    except DuplicateRecordError as e:
        raise DuplicateError(
            f"{operation}: {e}",
            details={"table": e.table, "column": e.column, "value": e.value},
        ) from e
    except StorageError as e:
        raise ExternalServiceError(f"{operation} failed: {e}", service="store", cause=e) from e
