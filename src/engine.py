"""
Punto Settlement - Engine Facade

Wires the store, ledger, state machine, payout processor and funding
calculator together and exposes the operations the HTTP API and the
operator CLI call. Reviewer and recipient references may be wallet
addresses or user ids; they are resolved here.
"""

import logging
from dataclasses import dataclass

from chain_interface import ChainInterface, build_chain_interface
from entities import Payment, Submission
from identity import IdentityResolver
from payment_ledger import PaymentLedger
from payout_processor import PayoutProcessor, PayoutResult, PayoutRun
from reconciliation import Reconciler, ReconciliationReport
from settings import Settings
from storage import StorageBackend, get_storage_backend
from submissions import SubmissionStateMachine
from treasury import FundingCalculator, FundingStatus

logger = logging.getLogger(__name__)


@dataclass
class SettlementEngine:
    """The assembled settlement services."""

    settings: Settings
    store: StorageBackend
    chain: ChainInterface
    identity: IdentityResolver
    ledger: PaymentLedger
    submissions: SubmissionStateMachine
    processor: PayoutProcessor
    funding: FundingCalculator
    reconciler: Reconciler

    # =========================================================================
    # Review
    # =========================================================================

    def review_submission(self, submission_id: str, decision, reviewer: str, notes: str | None = None) -> Submission:
        reviewer_id = self.identity.resolve_user_id(reviewer)
        return self.submissions.review(submission_id, decision, reviewer_id, notes=notes)

    def create_submission(self, topic_id: str, author: str, content: str, title: str | None = None) -> Submission:
        author_id = self.identity.resolve_user_id(author)
        return self.submissions.create_submission(topic_id, author_id, content, title=title)

    def get_submission(self, submission_id: str) -> Submission:
        return self.submissions.get_submission(submission_id)

    # =========================================================================
    # Ledger
    # =========================================================================

    def list_pending_payments(self, issue_id: str) -> list[Payment]:
        self.funding.get_issue(issue_id)
        return self.ledger.list_pending(issue_id)

    def record_payout(self, payment_id: str, transaction_hash: str, block_number: int) -> Payment:
        return self.ledger.mark_paid(payment_id, transaction_hash, block_number)

    def mark_payment_failed(self, payment_id: str, reason: str) -> Payment:
        return self.ledger.mark_failed(payment_id, reason)

    def grant_stipend(self, issue_id: str, recipient: str, role: str, amount: int) -> Payment:
        self.funding.get_issue(issue_id)
        recipient_id = self.identity.resolve_user_id(recipient)
        return self.ledger.create_stipend(issue_id, recipient_id, role, amount)

    # =========================================================================
    # Payouts
    # =========================================================================

    def process_next_payout(self, issue_id: str) -> PayoutResult | None:
        return self.processor.process_next(issue_id)

    def run_payouts(self, issue_id: str, confirm=None, max_payments: int | None = None) -> PayoutRun:
        return self.processor.run(issue_id, confirm=confirm, max_payments=max_payments)

    def resolve_attempt(self, attempt_id: str, abandon: bool = False):
        return self.processor.resolve_attempt(attempt_id, abandon=abandon)

    # =========================================================================
    # Treasury
    # =========================================================================

    def get_funding_status(self, issue_id: str) -> FundingStatus:
        return self.funding.get_funding_status(issue_id)

    def refresh_balance(self, issue_id: str) -> FundingStatus:
        self.funding.refresh_balance(issue_id)
        return self.funding.get_funding_status(issue_id)

    def reconcile(self, issue_id: str | None = None, repair: bool = False) -> ReconciliationReport:
        return self.reconciler.run(issue_id=issue_id, repair=repair)


def build_engine(
    settings: Settings | None = None,
    store: StorageBackend | None = None,
    chain: ChainInterface | None = None,
) -> SettlementEngine:
    """
    Assemble the engine from settings.

    ``store`` and ``chain`` override what the settings describe (tests
    pass a MemoryStorage and a MockChainInterface).
    """
    settings = settings or Settings.from_env()
    store = store or get_storage_backend(settings.storage_backend, settings.data_file, settings.database_url)
    chain = chain or build_chain_interface(settings)

    identity = IdentityResolver(store)
    ledger = PaymentLedger(store, currency=settings.currency)
    processor = PayoutProcessor(
        store,
        ledger,
        identity,
        chain,
        token_decimals=settings.token_decimals,
        minor_unit_decimals=settings.minor_unit_decimals,
    )

    logger.info("Settlement engine ready (store=%s)", type(store).__name__)
    return SettlementEngine(
        settings=settings,
        store=store,
        chain=chain,
        identity=identity,
        ledger=ledger,
        submissions=SubmissionStateMachine(store, ledger),
        processor=processor,
        funding=FundingCalculator(
            store,
            chain=chain,
            buffer_percent=settings.publish_buffer_percent,
            minor_unit_decimals=settings.minor_unit_decimals,
            token_decimals=settings.token_decimals,
        ),
        reconciler=Reconciler(store, ledger, processor),
    )
