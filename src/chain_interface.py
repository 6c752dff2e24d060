"""
Punto Settlement - On-Chain Transfer Interface

Talks Ethereum JSON-RPC to a node whose account is the treasury signer,
submitting ERC-20 (USDC) transfers one at a time and observing their
inclusion.

Core principle: a transfer is only reported as confirmed after a receipt
with success status has been observed; every other outcome is surfaced
to the caller unchanged.
"""

import hashlib
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

import requests
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from retry import RetryConfig, retry_call
from settlement_exceptions import ChainRejectionError, ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Timeouts (seconds)
DEFAULT_TIMEOUT = 30
CONNECT_TIMEOUT = 10

# Connection retries only: a failed connect never reached the node
MAX_CONNECT_RETRIES = 3
RETRY_BACKOFF_FACTOR = 1

TRANSFER_SELECTOR = function_signature_to_4byte_selector("transfer(address,uint256)")
BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")

# EIP-1193 "user rejected request"
USER_REJECTED_CODE = 4001


# =============================================================================
# Errors
# =============================================================================


class RpcError(ExternalServiceError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, method: str, code: int | None, message: str):
        super().__init__(f"{method} failed ({code}): {message}", service="chain")
        self.method = method
        self.rpc_code = code
        self.rpc_message = message


class TransferStatusUnknownError(ExternalServiceError):
    """
    The transfer request may or may not have reached the network.

    Raised when the connection drops after the request was sent; the
    transaction hash is unknown and only the operator can tell whether
    funds moved.
    """


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class PendingTransfer:
    """Handle for a transfer that has been broadcast."""

    transaction_hash: str
    to_address: str
    token_amount: int
    submitted_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


@dataclass
class TransferReceipt:
    """Receipt for a mined transfer."""

    transaction_hash: str
    block_number: int
    success: bool
    gas_used: int | None = None

    @classmethod
    def from_rpc(cls, data: dict[str, Any]) -> "TransferReceipt":
        """Create from an eth_getTransactionReceipt result."""
        gas_used = data.get("gasUsed")
        return cls(
            transaction_hash=data["transactionHash"],
            block_number=int(data["blockNumber"], 16),
            success=int(data.get("status", "0x1"), 16) == 1,
            gas_used=int(gas_used, 16) if gas_used else None,
        )


# =============================================================================
# Token Units
# =============================================================================


def minor_units_to_token_units(amount: int, minor_decimals: int = 2, token_decimals: int = 6) -> int:
    """
    Convert integer minor units (cents) to token base units.

    USDC: 1234 cents -> 12.34 USDC -> 12_340_000 base units.

    Raises:
        ValidationError: Non-positive amount, or a conversion that would
            drop precision
    """
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"Amount must be a positive integer, got {amount!r}", field="amount")
    shift = token_decimals - minor_decimals
    if shift >= 0:
        return amount * 10 ** shift
    divisor = 10 ** -shift
    if amount % divisor:
        raise ValidationError(
            f"Amount {amount} cannot be represented with {token_decimals} token decimals",
            field="amount",
        )
    return amount // divisor


def token_units_to_minor_units(units: int, minor_decimals: int = 2, token_decimals: int = 6) -> int:
    """Convert token base units to minor units, rounding down."""
    shift = token_decimals - minor_decimals
    if shift >= 0:
        return units // 10 ** shift
    return units * 10 ** -shift


def encode_transfer(to_address: str, token_amount: int) -> str:
    """ERC-20 transfer(address,uint256) calldata."""
    return "0x" + (TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [to_address, token_amount])).hex()


def encode_balance_of(address: str) -> str:
    """ERC-20 balanceOf(address) calldata."""
    return "0x" + (BALANCE_OF_SELECTOR + abi_encode(["address"], [address])).hex()


# =============================================================================
# Chain Interface
# =============================================================================


class ChainInterface:
    """
    JSON-RPC client for a single treasury signer.

    Features:
    - Connection-level retry only (never resends a delivered request)
    - Receipt polling with bounded retry on transient read errors
    - Request/response audit log
    """

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        signer: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        confirmations: int = 1,
        poll_interval: float = 2.0,
        read_retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize chain interface.

        Args:
            rpc_url: JSON-RPC endpoint of a node that can sign for ``signer``
            token_address: ERC-20 token contract (USDC)
            signer: Treasury account that sends transfers
            timeout: Read timeout in seconds
            confirmations: Blocks to observe (including the inclusion block)
            poll_interval: Seconds between receipt polls
            read_retry: Retry policy for receipt/balance reads
            sleep: Injected for tests
        """
        self.rpc_url = rpc_url
        self.token_address = to_checksum_address(token_address)
        self.signer = to_checksum_address(signer) if signer else None
        self.timeout = timeout
        self.confirmations = max(1, confirmations)
        self.poll_interval = poll_interval
        self.read_retry = read_retry or RetryConfig(retryable_exceptions=(ExternalServiceError,))
        self.read_retry.sleep = sleep
        self._sleep = sleep
        self._ids = itertools.count(1)

        self.session = None
        self._setup_session()

        # Audit log
        self.audit_log: list[dict[str, Any]] = []

    def _setup_session(self):
        """Set up requests session with connection retry."""
        self.session = requests.Session()

        retry_strategy = Retry(
            total=MAX_CONNECT_RETRIES,
            connect=MAX_CONNECT_RETRIES,
            read=0,
            status=0,
            backoff_factor=RETRY_BACKOFF_FACTOR,
            allowed_methods=None,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "Punto-Settlement/1",
            }
        )

    def _rpc(self, method: str, params: list[Any], delivery_critical: bool = False) -> Any:
        """
        Make a JSON-RPC call.

        Args:
            method: RPC method name
            params: Positional params
            delivery_critical: The call has side effects, so a dropped
                connection after sending is ambiguous

        Returns:
            The ``result`` member of the response

        Raises:
            RpcError: The node returned an error object
            TransferStatusUnknownError: Ambiguous failure of a delivery-critical call
            ExternalServiceError: Any other transport failure
        """
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        body_str = json.dumps(body)
        request_log = {
            "timestamp": datetime.now(UTC).isoformat(),
            "method": method,
            "body_hash": hashlib.sha256(body_str.encode()).hexdigest(),
        }

        try:
            response = self.session.post(
                self.rpc_url,
                data=body_str,
                timeout=(CONNECT_TIMEOUT, self.timeout),
            )
        except requests.exceptions.ConnectTimeout as e:
            request_log["error"] = "connect_timeout"
            self.audit_log.append(request_log)
            raise ExternalServiceError(f"{method}: connection timed out", service="chain", cause=e) from e
        except requests.exceptions.RequestException as e:
            request_log["error"] = f"transport_error: {e!s}"
            self.audit_log.append(request_log)
            if delivery_critical:
                raise TransferStatusUnknownError(
                    f"{method}: connection lost after sending, transfer status unknown",
                    service="chain",
                    cause=e,
                ) from e
            raise ExternalServiceError(f"{method}: {e!s}", service="chain", cause=e) from e

        request_log["status_code"] = response.status_code
        self.audit_log.append(request_log)

        if not response.ok:
            raise ExternalServiceError(
                f"{method}: HTTP {response.status_code}: {response.text[:200]}", service="chain"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ExternalServiceError(f"{method}: invalid JSON response", service="chain", cause=e) from e

        if payload.get("error"):
            error = payload["error"]
            raise RpcError(method, error.get("code"), error.get("message", "unknown error"))

        return payload.get("result")

    # =========================================================================
    # Transfers
    # =========================================================================

    def submit_transfer(self, to_address: str, token_amount: int) -> PendingTransfer:
        """
        Broadcast a single token transfer from the treasury signer.

        Raises:
            ChainRejectionError: The signer declined or the node refused the
                transaction; nothing was broadcast
            TransferStatusUnknownError: Connection dropped after sending
            ExternalServiceError: The node could not be reached
        """
        if not self.signer:
            raise ValidationError("No treasury signer configured", field="TREASURY_SIGNER")

        to_address = to_checksum_address(to_address)
        tx = {
            "from": self.signer,
            "to": self.token_address,
            "data": encode_transfer(to_address, token_amount),
            "value": "0x0",
        }

        try:
            tx_hash = self._rpc("eth_sendTransaction", [tx], delivery_critical=True)
        except RpcError as e:
            reason = "declined by signer" if e.rpc_code == USER_REJECTED_CODE else e.rpc_message
            logger.warning("Transfer to %s not broadcast: %s", to_address, reason)
            raise ChainRejectionError(f"Transfer not broadcast: {reason}") from e

        logger.info(
            "Broadcast transfer %s: %d units to %s", tx_hash, token_amount, to_address
        )
        return PendingTransfer(transaction_hash=tx_hash, to_address=to_address, token_amount=token_amount)

    def get_receipt(self, transaction_hash: str) -> TransferReceipt | None:
        """Fetch a receipt, or None while the transaction is unmined."""
        result = self._rpc("eth_getTransactionReceipt", [transaction_hash])
        if not result:
            return None
        return TransferReceipt.from_rpc(result)

    def block_number(self) -> int:
        return int(self._rpc("eth_blockNumber", []), 16)

    def await_confirmation(self, pending: PendingTransfer) -> TransferReceipt:
        """
        Block until the transfer is included and has enough confirmations.

        There is no timeout: a broadcast transfer cannot be cancelled, so
        the caller decides how long to wait.

        Raises:
            ChainRejectionError: The transaction reverted
            ExternalServiceError: Reads kept failing past the retry policy
        """
        tx_hash = pending.transaction_hash
        while True:
            receipt = retry_call(self.get_receipt, args=(tx_hash,), config=self.read_retry)
            if receipt is not None:
                break
            self._sleep(self.poll_interval)

        if not receipt.success:
            logger.warning("Transfer %s reverted in block %d", tx_hash, receipt.block_number)
            raise ChainRejectionError(
                f"Transaction {tx_hash} reverted",
                transaction_hash=tx_hash,
                reverted=True,
                block_number=receipt.block_number,
            )

        target = receipt.block_number + self.confirmations - 1
        while retry_call(self.block_number, config=self.read_retry) < target:
            self._sleep(self.poll_interval)

        logger.info("Transfer %s confirmed in block %d", tx_hash, receipt.block_number)
        return receipt

    # =========================================================================
    # Reads
    # =========================================================================

    def get_token_balance(self, address: str) -> int:
        """Token balance of an address in base units."""
        call = {"to": self.token_address, "data": encode_balance_of(to_checksum_address(address))}
        result = retry_call(self._rpc, args=("eth_call", [call, "latest"]), config=self.read_retry)
        return int(result, 16) if result and result != "0x" else 0

    def health_check(self) -> dict[str, Any]:
        """Report chain id and head block."""
        return {
            "chain_id": int(self._rpc("eth_chainId", []), 16),
            "block_number": self.block_number(),
            "signer": self.signer,
            "token": self.token_address,
        }

    def get_audit_log(self, limit: int = 100) -> list[dict[str, Any]]:
        return self.audit_log[-limit:]


# =============================================================================
# Mock Implementation
# =============================================================================


class MockChainInterface(ChainInterface):
    """
    Mock chain interface for tests and local development.

    Simulates a node holding one token contract: balances move on mined
    transfers, receipts appear when blocks are mined.
    """

    def __init__(
        self,
        signer: str = "0x000000000000000000000000000000000000dEaD",
        token_address: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        auto_mine: bool = True,
        start_block: int = 100,
        confirmations: int = 1,
    ):
        super().__init__(
            rpc_url="http://mock:8545",
            token_address=token_address,
            signer=signer,
            confirmations=confirmations,
            poll_interval=0,
            sleep=self._on_sleep,
        )
        self.auto_mine = auto_mine
        self.block = start_block
        self.balances: dict[str, int] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self._unmined: list[str] = []
        self._reject_next: str | None = None
        self._revert_next = False
        self._fail_next_send = False

    # Test controls

    def set_balance(self, address: str, units: int) -> None:
        self.balances[to_checksum_address(address)] = units

    def balance_of(self, address: str) -> int:
        return self.balances.get(to_checksum_address(address), 0)

    def reject_next(self, reason: str = "User rejected the request.") -> None:
        """Make the next eth_sendTransaction fail as if the signer declined."""
        self._reject_next = reason

    def revert_next(self) -> None:
        """Make the next broadcast transfer revert when mined."""
        self._revert_next = True

    def drop_next_send(self) -> None:
        """Make the next eth_sendTransaction lose its connection after sending."""
        self._fail_next_send = True

    def mine(self) -> int:
        """Mine one block containing every unmined transaction."""
        self.block += 1
        for tx_hash in self._unmined:
            tx = self.transactions[tx_hash]
            success = not tx["revert"]
            if success:
                sender = self.signer
                if self.balances.get(sender, 0) < tx["amount"]:
                    success = False
                else:
                    self.balances[sender] -= tx["amount"]
                    self.balances[tx["recipient"]] = self.balances.get(tx["recipient"], 0) + tx["amount"]
            self.receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "blockNumber": hex(self.block),
                "status": "0x1" if success else "0x0",
                "gasUsed": hex(52000),
            }
        self._unmined = []
        return self.block

    def get_sent_transfers(self) -> list[dict[str, Any]]:
        return [dict(tx, hash=h) for h, tx in self.transactions.items()]

    def _on_sleep(self, _seconds: float) -> None:
        # Waiting for a receipt advances the simulated chain
        if self.auto_mine:
            self.mine()

    def _rpc(self, method: str, params: list[Any], delivery_critical: bool = False) -> Any:
        """Override to use simulated chain state instead of HTTP."""
        self.audit_log.append(
            {"timestamp": datetime.now(UTC).isoformat(), "method": method, "mock": True}
        )

        if method == "eth_sendTransaction":
            return self._mock_send(params[0])
        elif method == "eth_getTransactionReceipt":
            if self.auto_mine and params[0] in self._unmined:
                self.mine()
            return self.receipts.get(params[0])
        elif method == "eth_blockNumber":
            return hex(self.block)
        elif method == "eth_chainId":
            return hex(84532)
        elif method == "eth_call":
            data = bytes.fromhex(params[0]["data"][2:])
            (address,) = abi_decode(["address"], data[4:])
            return hex(self.balance_of(address))

        raise RpcError(method, -32601, "Method not found")

    def _mock_send(self, tx: dict[str, Any]) -> str:
        if self._reject_next is not None:
            reason, self._reject_next = self._reject_next, None
            raise RpcError("eth_sendTransaction", USER_REJECTED_CODE, reason)

        data = bytes.fromhex(tx["data"][2:])
        recipient, amount = abi_decode(["address", "uint256"], data[4:])
        tx_hash = "0x" + hashlib.sha256(f"{tx['data']}:{len(self.transactions)}".encode()).hexdigest()
        self.transactions[tx_hash] = {
            "recipient": to_checksum_address(recipient),
            "amount": amount,
            "revert": self._revert_next,
        }
        self._revert_next = False
        self._unmined.append(tx_hash)

        if self._fail_next_send:
            self._fail_next_send = False
            raise TransferStatusUnknownError(
                "eth_sendTransaction: connection lost after sending, transfer status unknown",
                service="chain",
            )
        return tx_hash


# =============================================================================
# Module-level factory
# =============================================================================


def build_chain_interface(settings) -> ChainInterface:
    """Build the chain interface described by a Settings instance."""
    if settings.use_mock_chain:
        mock = MockChainInterface(
            signer=settings.treasury_signer or "0x000000000000000000000000000000000000dEaD",
            token_address=settings.token_address,
            confirmations=settings.confirmations,
        )
        logger.warning("Using simulated chain; no funds will move")
        return mock
    return ChainInterface(
        rpc_url=settings.chain_rpc_url,
        token_address=settings.token_address,
        signer=settings.treasury_signer,
        confirmations=settings.confirmations,
        poll_interval=settings.receipt_poll_interval,
    )
