"""
Punto Settlement - Identity Resolution

Maps wallet addresses to user identities and back. Reviewers and
recipients sign in with a wallet; the ledger stores user ids, the payout
processor needs the wallet address to send funds to.
"""

import logging

from eth_utils import is_address, to_checksum_address

from entities import USERS, User, generate_id
from settlement_exceptions import DuplicateError, NotFoundError, ValidationError, storage_errors
from storage import StorageBackend

logger = logging.getLogger(__name__)


def normalize_address(address: str, field: str = "wallet_address") -> str:
    """
    Validate an EVM address and return its checksum form.

    Raises:
        ValidationError: If the address is malformed
    """
    if not isinstance(address, str) or not is_address(address):
        raise ValidationError(f"Invalid wallet address: {address!r}", field=field)
    return to_checksum_address(address)


def looks_like_address(value: str) -> bool:
    return isinstance(value, str) and value.startswith("0x") and len(value) == 42


class IdentityResolver:
    """Resolves wallet addresses and user ids against the users table."""

    def __init__(self, store: StorageBackend):
        self.store = store

    def register(self, wallet_address: str, display_name: str | None = None) -> User:
        """
        Return the user owning a wallet, creating it on first sight.

        Mirrors the "ensure user" call the wallet sign-in flow makes.
        """
        address = normalize_address(wallet_address)
        existing = self.find_by_wallet(address)
        if existing:
            return existing

        user = User(id=generate_id("usr"), wallet_address=address, display_name=display_name)
        try:
            with storage_errors("Register user"):
                self.store.insert(USERS, user.to_dict())
        except DuplicateError:
            # A concurrent sign-in registered the wallet first
            winner = self.find_by_wallet(address)
            if winner is None:
                raise
            return winner
        logger.info("Registered user %s", user.id)
        return user

    def find_by_wallet(self, address: str) -> User | None:
        with storage_errors("Look up wallet"):
            rows = self.store.find(USERS, {"wallet_address": address})
        return User.from_dict(rows[0]) if rows else None

    def get_user(self, user_id: str) -> User:
        with storage_errors("Load user"):
            row = self.store.get(USERS, user_id)
        if row is None:
            raise NotFoundError("User", user_id)
        return User.from_dict(row)

    def resolve_user_id(self, reference: str) -> str:
        """
        Resolve a reviewer/recipient reference to a user id.

        Accepts either a wallet address or a user id.

        Raises:
            ValidationError: Empty reference or malformed address
            NotFoundError: No user owns the wallet / has the id
        """
        if not reference or not isinstance(reference, str):
            raise ValidationError("User reference is required", field="user")

        if looks_like_address(reference):
            address = normalize_address(reference)
            user = self.find_by_wallet(address)
            if user is None:
                raise NotFoundError("User", address)
            return user.id

        return self.get_user(reference).id

    def wallet_for(self, user_id: str) -> str:
        """
        Wallet address funds for this user must be sent to.

        Raises:
            NotFoundError: Unknown user
            ValidationError: User has no usable wallet on file
        """
        user = self.get_user(user_id)
        if not user.wallet_address:
            raise ValidationError(f"User {user_id} has no wallet address", field="recipient_id")
        return normalize_address(user.wallet_address, field="recipient_wallet")
