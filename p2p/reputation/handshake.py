"""
Payment Handshake

Before a seeder starts serving a file, the downloader sends a signed payment
message. The seeder accepts it only if:
1. the message itself is valid (signature, deadline, fresh nonce)
2. the downloader is not blacklisted and scores at least Low
3. the downloader's on-chain balance covers price x min_balance_multiplier
4. the deadline leaves at least five minutes for the transfer
"""

import logging
import secrets
import time
from typing import Callable, Optional, Protocol

from .canonical import payment_payload
from .config import ReputationConfig
from .errors import ObserverUnavailable, RejectionReason
from .models import SignedTransactionMessage, TrustLevel, ValidationResult
from .validator import VerdictValidator

logger = logging.getLogger(__name__)


MIN_HANDSHAKE_LEVEL = TrustLevel.LOW
MIN_DEADLINE_MARGIN = 300  # Seconds


class BalanceSource(Protocol):
    async def get_balance(self, address: str) -> int:
        ...


class Signer(Protocol):
    peer_id: str

    def sign_hex(self, payload: bytes) -> str:
        ...


def generate_nonce(now: Optional[float] = None) -> str:
    """Fresh nonce of the form <ms timestamp>-<random hex>."""
    now = time.time() if now is None else now
    return f"{int(now * 1000)}-{secrets.token_hex(8)}"


def create_payment_message(
    identity: Signer,
    to: str,
    amount: int,
    file_hash: str,
    config: ReputationConfig,
    deadline: Optional[float] = None,
    now: Optional[float] = None,
    from_address: Optional[str] = None,
) -> SignedTransactionMessage:
    """
    Build and sign a payment message as the downloader.

    Args:
        identity: Downloader's signing identity
        to: Seeder address
        amount: Payment amount
        file_hash: Hash of the file being bought
        config: Supplies the default deadline
        deadline: Explicit deadline (default now + payment_deadline_default)
        now: Signing time
        from_address: Payer address if it differs from the identity's peer id

    Returns:
        Signed SignedTransactionMessage
    """
    now = time.time() if now is None else now
    if deadline is None:
        deadline = int(now) + config.payment_deadline_default
    if deadline <= now:
        raise ValueError("payment deadline must be in the future")

    message = SignedTransactionMessage(
        from_address=from_address or identity.peer_id,
        to=to,
        amount=amount,
        file_hash=file_hash,
        nonce=generate_nonce(now),
        deadline=deadline,
    )
    return message.with_signature(identity.sign_hex(payment_payload(message)))


class HandshakeValidator:
    """Seeder-side checks on a downloader's payment message."""

    def __init__(
        self,
        config: ReputationConfig,
        validator: VerdictValidator,
        balances: BalanceSource,
        score_of: Callable[[str, float], float],
        is_blacklisted: Callable[[str, float], bool],
    ):
        """
        Initialize handshake validator.

        Args:
            config: Reputation configuration
            validator: Payment-message validator (signature, nonce, deadline)
            balances: Chain observer answering get_balance(address)
            score_of: Reputation score of a peer at a given time
            is_blacklisted: Blacklist check for a peer at a given time
        """
        self.config = config
        self.validator = validator
        self.balances = balances
        self.score_of = score_of
        self.is_blacklisted = is_blacklisted

        self.stats = {
            "accepted": 0,
            "rejected": 0,
        }

    async def validate_handshake(
        self,
        message: SignedTransactionMessage,
        file_price: int,
        now: Optional[float] = None,
    ) -> ValidationResult:
        """
        Validate a payment handshake.

        The message nonce is consumed by step 1 even if a later check fails;
        the downloader has to sign a new message to retry.
        """
        now = time.time() if now is None else now
        result = await self._check(message, file_price, now)

        if result.accepted:
            self.stats["accepted"] += 1
            logger.info(
                f"Accepted handshake from {message.from_address[:16]}... "
                f"for file {message.file_hash[:16]}..."
            )
        else:
            self.stats["rejected"] += 1
            logger.warning(
                f"Rejected handshake from {message.from_address[:16]}...: "
                f"{result.reason.value} {result.detail}".rstrip()
            )
        return result

    async def _check(
        self,
        message: SignedTransactionMessage,
        file_price: int,
        now: float,
    ) -> ValidationResult:
        result = self.validator.validate_payment_message(message, now)
        if not result.accepted:
            return result

        downloader = message.from_address
        if self.is_blacklisted(downloader, now):
            return ValidationResult.rejected(RejectionReason.BLACKLISTED)

        score = self.score_of(downloader, now)
        if score < MIN_HANDSHAKE_LEVEL.min_score:
            return ValidationResult.rejected(
                RejectionReason.LOW_REPUTATION,
                f"score {score:.3f} < {MIN_HANDSHAKE_LEVEL.min_score}",
            )

        required = file_price * self.config.min_balance_multiplier
        try:
            balance = await self.balances.get_balance(downloader)
        except ObserverUnavailable as e:
            # No balance proof, no transfer
            return ValidationResult.rejected(
                RejectionReason.INSUFFICIENT_BALANCE, f"balance unavailable: {e}"
            )
        if balance < required:
            return ValidationResult.rejected(
                RejectionReason.INSUFFICIENT_BALANCE, f"balance {balance} < {required:g}"
            )

        if message.deadline < now + MIN_DEADLINE_MARGIN:
            return ValidationResult.rejected(
                RejectionReason.DEADLINE_TOO_SOON,
                f"deadline {message.deadline} < now + {MIN_DEADLINE_MARGIN}s",
            )

        return ValidationResult.ok()
