"""
Verdict and Payment Message Validation

Gatekeeper for everything that reaches the verdict log. A verdict is checked
for, in order:
- structure (issuer and target present and distinct)
- details size (<= max_verdict_size bytes, UTF-8)
- evidence (a verdict without tx_hash must carry evidence blobs)
- issuer signature over the canonical payload
- freshness (issuer_seq_no strictly above the issuer's high-water mark)

Signed payment messages are checked for signature, nonce replay and
deadline. State (high-water marks, seen nonces) only advances on acceptance.
"""

import logging
import time
from typing import Dict, Optional, Protocol

from .canonical import payment_payload, verdict_payload
from .config import ReputationConfig
from .errors import RejectionReason
from .locks import PeerLockRegistry
from .models import SignedTransactionMessage, TransactionVerdict, ValidationResult

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    """Key-management collaborator used to check signatures."""

    def verify(self, peer_id: str, payload: bytes, signature: bytes) -> bool:
        ...


def _decode_signature(signature_hex: str) -> Optional[bytes]:
    if not signature_hex:
        return None
    try:
        return bytes.fromhex(signature_hex)
    except ValueError:
        return None


class VerdictValidator:
    """Validates incoming verdicts and signed payment messages."""

    def __init__(
        self,
        config: ReputationConfig,
        verifier: SignatureVerifier,
        locks: Optional[PeerLockRegistry] = None,
    ):
        """
        Initialize validator.

        Args:
            config: Reputation configuration
            verifier: Key-management collaborator (peer_id -> public key checks)
            locks: Lock registry shared with the service; a private one if omitted
        """
        self.config = config
        self.verifier = verifier
        self.locks = locks or PeerLockRegistry()

        # issuer_id -> highest accepted issuer_seq_no
        self._high_water: Dict[str, int] = {}
        # sender -> {nonce: deadline}
        self._seen_nonces: Dict[str, Dict[str, float]] = {}

        self.stats = {
            "accepted": 0,
            "rejected": 0,
            "payments_accepted": 0,
            "payments_rejected": 0,
        }

    # -- Verdicts --

    def validate(self, verdict: TransactionVerdict) -> ValidationResult:
        """
        Validate a verdict and, if accepted, advance the issuer's high-water mark.

        Args:
            verdict: Incoming verdict

        Returns:
            ValidationResult (accepted, or rejected with a reason)
        """
        result = self._check_static(verdict)
        if result is None:
            result = self._check_signature(verdict)

        if result is None:
            # Check-and-advance must be atomic per issuer
            with self.locks.lock_for(f"issuer:{verdict.issuer_id}"):
                last = self._high_water.get(verdict.issuer_id)
                if last is not None and verdict.issuer_seq_no <= last:
                    result = ValidationResult.rejected(
                        RejectionReason.DUPLICATE_VERDICT,
                        f"seq_no {verdict.issuer_seq_no} <= last seen {last}",
                    )
                else:
                    self._high_water[verdict.issuer_id] = verdict.issuer_seq_no
                    result = ValidationResult.ok()

        if result.accepted:
            self.stats["accepted"] += 1
        else:
            self.stats["rejected"] += 1
            logger.warning(
                f"Rejected verdict from {verdict.issuer_id[:16]}... "
                f"(seq {verdict.issuer_seq_no}) about {verdict.target_id[:16]}...: "
                f"{result.reason.value} {result.detail}".rstrip()
            )
        return result

    def _check_static(self, verdict: TransactionVerdict) -> Optional[ValidationResult]:
        if not verdict.issuer_id:
            return ValidationResult.rejected(RejectionReason.MALFORMED, "issuer_id missing")
        if not verdict.target_id:
            return ValidationResult.rejected(RejectionReason.MALFORMED, "target_id missing")
        if verdict.issuer_id == verdict.target_id:
            return ValidationResult.rejected(
                RejectionReason.MALFORMED, "issuer_id must not equal target_id"
            )
        if verdict.issuer_seq_no < 0:
            return ValidationResult.rejected(RejectionReason.MALFORMED, "negative issuer_seq_no")

        if verdict.details_size > self.config.max_verdict_size:
            return ValidationResult.rejected(
                RejectionReason.PAYLOAD_TOO_LARGE,
                f"details {verdict.details_size} bytes > {self.config.max_verdict_size}",
            )

        if verdict.tx_hash is None and not verdict.has_evidence:
            return ValidationResult.rejected(
                RejectionReason.MISSING_EVIDENCE, "non-payment complaint without evidence"
            )
        return None

    def _check_signature(self, verdict: TransactionVerdict) -> Optional[ValidationResult]:
        signature = _decode_signature(verdict.issuer_sig)
        if signature is None:
            return ValidationResult.rejected(
                RejectionReason.INVALID_SIGNATURE, "missing or undecodable signature"
            )
        if not self.verifier.verify(verdict.issuer_id, verdict_payload(verdict), signature):
            return ValidationResult.rejected(RejectionReason.INVALID_SIGNATURE)
        return None

    def last_seq_no(self, issuer_id: str) -> Optional[int]:
        return self._high_water.get(issuer_id)

    def restore_high_water(self, issuer_id: str, seq_no: int) -> None:
        """Raise an issuer's high-water mark (used when replaying the store)."""
        with self.locks.lock_for(f"issuer:{issuer_id}"):
            if seq_no > self._high_water.get(issuer_id, -1):
                self._high_water[issuer_id] = seq_no

    # -- Payment messages --

    def validate_payment_message(
        self,
        message: SignedTransactionMessage,
        now: Optional[float] = None,
    ) -> ValidationResult:
        """
        Validate a signed payment message before a transfer starts.

        Checks the downloader's signature, rejects a nonce already used by the
        same sender and a deadline that has already passed.
        """
        now = time.time() if now is None else now

        result: Optional[ValidationResult] = None
        signature = _decode_signature(message.downloader_signature)
        if signature is None or not self.verifier.verify(
            message.from_address, payment_payload(message), signature
        ):
            result = ValidationResult.rejected(RejectionReason.INVALID_SIGNATURE)
        elif message.deadline < now:
            result = ValidationResult.rejected(
                RejectionReason.DEADLINE_EXPIRED, f"deadline {message.deadline} < now {now:.0f}"
            )

        if result is None:
            with self.locks.lock_for(f"sender:{message.from_address}"):
                seen = self._seen_nonces.setdefault(message.from_address, {})
                if message.nonce in seen:
                    result = ValidationResult.rejected(RejectionReason.REPLAYED_NONCE)
                else:
                    seen[message.nonce] = message.deadline
                    result = ValidationResult.ok()

        if result.accepted:
            self.stats["payments_accepted"] += 1
        else:
            self.stats["payments_rejected"] += 1
            logger.warning(
                f"Rejected payment message from {message.from_address[:16]}... "
                f"(nonce {message.nonce}): {result.reason.value}"
            )
        return result

    def is_settlement_expired(
        self,
        message: SignedTransactionMessage,
        now: Optional[float] = None,
    ) -> bool:
        """
        True once deadline + grace period has elapsed at settlement time.

        The settlement layer is expected to raise a bad or disputed verdict;
        this only reports the expiry.
        """
        now = time.time() if now is None else now
        return now > message.deadline + self.config.payment_grace_period

    def prune_nonces(self, now: Optional[float] = None) -> int:
        """
        Forget nonces of messages that can no longer be accepted anyway.

        A message past its deadline is rejected before the nonce check, so
        its nonce no longer needs to be remembered.

        Returns:
            Number of nonces forgotten
        """
        now = time.time() if now is None else now
        removed = 0
        for sender in list(self._seen_nonces):
            with self.locks.lock_for(f"sender:{sender}"):
                nonces = self._seen_nonces.get(sender)
                if nonces is None:
                    continue
                stale = [n for n, deadline in nonces.items() if deadline < now]
                for nonce in stale:
                    del nonces[nonce]
                removed += len(stale)
                if not nonces:
                    del self._seen_nonces[sender]
        return removed

    def reset(self) -> None:
        self._high_water.clear()
        self._seen_nonces.clear()
