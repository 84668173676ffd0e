"""
Reputation Error Taxonomy

Rejections of untrusted input are returned as values (RejectionReason on a
ValidationResult) and never reach the verdict log. Exceptions are reserved
for infrastructure failures the caller has to know about.
"""

from enum import Enum


class RejectionReason(Enum):
    """Why a verdict or payment message was refused at the boundary."""

    INVALID_SIGNATURE = "invalid_signature"
    DUPLICATE_VERDICT = "duplicate_verdict"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    MISSING_EVIDENCE = "missing_evidence"
    MALFORMED = "malformed"

    # Payment message / handshake
    REPLAYED_NONCE = "replayed_nonce"
    DEADLINE_EXPIRED = "deadline_expired"
    DEADLINE_TOO_SOON = "deadline_too_soon"
    LOW_REPUTATION = "low_reputation"
    BLACKLISTED = "blacklisted"
    INSUFFICIENT_BALANCE = "insufficient_balance"


class ReputationError(Exception):
    """Base class for reputation subsystem errors."""


class ObserverUnavailable(ReputationError):
    """Chain observer could not answer (transient, retried with backoff)."""


class PersistenceError(ReputationError):
    """Durable append failed; the verdict was not recorded."""


class ConfigurationError(ReputationError):
    """Reputation configuration could not be loaded."""
