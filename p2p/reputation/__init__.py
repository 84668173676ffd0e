"""
Transaction-Backed Peer Reputation

Turns signed transaction verdicts into a decayed per-peer score, a trust tier
and a blacklist decision for peer selection.

The ReputationService lives in `.service` and is imported from there; it
depends on the storage backend and chain observer, which import this package.
"""

from .blacklist import BlacklistManager, BlacklistState
from .cache import ReputationCache
from .classifier import TrustClassifier, classify
from .config import BlacklistMode, ReputationConfig, DEFAULT_CONFIG
from .confirmation import ConfirmationStatus, ConfirmationTracker, PollResult
from .errors import (
    ConfigurationError,
    ObserverUnavailable,
    PersistenceError,
    RejectionReason,
    ReputationError,
)
from .models import (
    BlacklistEntry,
    CachedScore,
    PeerReputationSummary,
    ReputationAnalytics,
    SignedTransactionMessage,
    TransactionVerdict,
    TrustLevel,
    ValidationResult,
    VerdictOutcome,
)
from .scoring import ScoreEngine, calculate_score
from .validator import VerdictValidator

__all__ = [
    "BlacklistEntry",
    "BlacklistManager",
    "BlacklistMode",
    "BlacklistState",
    "CachedScore",
    "ConfigurationError",
    "ConfirmationStatus",
    "ConfirmationTracker",
    "DEFAULT_CONFIG",
    "ObserverUnavailable",
    "PeerReputationSummary",
    "PersistenceError",
    "PollResult",
    "RejectionReason",
    "ReputationAnalytics",
    "ReputationCache",
    "ReputationConfig",
    "ReputationError",
    "ScoreEngine",
    "SignedTransactionMessage",
    "TransactionVerdict",
    "TrustClassifier",
    "TrustLevel",
    "ValidationResult",
    "VerdictOutcome",
    "VerdictValidator",
    "calculate_score",
    "classify",
]
