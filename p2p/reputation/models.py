"""
Reputation Data Model

Transaction-backed reputation primitives:
- TransactionVerdict: signed claim by one peer about a transaction with another
- SignedTransactionMessage: off-chain payment promise sent during handshake
- BlacklistEntry / CachedScore: per-peer derived state
- PeerReputationSummary / ReputationAnalytics: read models

Verdicts are immutable once built. Only their confirmation status changes,
and that lives in the ConfirmationTracker, not on the verdict.
"""

import hashlib
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import msgpack

from .errors import RejectionReason


DEFAULT_METRIC = "transaction"
NEUTRAL_SCORE = 0.5
DHT_KEY_SUFFIX = b"tx-rep"


class VerdictOutcome(Enum):
    """Outcome of a transaction as seen by the issuer."""

    GOOD = "good"
    DISPUTED = "disputed"
    BAD = "bad"

    @property
    def value_score(self) -> float:
        """Numeric contribution of this outcome to a peer's raw score."""
        return _OUTCOME_VALUES[self]


_OUTCOME_VALUES = {
    VerdictOutcome.GOOD: 1.0,
    VerdictOutcome.DISPUTED: 0.5,
    VerdictOutcome.BAD: 0.0,
}


class TrustLevel(Enum):
    """Trust tiers over half-open score ranges (Trusted includes 1.0)."""

    UNKNOWN = "Unknown"  # [0.0, 0.2)
    LOW = "Low"          # [0.2, 0.4)
    MEDIUM = "Medium"    # [0.4, 0.6)
    HIGH = "High"        # [0.6, 0.8)
    TRUSTED = "Trusted"  # [0.8, 1.0]

    @property
    def rank(self) -> int:
        return _TRUST_ORDER.index(self)

    @property
    def min_score(self) -> float:
        return TRUST_LEVEL_RANGES[self][0]

    @property
    def max_score(self) -> float:
        return TRUST_LEVEL_RANGES[self][1]

    def __lt__(self, other: "TrustLevel") -> bool:
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "TrustLevel") -> bool:
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "TrustLevel") -> bool:
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "TrustLevel") -> bool:
        if not isinstance(other, TrustLevel):
            return NotImplemented
        return self.rank >= other.rank

    @staticmethod
    def from_score(score: float) -> "TrustLevel":
        from .classifier import classify
        return classify(score)


_TRUST_ORDER = [
    TrustLevel.UNKNOWN,
    TrustLevel.LOW,
    TrustLevel.MEDIUM,
    TrustLevel.HIGH,
    TrustLevel.TRUSTED,
]

TRUST_LEVEL_RANGES: Dict[TrustLevel, Tuple[float, float]] = {
    TrustLevel.UNKNOWN: (0.0, 0.2),
    TrustLevel.LOW: (0.2, 0.4),
    TrustLevel.MEDIUM: (0.4, 0.6),
    TrustLevel.HIGH: (0.6, 0.8),
    TrustLevel.TRUSTED: (0.8, 1.0),
}


@dataclass(frozen=True)
class TransactionVerdict:
    """
    Signed verdict about a transaction with `target_id`.

    `tx_hash` is None for non-payment complaints, which must then carry
    evidence blobs. `issuer_sig` is the hex Ed25519 signature over the
    canonical payload of every other field.
    """

    target_id: str
    outcome: VerdictOutcome
    issued_at: float
    issuer_id: str
    issuer_seq_no: int
    issuer_sig: str = ""
    tx_hash: Optional[str] = None
    details: Optional[str] = None
    metric: Optional[str] = None
    tx_receipt: Optional[str] = None
    evidence_blobs: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        if isinstance(self.outcome, str):
            object.__setattr__(self, "outcome", VerdictOutcome(self.outcome))
        if self.evidence_blobs is not None and not isinstance(self.evidence_blobs, tuple):
            object.__setattr__(self, "evidence_blobs", tuple(self.evidence_blobs))

    @property
    def key(self) -> Tuple[str, int]:
        """Identity of a verdict: (issuer_id, issuer_seq_no)."""
        return (self.issuer_id, self.issuer_seq_no)

    @property
    def effective_metric(self) -> str:
        return self.metric or DEFAULT_METRIC

    @property
    def is_payment_backed(self) -> bool:
        return self.tx_hash is not None

    @property
    def has_evidence(self) -> bool:
        return bool(self.evidence_blobs)

    @property
    def details_size(self) -> int:
        """Size of the details field in UTF-8 bytes."""
        return len(self.details.encode("utf-8")) if self.details else 0

    @property
    def dht_key(self) -> str:
        return self.dht_key_for_target(self.target_id)

    @staticmethod
    def dht_key_for_target(target_id: str) -> str:
        """DHT key for a target's verdicts: H(target_id || "tx-rep")."""
        hasher = hashlib.sha256()
        hasher.update(target_id.encode("utf-8"))
        hasher.update(DHT_KEY_SUFFIX)
        return hasher.hexdigest()

    def with_signature(self, signature: str) -> "TransactionVerdict":
        return replace(self, issuer_sig=signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "tx_hash": self.tx_hash,
            "outcome": self.outcome.value,
            "details": self.details,
            "metric": self.metric,
            "issued_at": self.issued_at,
            "issuer_id": self.issuer_id,
            "issuer_seq_no": self.issuer_seq_no,
            "issuer_sig": self.issuer_sig,
            "tx_receipt": self.tx_receipt,
            "evidence_blobs": list(self.evidence_blobs) if self.evidence_blobs is not None else None,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TransactionVerdict":
        blobs = d.get("evidence_blobs")
        return TransactionVerdict(
            target_id=d["target_id"],
            outcome=VerdictOutcome(d["outcome"]),
            issued_at=d["issued_at"],
            issuer_id=d["issuer_id"],
            issuer_seq_no=d["issuer_seq_no"],
            issuer_sig=d.get("issuer_sig", ""),
            tx_hash=d.get("tx_hash"),
            details=d.get("details"),
            metric=d.get("metric"),
            tx_receipt=d.get("tx_receipt"),
            evidence_blobs=tuple(blobs) if blobs is not None else None,
        )

    def to_bytes(self) -> bytes:
        """Serialize verdict for storage or network transmission."""
        return msgpack.packb(self.to_dict())

    @staticmethod
    def from_bytes(data: bytes) -> "TransactionVerdict":
        return TransactionVerdict.from_dict(msgpack.unpackb(data))


@dataclass(frozen=True)
class SignedTransactionMessage:
    """Payment promise from a downloader (`from`) to a seeder (`to`)."""

    from_address: str
    to: str
    amount: int
    file_hash: str
    nonce: str
    deadline: float
    downloader_signature: str = ""

    def with_signature(self, signature: str) -> "SignedTransactionMessage":
        return replace(self, downloader_signature=signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_address,
            "to": self.to,
            "amount": self.amount,
            "file_hash": self.file_hash,
            "nonce": self.nonce,
            "deadline": self.deadline,
            "downloader_signature": self.downloader_signature,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SignedTransactionMessage":
        return SignedTransactionMessage(
            from_address=d["from"],
            to=d["to"],
            amount=d["amount"],
            file_hash=d["file_hash"],
            nonce=d["nonce"],
            deadline=d["deadline"],
            downloader_signature=d.get("downloader_signature", ""),
        )


@dataclass
class BlacklistEntry:
    """A peer excluded from transactions."""

    peer_id: str
    reason: str
    blacklisted_at: float
    is_automatic: bool
    evidence: Optional[List[str]] = None

    def expires_at(self, retention_seconds: float) -> Optional[float]:
        """Expiry time for automatic entries; manual entries never expire."""
        if not self.is_automatic:
            return None
        return self.blacklisted_at + retention_seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "BlacklistEntry":
        return BlacklistEntry(
            peer_id=d["peer_id"],
            reason=d["reason"],
            blacklisted_at=d["blacklisted_at"],
            is_automatic=d["is_automatic"],
            evidence=d.get("evidence"),
        )


@dataclass(frozen=True)
class CachedScore:
    score: float
    trust_level: TrustLevel
    cached_at: float


@dataclass
class PeerReputationSummary:
    """Per-peer read model for peer selection and display."""

    peer_id: str
    score: float
    trust_level: TrustLevel
    successful_transactions: int
    failed_transactions: int
    total_verdicts: int
    last_updated: Optional[float]
    blacklisted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["trust_level"] = self.trust_level.value
        return d


@dataclass
class ReputationAnalytics:
    """Network-wide snapshot over all tracked peers."""

    total_peers: int
    average_score: float
    trust_level_distribution: Dict[TrustLevel, int]
    recent_verdicts: List[TransactionVerdict] = field(default_factory=list)
    top_performers: List[PeerReputationSummary] = field(default_factory=list)
    blacklisted_peers: int = 0
    pending_confirmations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_peers": self.total_peers,
            "average_score": self.average_score,
            "trust_level_distribution": {
                level.value: count for level, count in self.trust_level_distribution.items()
            },
            "recent_verdicts": [v.to_dict() for v in self.recent_verdicts],
            "top_performers": [s.to_dict() for s in self.top_performers],
            "blacklisted_peers": self.blacklisted_peers,
            "pending_confirmations": self.pending_confirmations,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Accepted, or Rejected(reason) with an optional human-readable detail."""

    accepted: bool
    reason: Optional[RejectionReason] = None
    detail: str = ""

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(accepted=True)

    @classmethod
    def rejected(cls, reason: RejectionReason, detail: str = "") -> "ValidationResult":
        return cls(accepted=False, reason=reason, detail=detail)

    def __bool__(self) -> bool:
        return self.accepted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }
