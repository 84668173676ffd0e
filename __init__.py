"""
Chiral - Transaction-Backed Peer Reputation

Decides whom to trust in the Chiral file-sharing network: signed verdicts
about completed transactions become a decayed per-peer score, a trust tier
and a blacklist decision.

Quick Start:
    >>> from chiral.p2p.identity import NodeIdentity, PeerKeyring
    >>> from chiral.p2p.reputation import ReputationConfig, VerdictOutcome
    >>> from chiral.p2p.reputation.service import ReputationService
    >>>
    >>> identity = NodeIdentity.generate()
    >>> service = ReputationService(ReputationConfig(), identity=identity)
    >>>
    >>> # File a complaint backed by evidence
    >>> service.file_complaint(peer_id, evidence_blobs=["QmProof..."])
    >>>
    >>> # Peer selection
    >>> score, level = service.get_score(peer_id)
    >>> service.is_blacklisted(peer_id)

Features:
    - Ed25519-signed verdicts with per-issuer replay protection
    - Chain confirmation tracking for payment-backed verdicts
    - Time-decayed, maturity-damped scoring
    - Manual, automatic and hybrid blacklisting
    - SQLite persistence, FastAPI server and operator CLI
"""

__version__ = "0.1.0"
__author__ = "Chiral Network Team"
