"""
Shared fixtures for the reputation test suite.
"""

import itertools

import pytest

from chiral.p2p.identity import NodeIdentity, PeerKeyring
from chiral.p2p.reputation.canonical import verdict_payload
from chiral.p2p.reputation.config import ReputationConfig
from chiral.p2p.reputation.models import TransactionVerdict, VerdictOutcome


NOW = 1_700_000_000
DAY = 86400

_DEFAULT = object()


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, isolated component tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")


def sign_verdict(identity: NodeIdentity, verdict: TransactionVerdict) -> TransactionVerdict:
    return verdict.with_signature(identity.sign_hex(verdict_payload(verdict)))


@pytest.fixture
def config():
    return ReputationConfig()


@pytest.fixture
def issuer():
    return NodeIdentity.generate()


@pytest.fixture
def other_identity():
    return NodeIdentity.generate()


@pytest.fixture
def keyring(issuer, other_identity):
    ring = PeerKeyring()
    ring.register_identity(issuer)
    ring.register_identity(other_identity)
    return ring


@pytest.fixture
def make_verdict(issuer):
    """
    Factory for signed verdicts from `issuer` (or another identity).

    Sequence numbers increase per factory unless given explicitly. Verdicts
    without a tx_hash get a default evidence blob.
    """
    counter = itertools.count()

    def factory(
        target_id="target-peer",
        outcome=VerdictOutcome.GOOD,
        issued_at=NOW,
        tx_hash=None,
        evidence_blobs=_DEFAULT,
        details=None,
        seq_no=None,
        identity=None,
        tx_receipt=None,
        sign=True,
    ):
        identity = identity or issuer
        if evidence_blobs is _DEFAULT:
            evidence_blobs = ("QmEvidence",) if tx_hash is None else None
        verdict = TransactionVerdict(
            target_id=target_id,
            outcome=outcome,
            issued_at=issued_at,
            issuer_id=identity.peer_id,
            issuer_seq_no=next(counter) if seq_no is None else seq_no,
            tx_hash=tx_hash,
            details=details,
            tx_receipt=tx_receipt,
            evidence_blobs=evidence_blobs,
        )
        return sign_verdict(identity, verdict) if sign else verdict

    return factory
