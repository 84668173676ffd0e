"""
Peer Identity and Key Management

Each node has:
- An Ed25519 keypair, persisted as PEM under its data directory
- A peer ID (SHA-256 of the raw public key)

The PeerKeyring maps remote peer IDs (and blockchain addresses used in
payment messages) to their Ed25519 public keys and verifies signatures on
behalf of the reputation validator.
"""

import hashlib
import logging
import os
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

logger = logging.getLogger(__name__)


KEY_FILENAME = "node_key.pem"


def public_key_bytes(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def compute_peer_id(public_key: Union[ed25519.Ed25519PublicKey, bytes]) -> str:
    """Compute peer ID from public key (SHA-256 hash)."""
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key = public_key_bytes(public_key)
    return hashlib.sha256(public_key).hexdigest()


class NodeIdentity:
    """Local signing identity used by verdict and payment originators."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.peer_id = compute_peer_id(self.public_key)

    @classmethod
    def generate(cls) -> "NodeIdentity":
        return cls(ed25519.Ed25519PrivateKey.generate())

    @classmethod
    def load_or_generate(cls, data_dir: Union[str, Path]) -> "NodeIdentity":
        """Load existing key from `data_dir` or generate and save a new one."""
        key_path = Path(data_dir) / KEY_FILENAME

        if key_path.exists():
            with open(key_path, "rb") as f:
                private_key = serialization.load_pem_private_key(
                    f.read(),
                    password=None
                )
            if not isinstance(private_key, ed25519.Ed25519PrivateKey):
                raise ValueError(f"{key_path} does not hold an Ed25519 key")
            logger.info("Loaded existing peer identity")
            return cls(private_key)

        os.makedirs(data_dir, exist_ok=True)
        identity = cls.generate()
        pem = identity.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        with open(key_path, "wb") as f:
            f.write(pem)
        os.chmod(key_path, 0o600)

        logger.info(f"Generated new peer identity {identity.peer_id[:16]}...")
        return identity

    @property
    def public_key_bytes(self) -> bytes:
        return public_key_bytes(self.public_key)

    def sign(self, payload: bytes) -> bytes:
        """Sign a payload with the node's private key."""
        return self.private_key.sign(payload)

    def sign_hex(self, payload: bytes) -> str:
        return self.sign(payload).hex()


class PeerKeyring:
    """
    Registry of known peer public keys.

    Keys are registered under a peer ID or under a blockchain address (the
    `from` field of payment messages). Registering a key under its derived
    peer ID is the normal path; aliases cover addresses that are not
    derived from the key.
    """

    def __init__(self):
        self._keys: Dict[str, bytes] = {}
        self._lock = RLock()

    def register(self, public_key: bytes, alias: Optional[str] = None) -> str:
        """
        Register a raw 32-byte Ed25519 public key.

        Args:
            public_key: Raw public key bytes
            alias: Optional extra ID (e.g. wallet address) for the same key

        Returns:
            The peer ID derived from the key
        """
        # Raises ValueError on malformed keys
        ed25519.Ed25519PublicKey.from_public_bytes(public_key)

        peer_id = compute_peer_id(public_key)
        with self._lock:
            self._keys[peer_id] = public_key
            if alias:
                self._keys[alias] = public_key
        return peer_id

    def register_identity(self, identity: NodeIdentity, alias: Optional[str] = None) -> str:
        return self.register(identity.public_key_bytes, alias=alias)

    def get_public_key(self, peer_id: str) -> Optional[bytes]:
        return self._keys.get(peer_id)

    def knows(self, peer_id: str) -> bool:
        return peer_id in self._keys

    def verify(self, peer_id: str, payload: bytes, signature: bytes) -> bool:
        """Verify a peer's signature on a payload. Unknown peers never verify."""
        raw = self._keys.get(peer_id)
        if raw is None:
            logger.debug(f"No public key for {peer_id[:16]}...")
            return False

        try:
            public_key = ed25519.Ed25519PublicKey.from_public_bytes(raw)
            public_key.verify(signature, payload)
            return True
        except (InvalidSignature, ValueError):
            return False

    def __len__(self) -> int:
        return len(self._keys)
