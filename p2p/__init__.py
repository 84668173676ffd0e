"""
Chiral P2P (Peer-to-Peer) Network Layer

Trust layer for the Chiral file-sharing network.

Components:
- Identity: Ed25519 node keys and the peer keyring
- Reputation: Transaction-backed peer scoring and blacklisting
- CLI: Operator tooling over a node's reputation store
"""

__version__ = "0.1.0"
