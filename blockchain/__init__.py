"""
Chiral Blockchain Integration

Read-only view of the payment chain for the reputation system:
- Confirmation depth of payment transactions
- Downloader balances for the payment handshake
"""

from .chain_observer import ChainObserver

__all__ = [
    "ChainObserver",
]
