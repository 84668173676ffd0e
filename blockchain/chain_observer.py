"""
Chain Observer

Read-only view of the payment chain used by the reputation system:
- confirmation depth of a payment transaction
- free balance of a downloader address (payment handshake)

Two modes:
- mock: in-memory inclusion index, head height and balances (development/tests)
- substrate: queries a Substrate node through substrate-interface

Any failure to reach the chain raises ObserverUnavailable. Callers retry with
backoff and must never treat a failure as a confirmation.

Author: Chiral Network Team
License: MIT
"""

import asyncio
from typing import Dict, Optional

from loguru import logger
from substrateinterface import SubstrateInterface

from chiral.p2p.reputation.errors import ObserverUnavailable


class ChainObserver:
    """
    Confirmation and balance queries against the payment chain.

    Confirmations are counted as head_height - inclusion_height + 1. The
    inclusion height of a transaction is learned from the settlement layer
    (`record_inclusion`) or, in substrate mode, resolved from the block hash
    carried in a verdict's tx_receipt.
    """

    def __init__(
        self,
        node_url: str = "ws://localhost:9944",
        mock_mode: bool = True
    ):
        """
        Initialize chain observer.

        Args:
            node_url: Substrate RPC endpoint
            mock_mode: If True, operates without a chain (development)
        """
        self.node_url = node_url
        self.mock_mode = mock_mode
        self.substrate: Optional[SubstrateInterface] = None
        self.connected = False

        # tx_hash -> block height the transaction was included in
        self._inclusions: Dict[str, int] = {}

        # Mock chain state
        self._mock_head = 0
        self._mock_balances: Dict[str, int] = {}
        self._mock_unavailable = False

        self.stats = {
            "confirmation_queries": 0,
            "balance_queries": 0,
            "failures": 0,
        }

    async def connect(self):
        """Connect to the chain node."""
        if self.mock_mode:
            logger.info("Chain observer in MOCK mode (no blockchain)")
            self.connected = True
            return

        try:
            self.substrate = await asyncio.to_thread(SubstrateInterface, url=self.node_url)
            self.connected = True
            logger.info("Connected to chain at {}", self.node_url)
        except Exception as e:
            # Stay disconnected; queries raise ObserverUnavailable until a reconnect
            logger.error("Failed to connect to chain at {}: {}", self.node_url, e)
            self.connected = False

    async def disconnect(self):
        """Disconnect from the chain node."""
        if self.substrate:
            self.substrate.close()
            self.substrate = None
        self.connected = False
        logger.info("Chain observer disconnected")

    # -- Inclusion index --

    def record_inclusion(self, tx_hash: str, block_height: int) -> None:
        """Remember the block a payment transaction was included in."""
        self._inclusions[tx_hash] = block_height
        logger.debug("Recorded inclusion of {} at height {}", tx_hash[:16], block_height)

    def inclusion_height(self, tx_hash: str) -> Optional[int]:
        return self._inclusions.get(tx_hash)

    # -- Queries --

    async def head_height(self) -> int:
        """Current best block height."""
        if self.mock_mode:
            self._check_mock_available()
            return self._mock_head

        substrate = self._require_substrate()
        try:
            return await asyncio.to_thread(
                lambda: substrate.get_block_number(substrate.get_chain_head())
            )
        except Exception as e:
            self.stats["failures"] += 1
            raise ObserverUnavailable(f"head query failed: {e}") from e

    async def confirmations(self, tx_hash: str, receipt: Optional[str] = None) -> int:
        """
        Confirmation depth of a transaction.

        Args:
            tx_hash: Payment transaction hash
            receipt: Optional block hash the transaction was included in

        Returns:
            Number of confirmations (0 if the inclusion is not known yet)

        Raises:
            ObserverUnavailable: Chain could not be queried
        """
        self.stats["confirmation_queries"] += 1

        height = self._inclusions.get(tx_hash)
        if height is None and receipt and not self.mock_mode:
            height = await self._resolve_receipt(receipt)
            if height is not None:
                self._inclusions[tx_hash] = height

        head = await self.head_height()
        if height is None or head < height:
            return 0
        return head - height + 1

    async def get_balance(self, address: str) -> int:
        """
        Free balance of an account.

        Raises:
            ObserverUnavailable: Chain could not be queried
        """
        self.stats["balance_queries"] += 1

        if self.mock_mode:
            self._check_mock_available()
            return self._mock_balances.get(address, 0)

        substrate = self._require_substrate()
        try:
            account = await asyncio.to_thread(
                substrate.query, "System", "Account", [address]
            )
            return int(account.value["data"]["free"])
        except Exception as e:
            self.stats["failures"] += 1
            raise ObserverUnavailable(f"balance query failed: {e}") from e

    async def _resolve_receipt(self, block_hash: str) -> Optional[int]:
        substrate = self._require_substrate()
        try:
            return await asyncio.to_thread(substrate.get_block_number, block_hash)
        except Exception as e:
            self.stats["failures"] += 1
            raise ObserverUnavailable(f"receipt lookup failed: {e}") from e

    def _require_substrate(self) -> SubstrateInterface:
        if not self.connected or self.substrate is None:
            self.stats["failures"] += 1
            raise ObserverUnavailable("not connected to chain")
        return self.substrate

    # -- Mock controls --

    def set_mock_head(self, height: int) -> None:
        self._mock_head = height

    def advance_mock_head(self, blocks: int = 1) -> int:
        self._mock_head += blocks
        return self._mock_head

    def set_mock_balance(self, address: str, amount: int) -> None:
        self._mock_balances[address] = amount

    def set_mock_unavailable(self, unavailable: bool = True) -> None:
        """Simulate an unreachable chain in mock mode."""
        self._mock_unavailable = unavailable

    def _check_mock_available(self) -> None:
        if self._mock_unavailable:
            self.stats["failures"] += 1
            raise ObserverUnavailable("mock chain unavailable")
