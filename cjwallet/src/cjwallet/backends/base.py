"""
Base chain-data backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    scriptpubkey: str
    height: int | None = None


class ChainBackend(ABC):
    """
    Abstract chain-data source.
    Supplies the current UTXO set for wallet addresses and relays final
    transactions. The mixer core never talks to it directly, only wallets do.
    """

    @abstractmethod
    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        """Get UTXOs for given addresses"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
