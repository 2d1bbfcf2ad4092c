"""
Chain-data backend implementations.

Available backends:
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (no wallet, uses scantxoutset)
"""

from cjwallet.backends.base import UTXO, ChainBackend
from cjwallet.backends.bitcoin_core import BitcoinCoreBackend

__all__ = [
    "BitcoinCoreBackend",
    "ChainBackend",
    "UTXO",
]
