"""
Test configuration for wallet tests.
"""

from __future__ import annotations

import pytest

from cjwallet.backends.base import UTXO, ChainBackend


class FakeBackend(ChainBackend):
    """In-memory chain: address -> list of UTXOs."""

    def __init__(self, height: int = 200):
        self.utxos: dict[str, list[UTXO]] = {}
        self.height = height
        self.broadcasts: list[str] = []
        self.queried: list[str] = []
        self.closed = False

    def fund(self, address: str, value: int, txid: str, vout: int = 0, confirmations: int = 6):
        self.utxos.setdefault(address, []).append(
            UTXO(
                txid=txid,
                vout=vout,
                value=value,
                address=address,
                scriptpubkey="",
                confirmations=confirmations,
                height=self.height - confirmations + 1 if confirmations else None,
            )
        )

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        self.queried.extend(addresses)
        return [utxo for addr in addresses for utxo in self.utxos.get(addr, [])]

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        return "ab" * 32

    async def get_block_height(self) -> int:
        return self.height

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def other_mnemonic() -> str:
    return "legal winner thank year wave sausage worth useful legal winner thank yellow"


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
