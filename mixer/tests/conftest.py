"""
Test configuration for the mixer: an in-memory chain, five funded
participants and a funded coordinator wallet.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from cjcore.models import NetworkType
from cjwallet.backends.base import UTXO, ChainBackend
from cjwallet.wallet.models import KeychainKind
from cjwallet.wallet.service import Wallet

from mixer.builder import build_coinjoin_psbt
from mixer.participants import (
    collect_foreign_inputs,
    public_wallets,
    signing_wallets,
    snapshot_utxo,
)
from mixer.snapshots import UtxoRecord

REGTEST = NetworkType.REGTEST

PARTICIPANT_MNEMONICS = [
    "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about",
    "legal winner thank year wave sausage worth useful legal winner thank yellow",
    "letter advice cage absurd amount doctor acoustic avoid letter advice cage above",
    "zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo zoo wrong",
    "scheme spot photo card baby mountain device kick cradle pact join borrow",
]

MIXER_MNEMONIC = "vessel ladder alter error federal sibling chat ability sun glass valve picture"

PARTICIPANT_VALUE = 20_000
MIXER_FUNDING = [100_000, 30_000]
MIXER_CHANGE_FUNDING = 1_000_000


class FakeBackend(ChainBackend):
    """In-memory chain: address -> list of UTXOs."""

    def __init__(self, height: int = 500):
        self.utxos: dict[str, list[UTXO]] = {}
        self.height = height
        self.broadcasts: list[str] = []
        self.closed = False
        self._next_txid = 1

    def fund(self, address: str, value: int, confirmations: int = 6) -> str:
        txid = f"{self._next_txid:064x}"
        self._next_txid += 1
        self.utxos.setdefault(address, []).append(
            UTXO(
                txid=txid,
                vout=0,
                value=value,
                address=address,
                scriptpubkey="",
                confirmations=confirmations,
                height=self.height - confirmations + 1 if confirmations else None,
            )
        )
        return txid

    async def get_utxos(self, addresses: list[str]) -> list[UTXO]:
        return [utxo for addr in addresses for utxo in self.utxos.get(addr, [])]

    async def broadcast_transaction(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        return "cd" * 32

    async def get_block_height(self) -> int:
        return self.height

    async def close(self) -> None:
        self.closed = True


def fund_participants(backend: FakeBackend, mnemonics: list[str]) -> None:
    for i, wallet in enumerate(signing_wallets(mnemonics, None, REGTEST)):
        backend.fund(wallet.peek_address(0), PARTICIPANT_VALUE + 1_000 * i)


def fund_mixer(backend: FakeBackend, mnemonic: str) -> None:
    wallet = Wallet.from_mnemonic(mnemonic, None, REGTEST)
    for index, value in enumerate(MIXER_FUNDING):
        backend.fund(wallet.peek_address(index), value)
    backend.fund(wallet.peek_address(0, KeychainKind.INTERNAL), MIXER_CHANGE_FUNDING)


@pytest.fixture
def participant_mnemonics() -> list[str]:
    return list(PARTICIPANT_MNEMONICS)


@pytest.fixture
def mixer_mnemonic() -> str:
    return MIXER_MNEMONIC


@pytest.fixture
def fake_backend(participant_mnemonics, mixer_mnemonic) -> FakeBackend:
    backend = FakeBackend()
    fund_participants(backend, participant_mnemonics)
    fund_mixer(backend, mixer_mnemonic)
    return backend


@pytest.fixture
def participants(participant_mnemonics, fake_backend) -> list[Wallet]:
    return signing_wallets(participant_mnemonics, fake_backend, REGTEST)


@pytest_asyncio.fixture
async def mixer_wallet(mixer_mnemonic, fake_backend) -> Wallet:
    wallet = Wallet.from_mnemonic(mixer_mnemonic, fake_backend, REGTEST, name="mixer")
    await wallet.sync()
    return wallet


@pytest_asyncio.fixture
async def snapshot_records(participants) -> list[UtxoRecord]:
    records = []
    for wallet in participants:
        await wallet.sync()
        records.append(UtxoRecord.from_utxo(snapshot_utxo(wallet)))
    return records


@pytest.fixture
def foreign_inputs(snapshot_records, participant_mnemonics):
    return collect_foreign_inputs(
        snapshot_records, public_wallets(participant_mnemonics, REGTEST)
    )


@pytest.fixture
def coinjoin_psbt(mixer_wallet, foreign_inputs):
    return build_coinjoin_psbt(
        mixer_wallet, denomination=5_000, output_count=5, fee_rate=10, foreign_inputs=foreign_inputs
    )
