"""
Tests for the participant side of a round.
"""

import pytest
from cjcore.models import NetworkType
from cjcore.transaction import OutPoint
from cjwallet.wallet.bip32 import derive, derive_master
from cjwallet.wallet.models import ForeignInputMetadata, KeychainKind, Utxo

from mixer.participants import (
    collect_foreign_inputs,
    participant_public_key,
    public_wallets,
    signing_wallets,
    snapshot_utxo,
)
from mixer.snapshots import UtxoRecord

REGTEST = NetworkType.REGTEST


def txid(n: int) -> str:
    return f"{n:064x}"


class TestPublicKey:
    """Tests for the public key a participant shares."""

    def test_first_receive_key(self, participant_mnemonics) -> None:
        """Test the shared key is the first BIP84 receive key."""
        mnemonic = participant_mnemonics[0]
        key = participant_public_key(mnemonic, REGTEST)

        assert not key.is_private
        expected = derive(derive_master(mnemonic, REGTEST), "m/84'/1'/0'/0/0")
        assert key.get_public_key_bytes() == expected.get_public_key_bytes()

    def test_matches_signing_wallet(self, participant_mnemonics) -> None:
        """Test the watch-only wallet sees the signing wallet's first address."""
        (signer,) = signing_wallets(participant_mnemonics[:1], None, REGTEST)
        (public,) = public_wallets(participant_mnemonics[:1], REGTEST)
        assert public.peek_address(0) == signer.peek_address(0)

    def test_account(self, participant_mnemonics) -> None:
        """Test the account changes the shared key."""
        assert participant_public_key(
            participant_mnemonics[0], REGTEST, account=1
        ) != participant_public_key(participant_mnemonics[0], REGTEST)


class TestWallets:
    """Tests for building participant wallets."""

    def test_signing_wallet_names(self, participant_mnemonics) -> None:
        """Test signing wallets are named by position."""
        wallets = signing_wallets(participant_mnemonics, None, REGTEST)
        assert [w.name for w in wallets] == [f"participant-{i}" for i in range(5)]
        assert not any(w.is_watch_only for w in wallets)

    def test_public_wallets_are_watch_only(self, participant_mnemonics) -> None:
        """Test public wallets are single-key and watch-only."""
        wallets = public_wallets(participant_mnemonics, REGTEST)
        assert [w.name for w in wallets] == [f"public-{i}" for i in range(5)]
        assert all(w.is_watch_only and w.is_single_key for w in wallets)


class TestSnapshotUtxo:
    """Tests for choosing the UTXO a participant offers."""

    @pytest.fixture
    def wallet(self, participant_mnemonics):
        (wallet,) = signing_wallets(participant_mnemonics[:1], None, REGTEST)
        return wallet

    def put(self, wallet, n, value, index=0, keychain=KeychainKind.EXTERNAL, confirmations=6):
        utxo = Utxo(
            OutPoint(txid(n), 0),
            value,
            wallet.peek_script(index, keychain),
            keychain,
            index,
            confirmations,
        )
        wallet.utxo_cache[utxo.outpoint] = utxo
        return utxo

    def test_largest_confirmed_on_shared_key(self, wallet) -> None:
        """Test only confirmed UTXOs on the shared key are considered."""
        self.put(wallet, 1, 5_000)
        best = self.put(wallet, 2, 9_000)
        self.put(wallet, 3, 50_000, index=1)
        self.put(wallet, 4, 60_000, keychain=KeychainKind.INTERNAL)
        self.put(wallet, 5, 70_000, confirmations=0)

        assert snapshot_utxo(wallet) == best

    def test_unconfirmed_allowed(self, wallet) -> None:
        """Test unconfirmed UTXOs can be offered when allowed."""
        pending = self.put(wallet, 1, 70_000, confirmations=0)
        assert snapshot_utxo(wallet, min_confirmations=0) == pending

    def test_nothing_to_offer(self, wallet) -> None:
        """Test None when the shared key holds nothing."""
        self.put(wallet, 1, 50_000, index=1)
        assert snapshot_utxo(wallet) is None

    @pytest.mark.asyncio
    async def test_after_sync(self, participants) -> None:
        """Test the offered UTXO after a real sync."""
        wallet = participants[3]
        await wallet.sync()
        utxo = snapshot_utxo(wallet)
        assert utxo.value == 23_000
        assert utxo.script_pubkey == wallet.peek_script(0)


class TestCollectForeignInputs:
    """Tests for matching snapshot records to participants."""

    @pytest.mark.asyncio
    async def test_matches_every_record(self, snapshot_records, participant_mnemonics) -> None:
        """Test every snapshot record becomes a foreign input in order."""
        inputs = collect_foreign_inputs(
            snapshot_records, public_wallets(participant_mnemonics, REGTEST)
        )

        assert len(inputs) == 5
        assert all(isinstance(meta, ForeignInputMetadata) for meta in inputs)
        assert [str(meta.outpoint) for meta in inputs] == [r.outpoint for r in snapshot_records]
        assert [meta.value for meta in inputs] == [20_000, 21_000, 22_000, 23_000, 24_000]

    @pytest.mark.asyncio
    async def test_skips_unowned_and_duplicates(
        self, snapshot_records, participant_mnemonics
    ) -> None:
        """Test records nobody owns and repeated records are skipped."""
        stranger = UtxoRecord(
            outpoint=f"{txid(99)}:0",
            txout={"value": 1_000, "script_pubkey": "0014" + "ab" * 20},
        )
        records = [snapshot_records[0], stranger, snapshot_records[0], snapshot_records[1]]

        inputs = collect_foreign_inputs(records, public_wallets(participant_mnemonics, REGTEST))

        assert [str(meta.outpoint) for meta in inputs] == [
            snapshot_records[0].outpoint,
            snapshot_records[1].outpoint,
        ]

    def test_non_p2wpkh_record_skipped(self, participant_mnemonics) -> None:
        """Test records with non-P2WPKH scripts are skipped."""
        record = UtxoRecord(
            outpoint=f"{txid(1)}:0",
            txout={"value": 1_000, "script_pubkey": "76a914" + "ab" * 20 + "88ac"},
        )
        wallets = public_wallets(participant_mnemonics, REGTEST)
        assert collect_foreign_inputs([record], wallets) == []
