"""
Participant side of a round: the public key each participant hands to the
mixer, the UTXO it offers, and turning snapshot records into foreign inputs.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from cjcore.errors import UtxoNotOwned
from cjcore.models import NetworkType
from cjwallet.backends.base import ChainBackend
from cjwallet.wallet.bip32 import ExtendedKey, bip84_account_path, derive_master
from cjwallet.wallet.models import ForeignInputMetadata, KeychainKind, Utxo
from cjwallet.wallet.service import Wallet
from loguru import logger

from mixer.snapshots import UtxoRecord


def participant_public_key(
    mnemonic: str, network: NetworkType | str, account: int = 0
) -> ExtendedKey:
    """
    Public key a participant shares with the mixer: the first receive key,
    m/84'/c'/a'/0/0, stripped of private material.
    """
    master = derive_master(mnemonic, network)
    return master.derive(bip84_account_path(network, account).child(0).child(0)).to_public()


def signing_wallets(
    mnemonics: Sequence[str],
    backend: ChainBackend | None,
    network: NetworkType | str,
    account: int = 0,
    gap_limit: int = 20,
) -> list[Wallet]:
    return [
        Wallet.from_mnemonic(
            mnemonic, backend, network, account, gap_limit=gap_limit, name=f"participant-{i}"
        )
        for i, mnemonic in enumerate(mnemonics)
    ]


def public_wallets(
    mnemonics: Sequence[str], network: NetworkType | str, account: int = 0
) -> list[Wallet]:
    """Watch-only views of the participants, as the mixer sees them."""
    return [
        Wallet.from_public_key(
            participant_public_key(mnemonic, network, account), network=network, name=f"public-{i}"
        )
        for i, mnemonic in enumerate(mnemonics)
    ]


def snapshot_utxo(wallet: Wallet, min_confirmations: int = 1) -> Utxo | None:
    """
    UTXO a participant offers to the round: its largest confirmed output
    on the shared receive key (external index 0). The wallet must be synced.
    """
    offered = [
        utxo
        for utxo in wallet.list_unspent()
        if utxo.keychain == KeychainKind.EXTERNAL
        and utxo.derivation_index == 0
        and utxo.confirmations >= min_confirmations
    ]
    if not offered:
        return None
    return max(offered, key=lambda u: (u.value, u.outpoint))


def collect_foreign_inputs(
    records: Iterable[UtxoRecord], wallets: Sequence[Wallet]
) -> list[ForeignInputMetadata]:
    """
    Match every snapshot record to the participant whose public key owns it.

    Records owned by nobody are skipped with a warning; the same outpoint is
    only used once.
    """
    inputs: list[ForeignInputMetadata] = []
    seen = set()

    for record in records:
        utxo = record.to_utxo()
        if utxo.outpoint in seen:
            logger.warning(f"Duplicate snapshot for {utxo.outpoint}, ignoring")
            continue

        for wallet in wallets:
            try:
                meta = wallet.foreign_input_metadata(utxo)
            except UtxoNotOwned:
                continue
            logger.info(f"UTXO {utxo.outpoint} ({utxo.value} sats) belongs to {wallet.name}")
            inputs.append(meta)
            seen.add(utxo.outpoint)
            break
        else:
            logger.warning(f"No participant owns UTXO {utxo.outpoint}, skipping")

    return inputs
