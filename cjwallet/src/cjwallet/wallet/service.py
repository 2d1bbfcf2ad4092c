"""
Mixer wallet service.

A wallet is a pair of wpkh() descriptors (external/receive and
internal/change) plus a chain-data backend. Seed-backed wallets use BIP84
paths and can sign; wallets built from a public key can only describe their
UTXOs to a third party (foreign inputs).

Derivation path for seed-backed wallets: m/84'/{coin}'/{account}'/{change}/{index}
- change: 0 (external/receive), 1 (internal/change)
- index: address index
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from cjcore.errors import InsufficientFunds, UtxoNotOwned
from cjcore.models import NetworkType
from cjcore.psbt import KeyOriginInfo, PartiallySignedTransaction, PsbtInput
from cjcore.transaction import OutPoint, Transaction
from loguru import logger

from cjwallet.backends.base import ChainBackend
from cjwallet.wallet.address import is_p2wpkh, scriptpubkey_to_address
from cjwallet.wallet.bip32 import DerivationPath, ExtendedKey, derive_master
from cjwallet.wallet.descriptor import (
    WpkhDescriptor,
    bip84_descriptor_pair,
    single_key_descriptor_pair,
)
from cjwallet.wallet.models import (
    ForeignInputMetadata,
    InputMetadata,
    KeychainKind,
    SignableInputMetadata,
    SignResult,
    Utxo,
)
from cjwallet.wallet.signing import sign_p2wpkh_input


class Wallet:
    """
    Descriptor wallet bound to a chain-data backend.

    Each participant works on its own Wallet instance and its own PSBT copy;
    nothing here is shared between wallets.
    """

    def __init__(
        self,
        descriptor: WpkhDescriptor,
        change_descriptor: WpkhDescriptor | None = None,
        backend: ChainBackend | None = None,
        network: NetworkType | str | None = None,
        gap_limit: int = 20,
        name: str = "wallet",
    ):
        self.descriptors = {
            KeychainKind.EXTERNAL: descriptor,
            KeychainKind.INTERNAL: change_descriptor or descriptor,
        }
        self.backend = backend
        self.network = NetworkType(network) if network is not None else descriptor.network
        self.gap_limit = gap_limit
        self.name = name

        self._keychain_roots = {
            keychain: desc.key.derive(desc.path) for keychain, desc in self.descriptors.items()
        }
        self._next_index = {KeychainKind.EXTERNAL: 0, KeychainKind.INTERNAL: 0}
        self._script_index: dict[bytes, tuple[KeychainKind, int]] = {}
        # Number of indices per keychain already in _script_index
        self._lookahead = {KeychainKind.EXTERNAL: 0, KeychainKind.INTERNAL: 0}
        self.utxo_cache: dict[OutPoint, Utxo] = {}
        self.synced = False

        kind = "watch-only" if self.is_watch_only else "signing"
        logger.info(f"Initialized {kind} wallet '{name}' on {self.network.value}")

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        backend: ChainBackend | None = None,
        network: NetworkType | str = NetworkType.MAINNET,
        account: int = 0,
        passphrase: str = "",
        gap_limit: int = 20,
        name: str = "wallet",
    ) -> Wallet:
        """Seed-backed BIP84 wallet. Raises InvalidMnemonic on a bad phrase."""
        master = derive_master(mnemonic, network, passphrase)
        external, internal = bip84_descriptor_pair(master, account)
        return cls(external, internal, backend, network, gap_limit, name)

    @classmethod
    def from_extended_key(
        cls,
        key: ExtendedKey | str,
        backend: ChainBackend | None = None,
        network: NetworkType | str | None = None,
        account: int = 0,
        gap_limit: int = 20,
        name: str = "wallet",
    ) -> Wallet:
        """Private master key -> BIP84 wallet; public key -> single-key watch-only wallet."""
        if isinstance(key, str):
            key = ExtendedKey.from_string(key, network)
        if not key.is_private:
            return cls.from_public_key(key, backend, network, name=name)
        external, internal = bip84_descriptor_pair(key, account)
        return cls(external, internal, backend, network or key.network, gap_limit, name)

    @classmethod
    def from_public_key(
        cls,
        key: ExtendedKey | str,
        backend: ChainBackend | None = None,
        network: NetworkType | str | None = None,
        name: str = "wallet",
    ) -> Wallet:
        """Watch-only wallet over a single public key: wpkh(xpub) for both keychains."""
        if isinstance(key, str):
            key = ExtendedKey.from_string(key, network)
        external, internal = single_key_descriptor_pair(key.to_public())
        return cls(external, internal, backend, network or key.network, gap_limit=1, name=name)

    @classmethod
    def from_descriptors(
        cls,
        descriptor: str,
        change_descriptor: str | None = None,
        backend: ChainBackend | None = None,
        network: NetworkType | str | None = None,
        gap_limit: int = 20,
        name: str = "wallet",
    ) -> Wallet:
        external = WpkhDescriptor.parse(descriptor, network)
        internal = WpkhDescriptor.parse(change_descriptor, network) if change_descriptor else None
        return cls(external, internal, backend, network, gap_limit, name)

    @property
    def is_watch_only(self) -> bool:
        return not self.descriptors[KeychainKind.EXTERNAL].has_private_key

    @property
    def is_single_key(self) -> bool:
        return not self.descriptors[KeychainKind.EXTERNAL].is_ranged

    @property
    def fingerprint(self) -> bytes:
        """Fingerprint of the descriptor key, used as key origin in PSBTs."""
        return self.descriptors[KeychainKind.EXTERNAL].key.fingerprint

    def public_descriptor(self, keychain: KeychainKind = KeychainKind.EXTERNAL) -> str:
        return str(self.descriptors[keychain].to_public())

    def derive_key(self, keychain: KeychainKind, index: int) -> ExtendedKey:
        root = self._keychain_roots[keychain]
        if self.is_single_key:
            if index != 0:
                raise ValueError("Single-key wallet only has index 0")
            return root
        return root.derive(DerivationPath().child(index))

    def key_origin(self, keychain: KeychainKind, index: int) -> KeyOriginInfo:
        path = self.descriptors[keychain].full_path(index)
        return KeyOriginInfo(fingerprint=self.fingerprint, path=path.values())

    def peek_script(self, index: int, keychain: KeychainKind = KeychainKind.EXTERNAL) -> bytes:
        script = self.derive_key(keychain, index).p2wpkh_script()
        self._script_index.setdefault(script, (keychain, index))
        return script

    def peek_address(self, index: int, keychain: KeychainKind = KeychainKind.EXTERNAL) -> str:
        return scriptpubkey_to_address(self.peek_script(index, keychain), self.network)

    def next_script(
        self, keychain: KeychainKind = KeychainKind.EXTERNAL, offset: int = 0
    ) -> bytes:
        """
        The script new_address would reveal, without revealing it.
        offset skips that many further reveals.
        """
        index = 0 if self.is_single_key else self._next_index[keychain] + offset
        return self.peek_script(index, keychain)

    def new_address(self, keychain: KeychainKind = KeychainKind.EXTERNAL) -> bytes:
        """Reveal the next unused script of a keychain. Single-key wallets always reuse index 0."""
        if self.is_single_key:
            return self.peek_script(0, keychain)
        index = self._next_index[keychain]
        self._next_index[keychain] = index + 1
        script = self.peek_script(index, keychain)
        logger.debug(f"Wallet '{self.name}' revealed {keychain.value} index {index}")
        return script

    def _ensure_lookahead(self) -> None:
        if self.is_single_key:
            self.peek_script(0, KeychainKind.EXTERNAL)
            return
        for keychain, next_index in self._next_index.items():
            start = self._lookahead[keychain]
            end = next_index + self.gap_limit
            for index in range(start, end):
                self.peek_script(index, keychain)
            self._lookahead[keychain] = max(start, end)

    def lookup_script(self, script: bytes) -> tuple[KeychainKind, int] | None:
        """Return (keychain, index) if the script belongs to this wallet."""
        if script not in self._script_index:
            self._ensure_lookahead()
        return self._script_index.get(script)

    async def sync(self) -> set[Utxo]:
        """
        Refresh the UTXO set from the backend.
        Scans each keychain until gap_limit consecutive unused addresses.
        """
        if self.backend is None:
            raise RuntimeError(f"Wallet '{self.name}' has no chain-data backend")

        found: dict[OutPoint, Utxo] = {}
        keychains = [KeychainKind.EXTERNAL] if self.is_single_key else list(KeychainKind)

        for keychain in keychains:
            consecutive_empty = 0
            index = 0
            highest_used = -1
            batch_size = 1 if self.is_single_key else self.gap_limit

            while consecutive_empty < self.gap_limit:
                addresses = [self.peek_address(index + i, keychain) for i in range(batch_size)]
                backend_utxos = await self.backend.get_utxos(addresses)

                # Group results by address
                utxos_by_address: dict[str, list] = {addr: [] for addr in addresses}
                for utxo in backend_utxos:
                    if utxo.address in utxos_by_address:
                        utxos_by_address[utxo.address].append(utxo)

                for i, address in enumerate(addresses):
                    addr_utxos = utxos_by_address[address]
                    if addr_utxos:
                        consecutive_empty = 0
                        highest_used = index + i
                        script = self.peek_script(index + i, keychain)
                        for backend_utxo in addr_utxos:
                            outpoint = OutPoint(backend_utxo.txid, backend_utxo.vout)
                            found[outpoint] = Utxo(
                                outpoint=outpoint,
                                value=backend_utxo.value,
                                script_pubkey=script,
                                keychain=keychain,
                                derivation_index=index + i,
                                confirmations=backend_utxo.confirmations,
                            )
                    else:
                        consecutive_empty += 1

                    if consecutive_empty >= self.gap_limit:
                        break

                if self.is_single_key:
                    break
                index += batch_size

            if not self.is_single_key:
                self._next_index[keychain] = max(self._next_index[keychain], highest_used + 1)

        self.utxo_cache = found
        self.synced = True
        logger.info(
            f"Wallet '{self.name}' synced: {len(found)} UTXOs, "
            f"{sum(u.value for u in found.values())} sats"
        )
        return set(found.values())

    def list_unspent(self) -> list[Utxo]:
        return list(self.utxo_cache.values())

    async def balance(self) -> int:
        """Sum of the UTXO set, syncing first if never synced."""
        if not self.synced:
            await self.sync()
        return sum(utxo.value for utxo in self.utxo_cache.values())

    def spendable_input_metadata(self, utxo: Utxo) -> SignableInputMetadata:
        if self.is_watch_only:
            raise UtxoNotOwned(str(utxo.outpoint), "wallet holds no private key")
        location = self.lookup_script(utxo.script_pubkey)
        if location is None:
            raise UtxoNotOwned(str(utxo.outpoint))
        keychain, index = location
        return SignableInputMetadata(
            outpoint=utxo.outpoint,
            witness_utxo=utxo.txout,
            keychain=keychain,
            pubkey=self.derive_key(keychain, index).get_public_key_bytes(),
            key_origin=self.key_origin(keychain, index),
        )

    def foreign_input_metadata(self, utxo: Utxo) -> ForeignInputMetadata:
        if not is_p2wpkh(utxo.script_pubkey):
            raise UtxoNotOwned(str(utxo.outpoint), "not a P2WPKH output")
        if self.lookup_script(utxo.script_pubkey) is None:
            raise UtxoNotOwned(str(utxo.outpoint))
        return ForeignInputMetadata(outpoint=utxo.outpoint, witness_utxo=utxo.txout)

    def input_metadata(self, utxo: Utxo) -> InputMetadata:
        if self.is_watch_only:
            return self.foreign_input_metadata(utxo)
        return self.spendable_input_metadata(utxo)

    def candidate_utxos(
        self, exclude_change: bool = True, min_confirmations: int = 1
    ) -> list[Utxo]:
        """Spendable UTXOs, largest first."""
        eligible = [
            utxo
            for utxo in self.utxo_cache.values()
            if utxo.confirmations >= min_confirmations
            and not (exclude_change and utxo.keychain == KeychainKind.INTERNAL)
        ]
        eligible.sort(key=lambda u: (-u.value, u.outpoint))
        return eligible

    def select_utxos(
        self,
        target_amount: int,
        exclude_change: bool = True,
        min_confirmations: int = 1,
        exclude: Iterable[OutPoint] = (),
        fee_for: Callable[[list[Utxo]], int] | None = None,
    ) -> list[Utxo]:
        """
        Select UTXOs for spending, largest first.

        fee_for, when given, is asked for the fee of the transaction spending
        the selection so far; selection stops once the selected value covers
        target_amount plus that fee.

        Raises:
            InsufficientFunds: If every candidate together falls short
        """
        skipped = set(exclude)
        selected: list[Utxo] = []
        total = 0
        needed = target_amount + (fee_for(selected) if fee_for else 0)

        for utxo in self.candidate_utxos(exclude_change, min_confirmations):
            if utxo.outpoint in skipped:
                continue
            selected.append(utxo)
            total += utxo.value
            needed = target_amount + (fee_for(selected) if fee_for else 0)
            if total >= needed:
                return selected

        if total < needed:
            raise InsufficientFunds(needed, total)
        return selected

    def _signing_key_for(self, inp: PsbtInput) -> ExtendedKey | None:
        if self.is_watch_only:
            return None

        # Key origins recorded by whoever built the PSBT
        for pubkey, origin in inp.bip32_derivations.items():
            if origin.fingerprint != self.fingerprint:
                continue
            root = self.descriptors[KeychainKind.EXTERNAL].key
            key = root.derive(DerivationPath.from_values(origin.path))
            if key.get_public_key_bytes() == pubkey:
                return key

        if inp.witness_utxo is None:
            return None
        location = self.lookup_script(inp.witness_utxo.script_pubkey)
        if location is None:
            return None
        return self.derive_key(*location)

    def sign(
        self, psbt: PartiallySignedTransaction
    ) -> tuple[PartiallySignedTransaction, SignResult]:
        """
        Sign every input whose key this wallet holds, on a copy of the PSBT.
        Inputs owned by others are left untouched and counted as skipped.
        """
        signed = psbt.copy()
        result = SignResult()

        for i, inp in enumerate(signed.inputs):
            if inp.is_finalized or inp.witness_utxo is None:
                result.inputs_skipped += 1
                continue

            key = self._signing_key_for(inp)
            if key is None or key.private_key is None:
                result.inputs_skipped += 1
                continue

            pubkey = key.get_public_key_bytes()
            if key.p2wpkh_script() != inp.witness_utxo.script_pubkey:
                logger.warning(f"Input {i}: key origin does not match witness UTXO, skipping")
                result.inputs_skipped += 1
                continue

            inp.partial_sigs[pubkey] = sign_p2wpkh_input(
                signed.tx, i, inp.witness_utxo.value, key.private_key
            )
            location = self.lookup_script(inp.witness_utxo.script_pubkey)
            if location is not None:
                inp.bip32_derivations.setdefault(pubkey, self.key_origin(*location))
            result.inputs_signed += 1

        logger.info(f"Wallet '{self.name}' signed PSBT {signed.txid}: {result}")
        return signed, result

    async def broadcast(self, tx: Transaction) -> str:
        if self.backend is None:
            raise RuntimeError(f"Wallet '{self.name}' has no chain-data backend")
        return await self.backend.broadcast_transaction(tx.serialize_hex())

    async def close(self) -> None:
        """Close backend connection"""
        if self.backend is not None:
            await self.backend.close()
