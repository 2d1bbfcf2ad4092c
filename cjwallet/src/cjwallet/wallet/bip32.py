"""
BIP32 HD key derivation for mixer wallets.
Implements BIP39 seeds, BIP32 private/public derivation and BIP84
(Native SegWit) paths.

All functions are stateless: no shared cryptographic context is kept
between calls, so derivation is safe to run from several threads.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import base58
from cjcore.errors import HardenedDerivationRequiresPrivateKey, InvalidMnemonic
from cjcore.models import NetworkType, network_from_version
from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

from cjwallet.wallet.address import hash160, pubkey_to_p2wpkh_address, pubkey_to_p2wpkh_script

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000


@dataclass(frozen=True)
class ChildNumber:
    """One derivation step: an index, optionally hardened."""

    index: int
    hardened: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.index < HARDENED_OFFSET:
            raise ValueError(f"Child index out of range: {self.index}")

    @property
    def value(self) -> int:
        """Raw 32-bit child number as used in serialization."""
        return self.index + HARDENED_OFFSET if self.hardened else self.index

    @classmethod
    def from_value(cls, value: int) -> ChildNumber:
        if value >= HARDENED_OFFSET:
            return cls(value - HARDENED_OFFSET, hardened=True)
        return cls(value)

    def __str__(self) -> str:
        return f"{self.index}'" if self.hardened else str(self.index)


@dataclass(frozen=True)
class DerivationPath:
    """Ordered sequence of child numbers, e.g. m/84'/1'/0'/0/0."""

    steps: tuple[ChildNumber, ...] = ()

    @classmethod
    def parse(cls, path: str) -> DerivationPath:
        """
        Parse path notation (e.g., "m/84'/0'/0'/0/0").
        ' or h indicates hardened derivation. A leading "m" is optional.
        """
        parts = path.strip().split("/")
        if parts and parts[0] == "m":
            parts = parts[1:]

        steps = []
        for part in parts:
            if not part:
                continue
            hardened = part[-1] in "'hH"
            index_str = part.rstrip("'hH")
            if not index_str.isdigit():
                raise ValueError(f"Invalid path component '{part}' in {path}")
            steps.append(ChildNumber(int(index_str), hardened))
        return cls(tuple(steps))

    @classmethod
    def from_values(cls, values: Iterable[int]) -> DerivationPath:
        return cls(tuple(ChildNumber.from_value(v) for v in values))

    def child(self, index: int, hardened: bool = False) -> DerivationPath:
        return DerivationPath(self.steps + (ChildNumber(index, hardened),))

    def extend(self, other: DerivationPath) -> DerivationPath:
        return DerivationPath(self.steps + other.steps)

    def values(self) -> list[int]:
        return [step.value for step in self.steps]

    def __iter__(self) -> Iterator[ChildNumber]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __str__(self) -> str:
        return "/".join(["m", *(str(step) for step in self.steps)])


PathLike = DerivationPath | str | Iterable[ChildNumber]


def _as_path(path: PathLike) -> DerivationPath:
    if isinstance(path, DerivationPath):
        return path
    if isinstance(path, str):
        return DerivationPath.parse(path)
    return DerivationPath(tuple(path))


class ExtendedKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Holds either a private key (spend capable) or only a public key.
    """

    def __init__(
        self,
        network: NetworkType,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        if private_key is None and public_key is None:
            raise ValueError("Extended key needs a private or a public key")
        if len(chain_code) != 32:
            raise ValueError(f"Invalid chain code length: {len(chain_code)}")
        self.network = NetworkType(network)
        self.chain_code = chain_code
        self._private_key = private_key
        self._public_key = private_key.public_key if private_key is not None else public_key
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @property
    def private_key(self) -> PrivateKey | None:
        """Return the coincurve PrivateKey instance, None for public-only keys."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of HASH160 of the compressed public key."""
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(
        cls, seed: bytes, network: NetworkType | str = NetworkType.MAINNET
    ) -> ExtendedKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        key_int = int.from_bytes(key_bytes, "big")
        if key_int == 0 or key_int >= SECP256K1_N:
            raise ValueError("Invalid master key derived from seed")

        return cls(NetworkType(network), chain_code, private_key=PrivateKey(key_bytes))

    def derive(self, path: PathLike) -> ExtendedKey:
        """Derive a descendant key, applying each step of the path in order."""
        key = self
        for step in _as_path(path):
            key = key._derive_child(step.value)
        return key

    def _derive_child(self, index: int) -> ExtendedKey:
        """Derive a child key at the given raw index"""
        hardened = index >= HARDENED_OFFSET

        if hardened:
            if self._private_key is None:
                raise HardenedDerivationRequiresPrivateKey(index)
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise ValueError(f"Invalid child key at index {index}")

        if self._private_key is not None:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + offset_int) % SECP256K1_N

            if child_key_int == 0:
                raise ValueError("Invalid child key")

            return ExtendedKey(
                self.network,
                child_chain,
                private_key=PrivateKey(child_key_int.to_bytes(32, "big")),
                depth=self.depth + 1,
                parent_fingerprint=self.fingerprint,
                child_number=index,
            )

        # Public parent -> public child: point(IL) + K_par
        child_public = self._public_key.add(key_offset)
        return ExtendedKey(
            self.network,
            child_chain,
            public_key=child_public,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def to_public(self) -> ExtendedKey:
        """Neutered copy: same chain code and public key, no private material."""
        return ExtendedKey(
            self.network,
            self.chain_code,
            public_key=self._public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        if self._private_key is None:
            raise ValueError("Public-only extended key has no private key")
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def p2wpkh_script(self) -> bytes:
        return pubkey_to_p2wpkh_script(self.get_public_key_bytes())

    def get_address(self, network: NetworkType | str | None = None) -> str:
        """Get P2WPKH (Native SegWit) address for this key"""
        return pubkey_to_p2wpkh_address(self.get_public_key_bytes(), network or self.network)

    def serialize(self) -> bytes:
        """78-byte BIP32 serialization."""
        if self._private_key is not None:
            version = self.network.xprv_version
            key_data = b"\x00" + self._private_key.secret
        else:
            version = self.network.xpub_version
            key_data = self.get_public_key_bytes()
        return (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )

    def to_string(self) -> str:
        """Base58Check encoding (xprv/xpub/tprv/tpub)."""
        return base58.b58encode_check(self.serialize()).decode("ascii")

    @classmethod
    def from_string(cls, encoded: str, network: NetworkType | str | None = None) -> ExtendedKey:
        """
        Parse a Base58Check extended key.

        Test networks share version bytes; pass network to pick regtest/signet
        instead of the default testnet.
        """
        try:
            data = base58.b58decode_check(encoded.strip())
        except ValueError as e:
            raise ValueError(f"Invalid extended key checksum: {e}") from e
        if len(data) != 78:
            raise ValueError(f"Invalid extended key length: {len(data)}")

        version_network, is_private = network_from_version(data[:4])
        if network is not None:
            network = NetworkType(network)
            if (network == NetworkType.MAINNET) != (version_network == NetworkType.MAINNET):
                raise ValueError(f"Extended key is not for {network.value}")
        else:
            network = version_network

        depth = data[4]
        parent_fingerprint = data[5:9]
        child_number = int.from_bytes(data[9:13], "big")
        chain_code = data[13:45]
        key_data = data[45:78]

        if is_private:
            if key_data[0] != 0:
                raise ValueError("Invalid private key prefix")
            return cls(
                network,
                chain_code,
                private_key=PrivateKey(key_data[1:]),
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
            )
        return cls(
            network,
            chain_code,
            public_key=PublicKey(key_data),
            depth=depth,
            parent_fingerprint=parent_fingerprint,
            child_number=child_number,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtendedKey):
            return NotImplemented
        return self.serialize() == other.serialize()

    def __hash__(self) -> int:
        return hash(self.serialize())

    def __repr__(self) -> str:
        kind = "private" if self.is_private else "public"
        return (
            f"ExtendedKey({kind}, network={self.network.value}, depth={self.depth}, "
            f"fingerprint={self.fingerprint.hex()})"
        )


def normalize_mnemonic(seed_phrase: str) -> str:
    return " ".join(seed_phrase.lower().split())


def validate_mnemonic(seed_phrase: str) -> str:
    """Check words and checksum against the BIP39 English wordlist."""
    normalized = normalize_mnemonic(seed_phrase)
    if not Mnemonic("english").check(normalized):
        word_count = len(normalized.split())
        raise InvalidMnemonic(f"Invalid BIP39 mnemonic ({word_count} words)")
    return normalized


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert a validated BIP39 mnemonic to its 64-byte seed."""
    return Mnemonic.to_seed(validate_mnemonic(mnemonic), passphrase=passphrase)


def derive_master(
    seed_phrase: str,
    network: NetworkType | str = NetworkType.MAINNET,
    passphrase: str = "",
) -> ExtendedKey:
    """Validate the seed phrase and return the network-scoped master private key."""
    return ExtendedKey.from_seed(mnemonic_to_seed(seed_phrase, passphrase), network)


def derive(key: ExtendedKey, path: PathLike) -> ExtendedKey:
    return key.derive(path)


def to_public(key: ExtendedKey) -> ExtendedKey:
    return key.to_public()


def bip84_account_path(network: NetworkType | str, account: int = 0) -> DerivationPath:
    """m/84'/{coin_type}'/{account}'"""
    coin_type = NetworkType(network).coin_type
    return DerivationPath.parse(f"m/84'/{coin_type}'/{account}'")
