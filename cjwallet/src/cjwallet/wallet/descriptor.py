"""
Witness-pubkey-hash output descriptors.

Only the wpkh() template is needed: every mixer input and output is P2WPKH.

    wpkh(tprv.../84'/1'/0'/0/*)   ranged, spend capable
    wpkh(tpub...)                 single key, watch only
"""

from __future__ import annotations

from dataclasses import dataclass, field

from cjcore.models import NetworkType

from cjwallet.wallet.bip32 import DerivationPath, ExtendedKey, bip84_account_path


@dataclass(frozen=True)
class WpkhDescriptor:
    key: ExtendedKey
    path: DerivationPath = field(default_factory=DerivationPath)
    wildcard: bool = False

    @classmethod
    def parse(cls, descriptor: str, network: NetworkType | str | None = None) -> WpkhDescriptor:
        # Remove checksum if present
        desc = descriptor.strip().split("#")[0]
        if not (desc.startswith("wpkh(") and desc.endswith(")")):
            raise ValueError(f"Unsupported descriptor (only wpkh is supported): {desc}")

        parts = desc[5:-1].split("/")
        key = ExtendedKey.from_string(parts[0], network)

        wildcard = False
        if parts[-1] == "*":
            wildcard = True
            parts = parts[:-1]
        path = DerivationPath.parse("/".join(parts[1:]))
        return cls(key=key, path=path, wildcard=wildcard)

    @property
    def network(self) -> NetworkType:
        return self.key.network

    @property
    def is_ranged(self) -> bool:
        return self.wildcard

    @property
    def has_private_key(self) -> bool:
        return self.key.is_private

    def full_path(self, index: int = 0) -> DerivationPath:
        """Path from the descriptor key down to the key for index."""
        return self.path.child(index) if self.wildcard else self.path

    def derive_key(self, index: int = 0) -> ExtendedKey:
        if not self.wildcard and index != 0:
            raise ValueError("Non-ranged descriptor only has index 0")
        return self.key.derive(self.full_path(index))

    def script_pubkey(self, index: int = 0) -> bytes:
        return self.derive_key(index).p2wpkh_script()

    def address(self, index: int = 0) -> str:
        return self.derive_key(index).get_address(self.network)

    def to_public(self) -> WpkhDescriptor:
        """
        Watch-only equivalent. Hardened steps are applied here so the
        remaining path can be derived from the public key alone.
        """
        last_hardened = max(
            (i for i, step in enumerate(self.path) if step.hardened), default=-1
        )
        prefix = DerivationPath(self.path.steps[: last_hardened + 1])
        rest = DerivationPath(self.path.steps[last_hardened + 1 :])
        return WpkhDescriptor(
            key=self.key.derive(prefix).to_public(), path=rest, wildcard=self.wildcard
        )

    def __str__(self) -> str:
        inner = self.key.to_string()
        if len(self.path):
            inner += str(self.path)[1:]
        if self.wildcard:
            inner += "/*"
        return f"wpkh({inner})"


def bip84_descriptor_pair(
    master: ExtendedKey, account: int = 0
) -> tuple[WpkhDescriptor, WpkhDescriptor]:
    """
    External and internal descriptors for a seed-backed wallet:
    wpkh(xprv/84'/c'/a'/0/*) and wpkh(xprv/84'/c'/a'/1/*)
    """
    account_path = bip84_account_path(master.network, account)
    external = WpkhDescriptor(master, account_path.child(0), wildcard=True)
    internal = WpkhDescriptor(master, account_path.child(1), wildcard=True)
    return external, internal


def single_key_descriptor_pair(key: ExtendedKey) -> tuple[WpkhDescriptor, WpkhDescriptor]:
    """Both keychains collapse to the same single-key template."""
    descriptor = WpkhDescriptor(key)
    return descriptor, descriptor
