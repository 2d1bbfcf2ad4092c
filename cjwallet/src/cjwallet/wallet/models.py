"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from cjcore.constants import P2WPKH_SATISFACTION_WEIGHT
from cjcore.psbt import KeyOriginInfo
from cjcore.transaction import OutPoint, TxOut


class KeychainKind(str, Enum):
    EXTERNAL = "External"
    INTERNAL = "Internal"


@dataclass(frozen=True)
class Utxo:
    """Unspent output with wallet context. Consumed exactly once as an input."""

    outpoint: OutPoint
    value: int
    script_pubkey: bytes
    keychain: KeychainKind = KeychainKind.EXTERNAL
    derivation_index: int | None = None
    confirmations: int = 0

    @property
    def txout(self) -> TxOut:
        return TxOut(self.value, self.script_pubkey)


@dataclass(frozen=True)
class SignableInputMetadata:
    """Input whose key the wallet holds: enough to sign it later."""

    outpoint: OutPoint
    witness_utxo: TxOut
    keychain: KeychainKind
    pubkey: bytes
    key_origin: KeyOriginInfo
    satisfaction_weight: int = P2WPKH_SATISFACTION_WEIGHT

    @property
    def value(self) -> int:
        return self.witness_utxo.value


@dataclass(frozen=True)
class ForeignInputMetadata:
    """
    Input owned by someone else: script and value only, so a third party can
    include it and account for its fee without any signing capability.
    """

    outpoint: OutPoint
    witness_utxo: TxOut
    satisfaction_weight: int = P2WPKH_SATISFACTION_WEIGHT

    @property
    def value(self) -> int:
        return self.witness_utxo.value


InputMetadata = SignableInputMetadata | ForeignInputMetadata


@dataclass
class SignResult:
    inputs_signed: int = 0
    inputs_skipped: int = 0

    @property
    def total(self) -> int:
        return self.inputs_signed + self.inputs_skipped

    def __str__(self) -> str:
        return f"signed {self.inputs_signed}, skipped {self.inputs_skipped}"
