"""
Error taxonomy for key derivation, joint transaction building and signing.

Derivation and descriptor errors abort a single participant. Builder errors
abort the joint transaction before it is distributed. Merge and finalize
errors carry the offending input index so signing can be re-requested.
"""

from __future__ import annotations


class CoinJoinError(Exception):
    """Base class for all mixer errors."""

    pass


class InvalidMnemonic(CoinJoinError):
    """Seed phrase has unknown words or a bad checksum."""

    pass


class HardenedDerivationRequiresPrivateKey(CoinJoinError):
    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Hardened child {index & 0x7FFFFFFF}' needs a private key")


class UtxoNotOwned(CoinJoinError):
    def __init__(self, outpoint: str, reason: str = "script does not match wallet descriptor"):
        self.outpoint = outpoint
        super().__init__(f"UTXO {outpoint} not owned: {reason}")


class DenominationMismatch(CoinJoinError):
    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"All CoinJoin outputs must pay {expected} sats, got {got}")


class InsufficientFunds(CoinJoinError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"Insufficient funds: need {needed}, have {available}")


class UnsignedTransactionMismatch(CoinJoinError):
    def __init__(self, txid_a: str, txid_b: str):
        self.txid_a = txid_a
        self.txid_b = txid_b
        super().__init__(f"Cannot merge PSBTs of different transactions: {txid_a} != {txid_b}")


class ConflictingSignature(CoinJoinError):
    def __init__(self, input_index: int, pubkey: bytes, ours: bytes, theirs: bytes):
        self.input_index = input_index
        self.pubkey = pubkey
        self.ours = ours
        self.theirs = theirs
        super().__init__(
            f"Conflicting signatures for input {input_index}, pubkey {pubkey.hex()}: "
            f"{ours.hex()} != {theirs.hex()}"
        )


class IncompleteSignatures(CoinJoinError):
    def __init__(self, input_indices: list[int], reasons: dict[int, str] | None = None):
        self.input_indices = sorted(input_indices)
        self.reasons = reasons or {}
        details = ", ".join(
            f"{i} ({self.reasons[i]})" if i in self.reasons else str(i)
            for i in self.input_indices
        )
        super().__init__(f"Inputs missing valid signatures: {details}")
