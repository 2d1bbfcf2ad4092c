"""
Bitcoin transaction signing utilities for P2WPKH inputs.
"""

from __future__ import annotations

import struct

from cjcore.constants import SIGHASH_ALL
from cjcore.transaction import Transaction, encode_varint, hash256
from coincurve import PrivateKey, PublicKey

from cjwallet.wallet.address import create_p2wpkh_script_code


class TransactionSigningError(Exception):
    pass


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a SegWit v0 input (SIGHASH_ALL only)."""
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise TransactionSigningError(f"Unsupported sighash type: {sighash_type}")

    hash_prevouts = hash256(b"".join(inp.outpoint.serialize() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + target_input.outpoint.serialize()
        + encode_varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign a P2WPKH input using coincurve.

    Args:
        tx: The unsigned transaction
        input_index: Index of the input to sign
        value: The value of the input being spent (in satoshis)
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (default SIGHASH_ALL = 1)

    Returns:
        DER-encoded signature with sighash type byte appended
    """
    pubkey_bytes = private_key.public_key.format(compressed=True)
    script_code = create_p2wpkh_script_code(pubkey_bytes)
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)

    # Sign the pre-hashed sighash (it's already SHA256d)
    # coincurve's sign() with hasher=None skips hashing; nonces are RFC6979
    signature = private_key.sign(sighash, hasher=None)

    return signature + bytes([sighash_type])


def verify_p2wpkh_signature(
    tx: Transaction,
    input_index: int,
    value: int,
    pubkey_bytes: bytes,
    signature: bytes,
) -> bool:
    """Check a DER+sighash signature against the input's BIP143 sighash."""
    if len(signature) < 9:
        return False
    sighash_type = signature[-1]
    if sighash_type != SIGHASH_ALL:
        return False
    script_code = create_p2wpkh_script_code(pubkey_bytes)
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)
    try:
        return PublicKey(pubkey_bytes).verify(signature[:-1], sighash, hasher=None)
    except ValueError:
        return False


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]
