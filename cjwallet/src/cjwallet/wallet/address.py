"""
Bitcoin address and script utilities for P2WPKH wallets.
"""

from __future__ import annotations

import hashlib

import bech32
from cjcore.models import NetworkType


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def pubkey_to_p2wpkh_script(pubkey_bytes: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    if len(pubkey_bytes) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey_bytes)}")
    return bytes([0x00, 0x14]) + hash160(pubkey_bytes)


def is_p2wpkh(script: bytes) -> bool:
    return len(script) == 22 and script[0] == 0x00 and script[1] == 0x14


def p2wpkh_program(script: bytes) -> bytes:
    """Return the 20-byte pubkey hash committed to by a P2WPKH script."""
    if not is_p2wpkh(script):
        raise ValueError(f"Not a P2WPKH script: {script.hex()}")
    return script[2:]


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkType | str) -> str:
    """Convert a native SegWit v0 scriptPubKey to its bech32 address."""
    network = NetworkType(network)
    if scriptpubkey[:1] == b"\x00" and len(scriptpubkey) in (22, 34):
        if scriptpubkey[1] == len(scriptpubkey) - 2:
            result = bech32.encode(network.bech32_hrp, 0, scriptpubkey[2:])
            if result is None:
                raise ValueError(f"Failed to encode address: {scriptpubkey.hex()}")
            return result
    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


def pubkey_to_p2wpkh_address(pubkey_bytes: bytes, network: NetworkType | str) -> str:
    return scriptpubkey_to_address(pubkey_to_p2wpkh_script(pubkey_bytes), network)


def address_to_scriptpubkey(address: str, network: NetworkType | str) -> bytes:
    """Decode a bech32 SegWit v0 address for the given network."""
    network = NetworkType(network)
    witver, witprog = bech32.decode(network.bech32_hrp, address)
    if witver is None or witprog is None:
        raise ValueError(f"Invalid {network.value} bech32 address: {address}")
    if witver != 0 or len(witprog) not in (20, 32):
        raise ValueError(f"Unsupported witness program in {address}")
    return bytes([0x00, len(witprog)]) + bytes(witprog)
