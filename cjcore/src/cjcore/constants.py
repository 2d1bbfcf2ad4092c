"""
Bitcoin consensus and policy constants used by the CoinJoin mixer.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

SIGHASH_ALL = 0x01

# Sequence without relative locktime or RBF signalling
SEQUENCE_FINAL = 0xFFFFFFFF

TX_VERSION = 2

# Witness scale factor (BIP141)
WITNESS_SCALE_FACTOR = 4

# P2WPKH input: 36 outpoint + 1 empty scriptSig + 4 sequence
P2WPKH_INPUT_BASE_SIZE = 41

# P2WPKH witness: item count + <72-byte signature> + <33-byte pubkey>, with length prefixes
P2WPKH_WITNESS_SIZE = 1 + 1 + 72 + 1 + 33

# Weight needed to satisfy a P2WPKH input on top of the bare outpoint
P2WPKH_SATISFACTION_WEIGHT = P2WPKH_INPUT_BASE_SIZE * WITNESS_SCALE_FACTOR + P2WPKH_WITNESS_SIZE
