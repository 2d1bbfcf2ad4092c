"""
cjwallet - HD wallets for the CoinJoin mixer

BIP39/BIP32 key derivation, wpkh() descriptors, P2WPKH signing and
chain-data backends.
"""

__version__ = "0.3.0"
