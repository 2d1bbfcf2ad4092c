"""
Core network model shared by wallet and mixer.
"""

from __future__ import annotations

from enum import Enum


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def bech32_hrp(self) -> str:
        """Human readable part for SegWit addresses."""
        return {
            NetworkType.MAINNET: "bc",
            NetworkType.TESTNET: "tb",
            NetworkType.SIGNET: "tb",
            NetworkType.REGTEST: "bcrt",
        }[self]

    @property
    def coin_type(self) -> int:
        """BIP44 coin type: 0 for mainnet, 1 for every test network."""
        return 0 if self == NetworkType.MAINNET else 1

    @property
    def xprv_version(self) -> bytes:
        if self == NetworkType.MAINNET:
            return bytes.fromhex("0488ade4")
        return bytes.fromhex("04358394")

    @property
    def xpub_version(self) -> bytes:
        if self == NetworkType.MAINNET:
            return bytes.fromhex("0488b21e")
        return bytes.fromhex("043587cf")


def network_from_version(version: bytes) -> tuple[NetworkType, bool]:
    """
    Map BIP32 version bytes to (network, is_private).

    Test networks share version bytes, so tprv/tpub map to TESTNET.
    """
    for network in (NetworkType.MAINNET, NetworkType.TESTNET):
        if version == network.xprv_version:
            return network, True
        if version == network.xpub_version:
            return network, False
    raise ValueError(f"Unknown extended key version: {version.hex()}")
