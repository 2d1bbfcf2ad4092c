"""
Tests for BIP39/BIP32 key derivation.
"""

import pytest
from cjcore.errors import HardenedDerivationRequiresPrivateKey, InvalidMnemonic
from cjcore.models import NetworkType

from cjwallet.wallet.bip32 import (
    ChildNumber,
    DerivationPath,
    ExtendedKey,
    bip84_account_path,
    derive,
    derive_master,
    mnemonic_to_seed,
    to_public,
    validate_mnemonic,
)

# BIP32 test vector 1
VECTOR1_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
VECTOR1 = [
    (
        "m",
        "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jPPqjiChkVvvNKmPGJxWUtg6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi",
        "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJoCu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8",
    ),
    (
        "m/0H",
        "xprv9uHRZZhk6KAJC1avXpDAp4MDc3sQKNxDiPvvkX8Br5ngLNv1TxvUxt4cV1rGL5hj6KCesnDYUhd7oWgT11eZG7XnxHrnYeSvkzY7d2bhkJ7",
        "xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw",
    ),
    (
        "m/0H/1/2H/2/1000000000",
        "xprvA41z7zogVVwxVSgdKUHDy1SKmdb533PjDz7J6N6mV6uS3ze1ai8FHa8kmHScGpWmj4WggLyQjgPie1rFSruoUihUZREPSL39UNdE3BBDu76",
        "xpub6H1LXWLaKsWFhvm6RVpEL9P4KfRZSW7abD2ttkWP3SSQvnyA8FSVqNTEcYFgJS2UaFcxupHiYkro49S8yGasTvXEYBVPamhGW6cFJodrTHy",
    ),
]


class TestBip32Vectors:
    """Tests against BIP32 test vector 1."""

    @pytest.mark.parametrize("path,xprv,xpub", VECTOR1)
    def test_vector1(self, path, xprv, xpub) -> None:
        """Test derived keys match the published xprv and xpub."""
        master = ExtendedKey.from_seed(VECTOR1_SEED, NetworkType.MAINNET)
        key = derive(master, path)
        assert key.to_string() == xprv
        assert to_public(key).to_string() == xpub

    @pytest.mark.parametrize("path,xprv,xpub", VECTOR1)
    def test_string_roundtrip(self, path, xprv, xpub) -> None:
        """Test extended key strings decode and encode unchanged."""
        key = ExtendedKey.from_string(xprv)
        assert key.is_private
        assert key.to_string() == xprv
        public = ExtendedKey.from_string(xpub)
        assert not public.is_private
        assert public == key.to_public()


class TestMnemonic:
    """Tests for BIP39 mnemonic handling."""

    def test_bip39_vector_seed(self, sample_mnemonic) -> None:
        """Test seed from the BIP39 vector with passphrase TREZOR."""
        seed = mnemonic_to_seed(sample_mnemonic, passphrase="TREZOR")
        assert seed.hex() == (
            "c55257c360c07c72029aebc1b53c05ed0362ada38ead3e3e9efa3708e53495531f"
            "09a6987599d18264c1e1c92f2cf141630c7a3c4ab7c81b2f001698e7463b04"
        )

    def test_normalizes_whitespace_and_case(self, sample_mnemonic) -> None:
        """Test extra whitespace and uppercase are normalized."""
        messy = "  " + sample_mnemonic.upper().replace(" ", "   ") + "\n"
        assert validate_mnemonic(messy) == sample_mnemonic

    def test_bad_checksum(self) -> None:
        """Test a mnemonic with a wrong checksum word is rejected."""
        with pytest.raises(InvalidMnemonic):
            derive_master("abandon " * 11 + "abandon", NetworkType.REGTEST)

    def test_unknown_word(self) -> None:
        """Test words outside the wordlist are rejected."""
        with pytest.raises(InvalidMnemonic):
            derive_master("abandon " * 11 + "notaword", NetworkType.REGTEST)

    def test_passphrase_changes_master(self, sample_mnemonic) -> None:
        """Test a BIP39 passphrase gives a different master key."""
        a = derive_master(sample_mnemonic, NetworkType.REGTEST)
        b = derive_master(sample_mnemonic, NetworkType.REGTEST, passphrase="x")
        assert a != b


class TestBip84:
    """Tests for BIP84 paths and addresses."""

    def test_first_receive_address_mainnet(self, sample_mnemonic) -> None:
        """Test the first BIP84 receive address of the sample mnemonic."""
        master = derive_master(sample_mnemonic, NetworkType.MAINNET)
        key = derive(master, bip84_account_path(NetworkType.MAINNET).child(0).child(0))
        assert key.get_address() == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"

    def test_account_path(self) -> None:
        """Test BIP84 account paths per network."""
        assert str(bip84_account_path(NetworkType.MAINNET, 2)) == "m/84'/0'/2'"
        assert str(bip84_account_path(NetworkType.REGTEST)) == "m/84'/1'/0'"

    def test_regtest_uses_test_versions(self, sample_mnemonic) -> None:
        """Test regtest keys use tprv/tpub and bcrt addresses."""
        master = derive_master(sample_mnemonic, NetworkType.REGTEST)
        assert master.to_string().startswith("tprv")
        assert master.to_public().to_string().startswith("tpub")
        assert master.get_address().startswith("bcrt1q")


class TestDerivation:
    """Tests for child key derivation."""

    def test_deterministic(self, sample_mnemonic) -> None:
        """Test the same path always gives the same key."""
        path = "m/84'/1'/0'/0/7"
        a = derive(derive_master(sample_mnemonic, NetworkType.REGTEST), path)
        b = derive(derive_master(sample_mnemonic, NetworkType.REGTEST), path)
        assert a == b
        assert a.get_private_key_bytes() == b.get_private_key_bytes()

    @pytest.mark.parametrize("tail", ["0/0", "1/5", "0/1999"])
    def test_public_derivation_consistency(self, sample_mnemonic, tail) -> None:
        """Test CKDpub matches CKDpriv for unhardened paths."""
        master = derive_master(sample_mnemonic, NetworkType.REGTEST)
        account = derive(master, "m/84'/1'/0'")

        via_private = to_public(derive(master, f"m/84'/1'/0'/{tail}"))
        via_public = derive(to_public(account), tail)

        assert via_public.get_public_key_bytes() == via_private.get_public_key_bytes()
        assert via_public == via_private

    def test_hardened_from_public_fails(self, sample_mnemonic) -> None:
        """Test hardened steps need the private key."""
        public = to_public(derive_master(sample_mnemonic, NetworkType.REGTEST))
        with pytest.raises(HardenedDerivationRequiresPrivateKey) as exc_info:
            derive(public, "m/84'")
        assert exc_info.value.index == 0x80000000 + 84

    def test_public_key_has_no_private_material(self, sample_mnemonic) -> None:
        """Test to_public strips the private key."""
        public = to_public(derive_master(sample_mnemonic, NetworkType.REGTEST))
        assert public.private_key is None
        with pytest.raises(ValueError):
            public.get_private_key_bytes()

    def test_path_forms_agree(self, sample_mnemonic) -> None:
        """Test string, list and DerivationPath forms derive the same key."""
        master = derive_master(sample_mnemonic, NetworkType.REGTEST)
        steps = [ChildNumber(84, True), ChildNumber(1, True), ChildNumber(0, True)]
        assert derive(master, "m/84h/1h/0h") == derive(master, steps)
        assert derive(master, DerivationPath.parse("84'/1'/0'")) == derive(master, steps)

    def test_child_metadata(self, sample_mnemonic) -> None:
        """Test depth, parent fingerprint and child number of a child key."""
        master = derive_master(sample_mnemonic, NetworkType.REGTEST)
        child = derive(master, "m/84'")
        assert child.depth == 1
        assert child.parent_fingerprint == master.fingerprint
        assert child.child_number == 0x80000000 + 84


class TestDerivationPath:
    """Tests for derivation path parsing."""

    def test_parse_and_str(self) -> None:
        """Test path parsing, formatting and raw values."""
        path = DerivationPath.parse("m/84'/1'/0'/0/5")
        assert str(path) == "m/84'/1'/0'/0/5"
        assert path.values() == [0x80000054, 0x80000001, 0x80000000, 0, 5]
        assert DerivationPath.from_values(path.values()) == path

    def test_invalid_component(self) -> None:
        """Test non-numeric path components are rejected."""
        with pytest.raises(ValueError):
            DerivationPath.parse("m/84'/abc")

    def test_index_out_of_range(self) -> None:
        """Test child indexes must fit below the hardened bit."""
        with pytest.raises(ValueError):
            ChildNumber(2**31)


class TestExtendedKeyParsing:
    """Tests for xprv/xpub string decoding."""

    def test_bad_checksum(self) -> None:
        """Test a corrupted Base58Check string is rejected."""
        xpub = VECTOR1[0][2]
        with pytest.raises(ValueError):
            ExtendedKey.from_string(xpub[:-1] + ("9" if xpub[-1] != "9" else "8"))

    def test_network_mismatch(self) -> None:
        """Test a mainnet key is refused when regtest is expected."""
        with pytest.raises(ValueError):
            ExtendedKey.from_string(VECTOR1[0][1], NetworkType.REGTEST)

    def test_test_network_override(self, sample_mnemonic) -> None:
        """Test tpub strings resolve to testnet unless regtest is asked for."""
        tpub = derive_master(sample_mnemonic, NetworkType.REGTEST).to_public().to_string()
        assert ExtendedKey.from_string(tpub).network == NetworkType.TESTNET
        assert ExtendedKey.from_string(tpub, NetworkType.REGTEST).network == NetworkType.REGTEST
