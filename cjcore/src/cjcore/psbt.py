"""
Partially Signed Bitcoin Transactions (BIP174, version 0).

The serialized PSBT (hex) is the only artifact exchanged between the
coordinator that builds the joint transaction and the participants that
sign it.
"""

from __future__ import annotations

import base64
import binascii
import copy
import struct
from dataclasses import dataclass, field

from loguru import logger

from cjcore.transaction import (
    Transaction,
    TransactionSerializationError,
    TxOut,
    encode_varint,
    read_string,
    read_varint,
    ser_string,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xFB

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02


class PSBTSerializationError(ValueError):
    pass


@dataclass
class KeyOriginInfo:
    """Master key fingerprint plus the derivation path of a key."""

    fingerprint: bytes
    path: list[int] = field(default_factory=list)

    def serialize(self) -> bytes:
        return self.fingerprint + b"".join(struct.pack("<I", index) for index in self.path)

    @classmethod
    def deserialize(cls, data: bytes) -> KeyOriginInfo:
        if len(data) < 4 or len(data) % 4 != 0:
            raise PSBTSerializationError(f"Invalid key origin length: {len(data)}")
        path = [struct.unpack("<I", data[i : i + 4])[0] for i in range(4, len(data), 4)]
        return cls(fingerprint=data[:4], path=path)

    def path_str(self) -> str:
        parts = ["m"]
        for index in self.path:
            if index >= 0x80000000:
                parts.append(f"{index - 0x80000000}'")
            else:
                parts.append(str(index))
        return "/".join(parts)


def _ser_kv(key_type: int, key_data: bytes, value: bytes) -> bytes:
    return ser_string(encode_varint(key_type) + key_data) + ser_string(value)


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[int, bytes, bytes, bytes]], int]:
    """Read one key/value map. Returns [(key_type, key_data, raw_key, value)], offset."""
    entries: list[tuple[int, bytes, bytes, bytes]] = []
    seen: set[bytes] = set()
    while True:
        key, offset = read_string(data, offset)
        if not key:
            return entries, offset
        if key in seen:
            raise PSBTSerializationError(f"Duplicate key in PSBT map: {key.hex()}")
        seen.add(key)
        key_type, key_data_offset = read_varint(key, 0)
        value, offset = read_string(data, offset)
        entries.append((key_type, key[key_data_offset:], key, value))


def _expect_no_key_data(key_type: int, key_data: bytes) -> None:
    if key_data:
        raise PSBTSerializationError(f"Key type {key_type:#x} must not carry key data")


def _check_pubkey(pubkey: bytes) -> bytes:
    if len(pubkey) not in (33, 65):
        raise PSBTSerializationError(f"Invalid public key length: {len(pubkey)}")
    return pubkey


def _parse_witness_stack(data: bytes) -> list[bytes]:
    count, offset = read_varint(data, 0)
    items = []
    for _ in range(count):
        item, offset = read_string(data, offset)
        items.append(item)
    if offset != len(data):
        raise PSBTSerializationError("Trailing bytes in final script witness")
    return items


@dataclass
class PsbtInput:
    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOriginInfo] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_witness is not None or self.final_script_sig is not None

    def serialize(self) -> bytes:
        r = b""
        if self.non_witness_utxo is not None:
            raw_utxo = self.non_witness_utxo.serialize(include_witness=False)
            r += _ser_kv(PSBT_IN_NON_WITNESS_UTXO, b"", raw_utxo)
        if self.witness_utxo is not None:
            r += _ser_kv(PSBT_IN_WITNESS_UTXO, b"", self.witness_utxo.serialize())
        if not self.is_finalized:
            for pubkey, sig in sorted(self.partial_sigs.items()):
                r += _ser_kv(PSBT_IN_PARTIAL_SIG, pubkey, sig)
            if self.sighash_type is not None:
                r += _ser_kv(PSBT_IN_SIGHASH_TYPE, b"", struct.pack("<I", self.sighash_type))
            if self.redeem_script is not None:
                r += _ser_kv(PSBT_IN_REDEEM_SCRIPT, b"", self.redeem_script)
            if self.witness_script is not None:
                r += _ser_kv(PSBT_IN_WITNESS_SCRIPT, b"", self.witness_script)
            for pubkey, origin in sorted(self.bip32_derivations.items()):
                r += _ser_kv(PSBT_IN_BIP32_DERIVATION, pubkey, origin.serialize())
        if self.final_script_sig is not None:
            r += _ser_kv(PSBT_IN_FINAL_SCRIPTSIG, b"", self.final_script_sig)
        if self.final_script_witness is not None:
            stack = encode_varint(len(self.final_script_witness)) + b"".join(
                ser_string(item) for item in self.final_script_witness
            )
            r += _ser_kv(PSBT_IN_FINAL_SCRIPTWITNESS, b"", stack)
        for key, value in sorted(self.unknown.items()):
            r += ser_string(key) + ser_string(value)
        return r + b"\x00"

    @classmethod
    def parse(cls, data: bytes, offset: int) -> tuple[PsbtInput, int]:
        entries, offset = _read_map(data, offset)
        inp = cls()
        for key_type, key_data, raw_key, value in entries:
            if key_type == PSBT_IN_NON_WITNESS_UTXO:
                _expect_no_key_data(key_type, key_data)
                inp.non_witness_utxo = Transaction.deserialize(value)
            elif key_type == PSBT_IN_WITNESS_UTXO:
                _expect_no_key_data(key_type, key_data)
                inp.witness_utxo = TxOut.deserialize(value)
            elif key_type == PSBT_IN_PARTIAL_SIG:
                inp.partial_sigs[_check_pubkey(key_data)] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE:
                _expect_no_key_data(key_type, key_data)
                if len(value) != 4:
                    raise PSBTSerializationError("Sighash type must be 4 bytes")
                inp.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT:
                _expect_no_key_data(key_type, key_data)
                inp.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT:
                _expect_no_key_data(key_type, key_data)
                inp.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                inp.bip32_derivations[_check_pubkey(key_data)] = KeyOriginInfo.deserialize(value)
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
                _expect_no_key_data(key_type, key_data)
                inp.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                _expect_no_key_data(key_type, key_data)
                inp.final_script_witness = _parse_witness_stack(value)
            else:
                inp.unknown[raw_key] = value
        return inp, offset


@dataclass
class PsbtOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOriginInfo] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        r = b""
        if self.redeem_script is not None:
            r += _ser_kv(PSBT_OUT_REDEEM_SCRIPT, b"", self.redeem_script)
        if self.witness_script is not None:
            r += _ser_kv(PSBT_OUT_WITNESS_SCRIPT, b"", self.witness_script)
        for pubkey, origin in sorted(self.bip32_derivations.items()):
            r += _ser_kv(PSBT_OUT_BIP32_DERIVATION, pubkey, origin.serialize())
        for key, value in sorted(self.unknown.items()):
            r += ser_string(key) + ser_string(value)
        return r + b"\x00"

    @classmethod
    def parse(cls, data: bytes, offset: int) -> tuple[PsbtOutput, int]:
        entries, offset = _read_map(data, offset)
        out = cls()
        for key_type, key_data, raw_key, value in entries:
            if key_type == PSBT_OUT_REDEEM_SCRIPT:
                _expect_no_key_data(key_type, key_data)
                out.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT:
                _expect_no_key_data(key_type, key_data)
                out.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                out.bip32_derivations[_check_pubkey(key_data)] = KeyOriginInfo.deserialize(value)
            else:
                out.unknown[raw_key] = value
        return out, offset


@dataclass
class PartiallySignedTransaction:
    """
    A BIP174 PSBT: the frozen unsigned transaction plus per-input and
    per-output metadata (witness UTXOs, partial signatures, key origins).
    """

    tx: Transaction
    inputs: list[PsbtInput] = field(default_factory=list)
    outputs: list[PsbtOutput] = field(default_factory=list)
    version: int | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.inputs:
            self.inputs = [PsbtInput() for _ in self.tx.inputs]
        if not self.outputs:
            self.outputs = [PsbtOutput() for _ in self.tx.outputs]
        if len(self.inputs) != len(self.tx.inputs) or len(self.outputs) != len(self.tx.outputs):
            raise PSBTSerializationError("PSBT maps do not match unsigned transaction")

    @classmethod
    def from_unsigned_tx(cls, tx: Transaction) -> PartiallySignedTransaction:
        if any(inp.script_sig or inp.witness for inp in tx.inputs):
            raise PSBTSerializationError(
                "Unsigned transaction must have empty scriptSigs/witnesses"
            )
        return cls(tx=tx.copy())

    @property
    def unsigned_tx_bytes(self) -> bytes:
        return self.tx.serialize(include_witness=False)

    @property
    def txid(self) -> str:
        return self.tx.txid

    @property
    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)

    def input_value(self, index: int) -> int | None:
        inp = self.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo.value
        if inp.non_witness_utxo is not None:
            vout = self.tx.inputs[index].outpoint.vout
            return inp.non_witness_utxo.outputs[vout].value
        return None

    def fee(self) -> int:
        """Sum of input values minus sum of output values."""
        total_in = 0
        for i in range(len(self.inputs)):
            value = self.input_value(i)
            if value is None:
                raise ValueError(f"Input {i} has no UTXO information, fee unknown")
            total_in += value
        return total_in - sum(out.value for out in self.tx.outputs)

    def copy(self) -> PartiallySignedTransaction:
        return copy.deepcopy(self)

    def serialize(self) -> bytes:
        r = PSBT_MAGIC
        r += _ser_kv(PSBT_GLOBAL_UNSIGNED_TX, b"", self.unsigned_tx_bytes)
        if self.version is not None:
            r += _ser_kv(PSBT_GLOBAL_VERSION, b"", struct.pack("<I", self.version))
        for key, value in sorted(self.unknown.items()):
            r += ser_string(key) + ser_string(value)
        r += b"\x00"
        for inp in self.inputs:
            r += inp.serialize()
        for out in self.outputs:
            r += out.serialize()
        return r

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def deserialize(cls, data: bytes) -> PartiallySignedTransaction:
        if not data.startswith(PSBT_MAGIC):
            raise PSBTSerializationError("Invalid PSBT magic bytes")
        try:
            entries, offset = _read_map(data, len(PSBT_MAGIC))
            tx: Transaction | None = None
            version: int | None = None
            unknown: dict[bytes, bytes] = {}
            for key_type, key_data, raw_key, value in entries:
                if key_type == PSBT_GLOBAL_UNSIGNED_TX:
                    _expect_no_key_data(key_type, key_data)
                    tx = Transaction.deserialize(value)
                    if any(inp.script_sig or inp.witness for inp in tx.inputs):
                        raise PSBTSerializationError("Unsigned tx has non-empty scriptSig")
                elif key_type == PSBT_GLOBAL_VERSION:
                    _expect_no_key_data(key_type, key_data)
                    if len(value) != 4:
                        raise PSBTSerializationError("PSBT version must be 4 bytes")
                    version = struct.unpack("<I", value)[0]
                    if version != 0:
                        raise PSBTSerializationError(f"Unsupported PSBT version: {version}")
                else:
                    # Includes PSBT_GLOBAL_XPUB, which we carry through untouched
                    unknown[raw_key] = value
            if tx is None:
                raise PSBTSerializationError("PSBT has no unsigned transaction")

            inputs = []
            for _ in tx.inputs:
                inp, offset = PsbtInput.parse(data, offset)
                inputs.append(inp)
            outputs = []
            for _ in tx.outputs:
                out, offset = PsbtOutput.parse(data, offset)
                outputs.append(out)
            if offset != len(data):
                raise PSBTSerializationError(f"Trailing bytes after PSBT: {len(data) - offset}")
        except TransactionSerializationError as e:
            raise PSBTSerializationError(f"Malformed PSBT: {e}") from e

        psbt = cls(tx=tx, inputs=inputs, outputs=outputs, version=version, unknown=unknown)
        logger.debug(
            f"Parsed PSBT {psbt.txid}: {len(inputs)} inputs, {len(outputs)} outputs"
        )
        return psbt

    @classmethod
    def from_hex(cls, psbt_hex: str) -> PartiallySignedTransaction:
        try:
            raw = bytes.fromhex(psbt_hex.strip())
        except ValueError as e:
            raise PSBTSerializationError(f"Invalid PSBT hex: {e}") from e
        return cls.deserialize(raw)

    @classmethod
    def from_base64(cls, psbt_b64: str) -> PartiallySignedTransaction:
        try:
            raw = base64.b64decode(psbt_b64.strip(), validate=True)
        except binascii.Error as e:
            raise PSBTSerializationError(f"Invalid PSBT base64: {e}") from e
        return cls.deserialize(raw)
