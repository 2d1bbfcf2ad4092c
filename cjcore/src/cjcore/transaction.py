"""
Consensus transaction serialization (BIP141/BIP144 SegWit format).
"""

from __future__ import annotations

import copy
import hashlib
import struct
from dataclasses import dataclass, field

from cjcore.constants import SEQUENCE_FINAL, TX_VERSION, WITNESS_SCALE_FACTOR


class TransactionSerializationError(ValueError):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a varint at offset, returns (value, new_offset)."""
    if offset >= len(data):
        raise TransactionSerializationError("Unexpected end of data reading varint")
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise TransactionSerializationError("Unexpected end of data reading varint")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def read_bytes(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    if offset + length > len(data):
        raise TransactionSerializationError(
            f"Unexpected end of data: need {length} bytes at offset {offset}"
        )
    return data[offset : offset + length], offset + length


def ser_string(data: bytes) -> bytes:
    """Length-prefixed byte string."""
    return encode_varint(len(data)) + data


def read_string(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = read_varint(data, offset)
    return read_bytes(data, offset, length)


@dataclass(frozen=True, order=True)
class OutPoint:
    """Reference to a transaction output. txid is in RPC (big-endian) hex."""

    txid: str
    vout: int

    def __post_init__(self) -> None:
        if len(self.txid) != 64:
            raise ValueError(f"Invalid txid length: {len(self.txid)}")
        bytes.fromhex(self.txid)
        if not 0 <= self.vout <= 0xFFFFFFFF:
            raise ValueError(f"Invalid vout: {self.vout}")

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, value: str) -> OutPoint:
        """Parse "<txid>:<vout>" notation."""
        txid, sep, vout = value.rpartition(":")
        if not sep:
            raise ValueError(f"Invalid outpoint: {value}")
        return cls(txid=txid.lower(), vout=int(vout))

    def serialize(self) -> bytes:
        # txid is in RPC format (big-endian), need to reverse for raw tx
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + ser_string(self.script_pubkey)

    @classmethod
    def deserialize(cls, data: bytes) -> TxOut:
        txout, offset = cls.parse(data, 0)
        if offset != len(data):
            raise TransactionSerializationError("Trailing bytes after output")
        return txout

    @classmethod
    def parse(cls, data: bytes, offset: int) -> tuple[TxOut, int]:
        raw_value, offset = read_bytes(data, offset, 8)
        script, offset = read_string(data, offset)
        return cls(struct.unpack("<Q", raw_value)[0], script), offset


@dataclass
class TxIn:
    outpoint: OutPoint
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return self.outpoint.serialize() + ser_string(self.script_sig) + struct.pack(
            "<I", self.sequence
        )


@dataclass
class Transaction:
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """Serialize transaction; witness data only if present and requested."""
        with_witness = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if with_witness:
            result += b"\x00\x01"  # SegWit marker and flag

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += ser_string(item)

        result += struct.pack("<I", self.locktime)
        return result

    def serialize_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, RPC byte order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @property
    def weight(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        return base_size * (WITNESS_SCALE_FACTOR - 1) + total_size

    @property
    def vsize(self) -> int:
        return (self.weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR

    def copy(self) -> Transaction:
        return copy.deepcopy(self)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        try:
            raw = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise TransactionSerializationError(f"Invalid transaction hex: {e}") from e
        return cls.deserialize(raw)

    @classmethod
    def deserialize(cls, tx_bytes: bytes) -> Transaction:
        try:
            offset = 0
            raw_version, offset = read_bytes(tx_bytes, offset, 4)
            version = struct.unpack("<I", raw_version)[0]

            has_witness = False
            if tx_bytes[offset : offset + 2] == b"\x00\x01":
                has_witness = True
                offset += 2

            input_count, offset = read_varint(tx_bytes, offset)
            inputs: list[TxIn] = []
            for _ in range(input_count):
                txid_le, offset = read_bytes(tx_bytes, offset, 32)
                raw_vout, offset = read_bytes(tx_bytes, offset, 4)
                script_sig, offset = read_string(tx_bytes, offset)
                raw_sequence, offset = read_bytes(tx_bytes, offset, 4)
                inputs.append(
                    TxIn(
                        outpoint=OutPoint(txid_le[::-1].hex(), struct.unpack("<I", raw_vout)[0]),
                        script_sig=script_sig,
                        sequence=struct.unpack("<I", raw_sequence)[0],
                    )
                )

            output_count, offset = read_varint(tx_bytes, offset)
            outputs: list[TxOut] = []
            for _ in range(output_count):
                txout, offset = TxOut.parse(tx_bytes, offset)
                outputs.append(txout)

            if has_witness:
                for inp in inputs:
                    stack_count, offset = read_varint(tx_bytes, offset)
                    for _ in range(stack_count):
                        item, offset = read_string(tx_bytes, offset)
                        inp.witness.append(item)

            raw_locktime, offset = read_bytes(tx_bytes, offset, 4)
            if offset != len(tx_bytes):
                raise TransactionSerializationError(
                    f"Trailing bytes after transaction: {len(tx_bytes) - offset}"
                )

            return cls(
                inputs=inputs,
                outputs=outputs,
                version=version,
                locktime=struct.unpack("<I", raw_locktime)[0],
            )

        except TransactionSerializationError:
            raise
        except Exception as e:
            raise TransactionSerializationError(f"Failed to parse transaction: {e}") from e
