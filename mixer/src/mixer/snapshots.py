"""
On-disk hand-off files between participants and the mixer.

Data directory layout:

    data/
      client/mnemonic/*       one seed phrase per participant
      client/utxos/*.json     one UTXO snapshot record per participant
      mixer/mnemonic/*        the mixer's own seed phrase
      psbt.txt                hex of the joint PSBT

Snapshot record:
    {"outpoint": "<txid>:<vout>",
     "txout": {"value": <sats>, "script_pubkey": "<hex>"},
     "keychain": "External"}
"""

from __future__ import annotations

from pathlib import Path

from cjcore.psbt import PartiallySignedTransaction
from cjcore.transaction import OutPoint
from cjwallet.wallet.models import KeychainKind, Utxo
from loguru import logger
from pydantic import BaseModel, Field, field_validator


class TxOutRecord(BaseModel):
    value: int = Field(ge=0)
    script_pubkey: str

    @field_validator("script_pubkey")
    @classmethod
    def check_hex(cls, v: str) -> str:
        bytes.fromhex(v)
        return v.lower()


class UtxoRecord(BaseModel):
    """UTXO snapshot a participant hands to the mixer."""

    outpoint: str
    txout: TxOutRecord
    keychain: KeychainKind = KeychainKind.EXTERNAL

    @field_validator("outpoint")
    @classmethod
    def check_outpoint(cls, v: str) -> str:
        return str(OutPoint.parse(v))

    @classmethod
    def from_utxo(cls, utxo: Utxo) -> UtxoRecord:
        return cls(
            outpoint=str(utxo.outpoint),
            txout=TxOutRecord(value=utxo.value, script_pubkey=utxo.script_pubkey.hex()),
            keychain=utxo.keychain,
        )

    def to_utxo(self) -> Utxo:
        return Utxo(
            outpoint=OutPoint.parse(self.outpoint),
            value=self.txout.value,
            script_pubkey=bytes.fromhex(self.txout.script_pubkey),
            keychain=self.keychain,
        )


class DataDir:
    """Paths of the hand-off files under one data directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    @property
    def client_mnemonic_dir(self) -> Path:
        return self.root / "client" / "mnemonic"

    @property
    def client_utxo_dir(self) -> Path:
        return self.root / "client" / "utxos"

    @property
    def mixer_mnemonic_dir(self) -> Path:
        return self.root / "mixer" / "mnemonic"

    @property
    def psbt_path(self) -> Path:
        return self.root / "psbt.txt"


def _list_files(directory: Path, pattern: str = "*") -> list[Path]:
    if not directory.is_dir():
        raise FileNotFoundError(f"Directory not found: {directory}")
    return sorted(p for p in directory.glob(pattern) if p.is_file() and not p.name.startswith("."))


def read_mnemonic(path: Path) -> str:
    """Read a seed phrase file. Validation happens at key derivation."""
    phrase = " ".join(path.read_text(encoding="utf-8").split())
    if not phrase:
        raise ValueError(f"Mnemonic file is empty: {path}")
    return phrase


def read_mnemonics(directory: Path) -> list[str]:
    """One seed phrase per file, in file name order."""
    mnemonics = []
    for path in _list_files(directory):
        logger.debug(f"Reading mnemonic from {path}")
        mnemonics.append(read_mnemonic(path))
    return mnemonics


def read_mixer_mnemonic(data_dir: DataDir) -> str:
    files = _list_files(data_dir.mixer_mnemonic_dir)
    if not files:
        raise FileNotFoundError(f"No mixer mnemonic in {data_dir.mixer_mnemonic_dir}")
    if len(files) > 1:
        logger.warning(f"Several mixer mnemonics found, using {files[0].name}")
    return read_mnemonic(files[0])


def read_utxo_snapshot(path: Path) -> UtxoRecord:
    return UtxoRecord.model_validate_json(path.read_text(encoding="utf-8"))


def read_utxo_snapshots(directory: Path) -> list[UtxoRecord]:
    records = []
    for path in _list_files(directory, "*.json"):
        logger.debug(f"Reading UTXO snapshot from {path}")
        records.append(read_utxo_snapshot(path))
    return records


def write_utxo_snapshot(record: UtxoRecord, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(record.model_dump_json(), encoding="utf-8")
    logger.info(f"Wrote UTXO snapshot {record.outpoint} to {path}")


def read_psbt(path: Path) -> PartiallySignedTransaction:
    return PartiallySignedTransaction.from_hex(path.read_text(encoding="utf-8").strip())


def write_psbt(psbt: PartiallySignedTransaction, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(psbt.to_hex(), encoding="utf-8")
    logger.info(f"Wrote PSBT {psbt.txid} to {path}")
