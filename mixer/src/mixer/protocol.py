"""
Signing and merge protocol for the joint PSBT.

The frozen PSBT is copied to every participant, each wallet signs its own
copy, and the signed copies are folded together with merge() before the
inputs are finalized and the consensus transaction is extracted.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Sequence
from dataclasses import dataclass

from cjcore.errors import ConflictingSignature, IncompleteSignatures, UnsignedTransactionMismatch
from cjcore.psbt import PartiallySignedTransaction, PsbtInput
from cjcore.transaction import Transaction
from cjwallet.wallet.address import hash160, is_p2wpkh, p2wpkh_program
from cjwallet.wallet.models import SignResult
from cjwallet.wallet.service import Wallet
from cjwallet.wallet.signing import create_witness_stack, verify_p2wpkh_signature
from loguru import logger


@dataclass
class SigningOutcome:
    """What one participant returned from signing its copy."""

    wallet_name: str
    psbt: PartiallySignedTransaction | None = None
    result: SignResult | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.psbt is not None


def distribute(psbt: PartiallySignedTransaction, count: int) -> list[PartiallySignedTransaction]:
    """Independent copies of the frozen PSBT, one per participant."""
    return [psbt.copy() for _ in range(count)]


async def _sign_copy(wallet: Wallet, psbt: PartiallySignedTransaction) -> SigningOutcome:
    try:
        signed, result = await asyncio.to_thread(wallet.sign, psbt)
    except Exception as e:
        logger.error(f"Wallet '{wallet.name}' failed to sign: {e}")
        return SigningOutcome(wallet_name=wallet.name, error=e)
    return SigningOutcome(wallet_name=wallet.name, psbt=signed, result=result)


async def sign_all(
    psbt: PartiallySignedTransaction, wallets: Sequence[Wallet]
) -> list[SigningOutcome]:
    """
    Have every wallet sign its own copy of the PSBT in parallel.

    A wallet that fails is reported in its outcome; the others are
    unaffected. The returned list follows the order of wallets.
    """
    copies = distribute(psbt, len(wallets))
    outcomes = await asyncio.gather(
        *(_sign_copy(wallet, copy) for wallet, copy in zip(wallets, copies))
    )
    signed = sum(1 for outcome in outcomes if outcome.ok)
    logger.info(f"Collected {signed}/{len(wallets)} signed copies of {psbt.txid}")
    return list(outcomes)


def _final_witness_signature(inp: PsbtInput) -> tuple[bytes, bytes] | None:
    """(pubkey, signature) carried by a final P2WPKH witness."""
    witness = inp.final_script_witness
    if witness is None or len(witness) != 2:
        return None
    signature, pubkey = witness
    return pubkey, signature


def _check_final_witnesses(index: int, ours: PsbtInput, theirs: PsbtInput) -> None:
    ours_final = _final_witness_signature(ours)
    theirs_final = _final_witness_signature(theirs)

    if ours.final_script_witness is not None and theirs.final_script_witness is not None:
        if ours.final_script_witness != theirs.final_script_witness:
            pubkey, ours_sig = ours_final or (b"", b"")
            _, theirs_sig = theirs_final or (b"", b"")
            raise ConflictingSignature(index, pubkey, ours_sig, theirs_sig)
        return

    # A partial signature must agree with the witness the other copy finalized
    if ours_final is not None:
        pubkey, final_sig = ours_final
        partial = theirs.partial_sigs.get(pubkey)
        if partial is not None and partial != final_sig:
            raise ConflictingSignature(index, pubkey, final_sig, partial)
    if theirs_final is not None:
        pubkey, final_sig = theirs_final
        partial = ours.partial_sigs.get(pubkey)
        if partial is not None and partial != final_sig:
            raise ConflictingSignature(index, pubkey, partial, final_sig)


def _merge_input(index: int, ours: PsbtInput, theirs: PsbtInput) -> PsbtInput:
    _check_final_witnesses(index, ours, theirs)

    for pubkey, signature in theirs.partial_sigs.items():
        existing = ours.partial_sigs.get(pubkey)
        if existing is not None and existing != signature:
            raise ConflictingSignature(index, pubkey, existing, signature)
        ours.partial_sigs[pubkey] = signature

    if ours.witness_utxo is None:
        ours.witness_utxo = theirs.witness_utxo
    if ours.non_witness_utxo is None:
        ours.non_witness_utxo = theirs.non_witness_utxo
    if ours.sighash_type is None:
        ours.sighash_type = theirs.sighash_type
    if ours.final_script_witness is None:
        ours.final_script_witness = theirs.final_script_witness
    if ours.final_script_sig is None:
        ours.final_script_sig = theirs.final_script_sig
    for pubkey, origin in theirs.bip32_derivations.items():
        ours.bip32_derivations.setdefault(pubkey, origin)
    for key, value in theirs.unknown.items():
        ours.unknown.setdefault(key, value)

    if ours.is_finalized:
        # Same shape finalize() produces, whichever side was final
        return PsbtInput(
            witness_utxo=ours.witness_utxo,
            non_witness_utxo=ours.non_witness_utxo,
            final_script_sig=ours.final_script_sig,
            final_script_witness=ours.final_script_witness,
            unknown=ours.unknown,
        )
    return ours


def merge(
    a: PartiallySignedTransaction, b: PartiallySignedTransaction
) -> PartiallySignedTransaction:
    """
    Combine two copies of the same PSBT.

    The partial signature map of each input becomes the union of both maps.
    Neither argument is modified.

    Raises:
        UnsignedTransactionMismatch: If the unsigned transactions differ
        ConflictingSignature: If both copies hold different signatures for
            the same key on the same input, either as partial signatures or
            in a final witness
    """
    if a.unsigned_tx_bytes != b.unsigned_tx_bytes:
        raise UnsignedTransactionMismatch(a.txid, b.txid)

    merged = a.copy()
    merged.inputs = [
        _merge_input(i, ours, theirs)
        for i, (ours, theirs) in enumerate(zip(merged.inputs, b.inputs))
    ]

    for ours_out, theirs_out in zip(merged.outputs, b.outputs):
        for pubkey, origin in theirs_out.bip32_derivations.items():
            ours_out.bip32_derivations.setdefault(pubkey, origin)
        for key, value in theirs_out.unknown.items():
            ours_out.unknown.setdefault(key, value)

    for key, value in b.unknown.items():
        merged.unknown.setdefault(key, value)

    return merged


def merge_all(psbts: Sequence[PartiallySignedTransaction]) -> PartiallySignedTransaction:
    """Left fold of merge over the signed copies; the order does not matter."""
    if not psbts:
        raise ValueError("Nothing to merge")
    return functools.reduce(merge, psbts)


def _unsatisfied_reason(psbt: PartiallySignedTransaction, index: int) -> str | None:
    inp = psbt.inputs[index]
    if inp.witness_utxo is None:
        return "missing witness UTXO"
    script = inp.witness_utxo.script_pubkey
    if not is_p2wpkh(script):
        return "not a P2WPKH input"

    program = p2wpkh_program(script)
    matching = [
        (pubkey, sig) for pubkey, sig in inp.partial_sigs.items() if hash160(pubkey) == program
    ]
    if not matching:
        return "no signature from the committed public key"

    pubkey, sig = matching[0]
    if not verify_p2wpkh_signature(psbt.tx, index, inp.witness_utxo.value, pubkey, sig):
        return "invalid signature"
    return None


def finalize(psbt: PartiallySignedTransaction) -> PartiallySignedTransaction:
    """
    Turn the partial signature of every input into its final witness.

    Inputs that are already final are kept as they are, so finalizing twice
    gives the same result. Returns a new PSBT.

    Raises:
        IncompleteSignatures: Listing every input that lacks a valid
            signature from the key its P2WPKH script commits to
    """
    finalized = psbt.copy()
    reasons: dict[int, str] = {}

    for i, inp in enumerate(finalized.inputs):
        if inp.is_finalized:
            continue

        reason = _unsatisfied_reason(finalized, i)
        if reason is not None:
            reasons[i] = reason
            continue

        program = p2wpkh_program(inp.witness_utxo.script_pubkey)
        pubkey, sig = next(
            (pk, s) for pk, s in inp.partial_sigs.items() if hash160(pk) == program
        )
        # Finalized inputs keep only the UTXO, the final witness and unknown fields
        finalized.inputs[i] = PsbtInput(
            witness_utxo=inp.witness_utxo,
            non_witness_utxo=inp.non_witness_utxo,
            final_script_witness=create_witness_stack(sig, pubkey),
            unknown=inp.unknown,
        )

    if reasons:
        for index, reason in sorted(reasons.items()):
            logger.warning(f"Input {index} of {psbt.txid} not finalized: {reason}")
        raise IncompleteSignatures(sorted(reasons), reasons)

    logger.info(f"Finalized {psbt.txid} ({len(finalized.inputs)} inputs)")
    return finalized


def extract(psbt: PartiallySignedTransaction) -> Transaction:
    """Consensus transaction of a finalized PSBT, all PSBT metadata dropped."""
    pending = [i for i, inp in enumerate(psbt.inputs) if not inp.is_finalized]
    if pending:
        raise IncompleteSignatures(pending)

    tx = psbt.tx.copy()
    for txin, inp in zip(tx.inputs, psbt.inputs):
        txin.script_sig = inp.final_script_sig or b""
        txin.witness = list(inp.final_script_witness or [])
    return tx
