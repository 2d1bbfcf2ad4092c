"""
Transaction builder for CoinJoin transactions.

Builds the unsigned joint PSBT from:
- N equal-denomination outputs paying the coordinator's fresh receive scripts
- Foreign inputs declared by the participants (outpoint, script, value)
- Coordinator inputs covering the outputs and the fee
- A coordinator change output for any surplus above the dust threshold

Input order is foreign inputs (as supplied) then coordinator inputs; output
order is the N denomination outputs then change. The order is frozen once
the PSBT exists.
"""

from __future__ import annotations

from collections.abc import Iterable

from cjcore.constants import (
    P2WPKH_SATISFACTION_WEIGHT,
    STANDARD_DUST_LIMIT,
    WITNESS_SCALE_FACTOR,
)
from cjcore.errors import DenominationMismatch
from cjcore.psbt import PartiallySignedTransaction
from cjcore.transaction import Transaction, TxIn, TxOut, encode_varint
from cjwallet.wallet.models import (
    ForeignInputMetadata,
    KeychainKind,
    SignableInputMetadata,
    Utxo,
)
from cjwallet.wallet.service import Wallet
from loguru import logger


def estimate_vsize(input_weights: Iterable[int], outputs: Iterable[TxOut]) -> int:
    """
    Estimate the virtual size of a SegWit transaction.

    input_weights are the satisfaction weights of the inputs (outpoint,
    scriptSig, sequence and witness). A 72-byte signature is assumed for
    P2WPKH, so the signed transaction is never larger than the estimate.
    """
    input_weights = list(input_weights)
    outputs = list(outputs)

    base_size = (
        4  # version
        + len(encode_varint(len(input_weights)))
        + len(encode_varint(len(outputs)))
        + sum(len(out.serialize()) for out in outputs)
        + 4  # locktime
    )
    weight = base_size * WITNESS_SCALE_FACTOR + sum(input_weights)
    if input_weights:
        weight += 2  # SegWit marker and flag

    return (weight + WITNESS_SCALE_FACTOR - 1) // WITNESS_SCALE_FACTOR


class CoinJoinBuilder:
    """
    Assembles one unsigned joint transaction for a coordinator wallet.

    Usage mirrors a regular wallet transaction builder:

        builder = CoinJoinBuilder(wallet, fee_rate=10)
        for _ in range(5):
            builder.add_recipient(wallet.new_address(), 5_000)
        for meta in foreign_inputs:
            builder.add_foreign_input(meta)
        psbt = builder.do_not_spend_change().finish()
    """

    def __init__(
        self,
        wallet: Wallet,
        fee_rate: int,
        dust_threshold: int = STANDARD_DUST_LIMIT,
        min_confirmations: int = 1,
    ):
        if fee_rate < 0:
            raise ValueError(f"Fee rate must be non-negative, got {fee_rate}")
        self.wallet = wallet
        self.fee_rate = fee_rate
        self.dust_threshold = dust_threshold
        self.min_confirmations = min_confirmations

        self.recipients: list[TxOut] = []
        self.foreign_inputs: list[ForeignInputMetadata] = []
        self.exclude_change = False

    def add_recipient(self, script_pubkey: bytes, value: int) -> CoinJoinBuilder:
        """Add an output. All outputs must share one denomination above dust."""
        if value <= 0:
            raise ValueError(f"Output value must be positive, got {value}")
        if value < self.dust_threshold:
            raise ValueError(
                f"Output value {value} is below the dust threshold {self.dust_threshold}"
            )
        if self.recipients and value != self.recipients[0].value:
            raise DenominationMismatch(self.recipients[0].value, value)
        self.recipients.append(TxOut(value, script_pubkey))
        return self

    def add_foreign_input(self, meta: ForeignInputMetadata) -> CoinJoinBuilder:
        if not isinstance(meta, ForeignInputMetadata):
            raise TypeError(f"Expected ForeignInputMetadata, got {type(meta).__name__}")
        if any(existing.outpoint == meta.outpoint for existing in self.foreign_inputs):
            raise ValueError(f"Duplicate foreign input {meta.outpoint}")
        self.foreign_inputs.append(meta)
        return self

    def do_not_spend_change(self) -> CoinJoinBuilder:
        """Never fund the transaction from the coordinator's internal keychain."""
        self.exclude_change = True
        return self

    @property
    def recipient_total(self) -> int:
        return sum(out.value for out in self.recipients)

    def _fee_for(self, coordinator_weights: list[int], outputs: list[TxOut]) -> tuple[int, int]:
        weights = [m.satisfaction_weight for m in self.foreign_inputs] + coordinator_weights
        vsize = estimate_vsize(weights, outputs)
        return vsize * self.fee_rate, vsize

    def _funding_fee(self, utxos: list[Utxo]) -> int:
        fee, _ = self._fee_for([P2WPKH_SATISFACTION_WEIGHT] * len(utxos), self.recipients)
        return fee

    def _select_coordinator_inputs(self) -> list[SignableInputMetadata]:
        utxos = self.wallet.select_utxos(
            self.recipient_total,
            exclude_change=self.exclude_change,
            min_confirmations=self.min_confirmations,
            exclude=[m.outpoint for m in self.foreign_inputs],
            fee_for=self._funding_fee,
        )
        return [self.wallet.spendable_input_metadata(utxo) for utxo in utxos]

    def finish(self) -> PartiallySignedTransaction:
        """
        Select coordinator funding, add change and freeze the PSBT.

        Raises:
            ValueError: If no recipients were added
            InsufficientFunds: If the coordinator's UTXOs cannot cover
                N x D plus the fee on their own
        """
        if not self.recipients:
            raise ValueError("CoinJoin needs at least one output")

        coordinator = self._select_coordinator_inputs()
        coordinator_weights = [m.satisfaction_weight for m in coordinator]

        total_in = sum(m.value for m in self.foreign_inputs) + sum(m.value for m in coordinator)
        outputs = list(self.recipients)

        change_script = self.wallet.next_script(KeychainKind.INTERNAL)
        change_fee, _ = self._fee_for(coordinator_weights, outputs + [TxOut(0, change_script)])
        change = total_in - self.recipient_total - change_fee
        if change >= self.dust_threshold:
            outputs.append(TxOut(change, self.wallet.new_address(KeychainKind.INTERNAL)))
        else:
            logger.debug(f"Change {change} sats below dust threshold, leaving it to the fee")

        inputs: list[SignableInputMetadata | ForeignInputMetadata] = [
            *self.foreign_inputs,
            *coordinator,
        ]
        tx = Transaction(
            inputs=[TxIn(outpoint=m.outpoint) for m in inputs],
            outputs=outputs,
        )
        psbt = PartiallySignedTransaction.from_unsigned_tx(tx)

        for psbt_in, meta in zip(psbt.inputs, inputs):
            psbt_in.witness_utxo = meta.witness_utxo
            if isinstance(meta, SignableInputMetadata):
                psbt_in.bip32_derivations[meta.pubkey] = meta.key_origin

        for psbt_out, out in zip(psbt.outputs, outputs):
            location = self.wallet.lookup_script(out.script_pubkey)
            if location is not None:
                key = self.wallet.derive_key(*location)
                psbt_out.bip32_derivations[key.get_public_key_bytes()] = self.wallet.key_origin(
                    *location
                )

        fee = psbt.fee()
        _, vsize = self._fee_for(coordinator_weights, outputs)
        logger.info(
            f"Built CoinJoin {psbt.txid}: {len(self.foreign_inputs)} foreign + "
            f"{len(coordinator)} coordinator inputs, {len(self.recipients)} x "
            f"{self.recipients[0].value} sats, fee {fee} sats (~{vsize} vB)"
        )
        return psbt


def build_coinjoin_psbt(
    wallet: Wallet,
    denomination: int,
    output_count: int,
    fee_rate: int,
    foreign_inputs: Iterable[ForeignInputMetadata],
    dust_threshold: int = STANDARD_DUST_LIMIT,
    min_confirmations: int = 1,
) -> PartiallySignedTransaction:
    """
    Build the joint PSBT paying output_count x denomination to fresh
    coordinator receive scripts.

    The wallet's UTXO set must already be synced.
    """
    if output_count < 1:
        raise ValueError(f"Output count must be at least 1, got {output_count}")

    builder = CoinJoinBuilder(
        wallet, fee_rate, dust_threshold=dust_threshold, min_confirmations=min_confirmations
    )
    for meta in foreign_inputs:
        builder.add_foreign_input(meta)
    # Receive scripts are only revealed once the round is funded
    scripts = [wallet.next_script(KeychainKind.EXTERNAL, offset=i) for i in range(output_count)]
    for script in scripts:
        builder.add_recipient(script, denomination)
    psbt = builder.do_not_spend_change().finish()

    for _ in scripts:
        wallet.new_address(KeychainKind.EXTERNAL)
    return psbt

