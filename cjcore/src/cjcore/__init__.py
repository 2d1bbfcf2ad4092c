"""
cjcore - Core library for the CoinJoin mixer

Provides the network model, error taxonomy and the transaction/PSBT codecs
shared by the wallet and the mixer.
"""

__version__ = "0.3.0"

from cjcore.constants import (
    P2WPKH_SATISFACTION_WEIGHT,
    SIGHASH_ALL,
    STANDARD_DUST_LIMIT,
)
from cjcore.errors import (
    CoinJoinError,
    ConflictingSignature,
    DenominationMismatch,
    HardenedDerivationRequiresPrivateKey,
    IncompleteSignatures,
    InsufficientFunds,
    InvalidMnemonic,
    UnsignedTransactionMismatch,
    UtxoNotOwned,
)
from cjcore.models import NetworkType
from cjcore.psbt import PartiallySignedTransaction, PSBTSerializationError
from cjcore.transaction import (
    OutPoint,
    Transaction,
    TransactionSerializationError,
    TxIn,
    TxOut,
)

__all__ = [
    "CoinJoinError",
    "ConflictingSignature",
    "DenominationMismatch",
    "HardenedDerivationRequiresPrivateKey",
    "IncompleteSignatures",
    "InsufficientFunds",
    "InvalidMnemonic",
    "NetworkType",
    "OutPoint",
    "P2WPKH_SATISFACTION_WEIGHT",
    "PSBTSerializationError",
    "PartiallySignedTransaction",
    "SIGHASH_ALL",
    "STANDARD_DUST_LIMIT",
    "Transaction",
    "TransactionSerializationError",
    "TxIn",
    "TxOut",
    "UnsignedTransactionMismatch",
    "UtxoNotOwned",
]
