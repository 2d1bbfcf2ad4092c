from cjwallet.wallet.models import (
    ForeignInputMetadata,
    InputMetadata,
    KeychainKind,
    SignableInputMetadata,
    SignResult,
    Utxo,
)
from cjwallet.wallet.service import Wallet

__all__ = [
    "ForeignInputMetadata",
    "InputMetadata",
    "KeychainKind",
    "SignResult",
    "SignableInputMetadata",
    "Utxo",
    "Wallet",
]
