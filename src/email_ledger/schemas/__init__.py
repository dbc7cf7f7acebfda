"""
Schema definitions for the email ledger.

- extraction: Canonical ExtractionResult / TransactionCandidate (SSOT)
- normalizer: Candidate -> durable transaction mapping
"""

from .extraction import (
    DETAILS_BY_TYPE,
    EmailType,
    ExtractionResult,
    OptionDetails,
    RsuDetails,
    SchemaValidationError,
    TradeDetails,
    TransactionCandidate,
    TransactionType,
    TransferDetails,
)
from .normalizer import NormalizedTransaction, normalize_transaction

__all__ = [
    "DETAILS_BY_TYPE",
    "EmailType",
    "ExtractionResult",
    "NormalizedTransaction",
    "OptionDetails",
    "RsuDetails",
    "SchemaValidationError",
    "TradeDetails",
    "TransactionCandidate",
    "TransactionType",
    "TransferDetails",
    "normalize_transaction",
]
