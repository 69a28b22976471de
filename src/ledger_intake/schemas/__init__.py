"""
Schemas: canonical transaction objects, identifiers and value normalization.
"""

from .identity import (
    compute_batch_key,
    compute_transaction_hash,
    generate_id,
    generate_import_id,
)
from .normalize import normalize_commit_date, parse_date, to_decimal
from .transactions import (
    MATCH_CONFIDENCE,
    CategorizedImportTransaction,
    DuplicateCheck,
    ExtractionSource,
    ImagePosition,
    ImportFileType,
    ImportResult,
    ImportSource,
    ImportWarning,
    LedgerTransaction,
    MatchType,
    MultiImageExtractedTransaction,
    MultiImageMetadata,
    ProcessingResult,
    ProcessingSource,
    RawExtractedTransaction,
    TaxInfo,
    TransactionType,
    mean_confidence,
)

__all__ = [
    "MATCH_CONFIDENCE",
    "CategorizedImportTransaction",
    "DuplicateCheck",
    "ExtractionSource",
    "ImagePosition",
    "ImportFileType",
    "ImportResult",
    "ImportSource",
    "ImportWarning",
    "LedgerTransaction",
    "MatchType",
    "MultiImageExtractedTransaction",
    "MultiImageMetadata",
    "ProcessingResult",
    "ProcessingSource",
    "RawExtractedTransaction",
    "TaxInfo",
    "TransactionType",
    "compute_batch_key",
    "compute_transaction_hash",
    "generate_id",
    "generate_import_id",
    "mean_confidence",
    "normalize_commit_date",
    "parse_date",
    "to_decimal",
]
