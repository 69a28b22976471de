"""Duplicate detection against the ledger and across overlapping receipt photos."""

from ledger_intake.matching.engine import DuplicateDetectionEngine, DuplicateScanResult
from ledger_intake.matching.multi_image import MergeOutcome, MultiImageMerger, is_overlap_pair
from ledger_intake.matching.similarity import (
    description_similarity,
    dice_coefficient,
    is_similar_description,
    normalize_description,
)

__all__ = [
    "DuplicateDetectionEngine",
    "DuplicateScanResult",
    "MergeOutcome",
    "MultiImageMerger",
    "description_similarity",
    "dice_coefficient",
    "is_overlap_pair",
    "is_similar_description",
    "normalize_description",
]
