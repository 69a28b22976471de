"""
Transaction extractors.

Provides:
- SourceClassifier: maps a file to its import type and routing tag
- OnDeviceExtractor: Tesseract OCR + rule-based receipt parser
- ExtractionStrategySelector: local / cloud / hybrid routing for photos
- CSV and JSON-backup parsers (never AI-routed)
"""

from .base import LocalAdapter, OCREngine, OCRResult
from .classifier import SourceClassifier, SourceFile, classify_file
from .local import OnDeviceExtractor, TesseractEngine
from .receipt_parser import ParsedReceipt, ReceiptTextParser
from .router import ExtractionMode, ExtractionStrategySelector
from .tabular import BackupTransaction, parse_backup_json, parse_csv

__all__ = [
    "BackupTransaction",
    "ExtractionMode",
    "ExtractionStrategySelector",
    "LocalAdapter",
    "OCREngine",
    "OCRResult",
    "OnDeviceExtractor",
    "ParsedReceipt",
    "ReceiptTextParser",
    "SourceClassifier",
    "SourceFile",
    "TesseractEngine",
    "classify_file",
    "parse_backup_json",
    "parse_csv",
]
