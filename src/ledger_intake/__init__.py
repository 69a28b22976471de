"""
Receipts, statements and backups → categorized, deduplicated ledger candidates.

An import pipeline that routes extraction between an on-device OCR extractor
and remote AI providers, filters duplicates against the existing ledger and
across overlapping receipt photos, and durably queues work that could not be
processed while offline.
"""

__version__ = "0.1.0"
