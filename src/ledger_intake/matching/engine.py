"""Duplicate detection against the existing ledger.

Each candidate is classified into exactly one tier. Tiers are evaluated
strictest first, and within a tier the ledger is scanned in its own order;
the first entry satisfying a tier predicate wins:

- exact:    same calendar day, amount within 0.01, similar description (1.0)
- likely:   same calendar day, amount within 0.01, same type (0.8)
- possible: dates at most one day apart, amount within 0.01, same type (0.5)
- none:     no entry matched (0.0)

The ledger snapshot is passed in by the caller and read once per batch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from ledger_intake.matching.similarity import is_similar_description
from ledger_intake.schemas.transactions import (
    CategorizedImportTransaction,
    DuplicateCheck,
    LedgerTransaction,
    MatchType,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
POSSIBLE_MATCH_DAYS = 1


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


def _amounts_equal(a: Decimal, b: Decimal) -> bool:
    return abs(abs(a) - abs(b)) < AMOUNT_TOLERANCE


@dataclass
class DuplicateScanResult:
    """Candidates with duplicates flagged, plus one check per candidate."""

    transactions: list[CategorizedImportTransaction]
    checks: list[DuplicateCheck]

    @property
    def duplicate_count(self) -> int:
        return sum(1 for c in self.checks if c.is_duplicate)


class DuplicateDetectionEngine:
    """Three-tier fuzzy matcher for import candidates against the ledger."""

    def __init__(self, similar: Callable[[str | None, str | None], bool] | None = None) -> None:
        self._similar = similar or is_similar_description
        self._tiers: list[tuple[MatchType, Callable[..., bool]]] = [
            (MatchType.EXACT, self._is_exact),
            (MatchType.LIKELY, self._is_likely),
            (MatchType.POSSIBLE, self._is_possible),
        ]

    def check(
        self,
        candidate: CategorizedImportTransaction,
        ledger: Sequence[LedgerTransaction],
    ) -> DuplicateCheck:
        """Classify one candidate against a ledger snapshot."""
        candidate_date = _as_date(candidate.date)
        if candidate_date is None:
            return DuplicateCheck(transaction_id=candidate.id)

        for match_type, predicate in self._tiers:
            for existing in ledger:
                existing_date = _as_date(existing.date)
                if existing_date is None:
                    continue
                if predicate(candidate, candidate_date, existing, existing_date):
                    logger.debug(
                        "Candidate %s is a %s duplicate of %s",
                        candidate.id,
                        match_type.value,
                        existing.id,
                    )
                    return DuplicateCheck(
                        transaction_id=candidate.id,
                        match_type=match_type,
                        existing_transaction_id=existing.id,
                    )

        return DuplicateCheck(transaction_id=candidate.id)

    def check_batch(
        self,
        candidates: Sequence[CategorizedImportTransaction],
        ledger: Sequence[LedgerTransaction],
    ) -> DuplicateScanResult:
        """Check every candidate against the same snapshot and flag duplicates.

        Flagged candidates are deselected by default. Returns new objects; the
        input sequence is not modified.
        """
        snapshot = list(ledger)
        checks = [self.check(candidate, snapshot) for candidate in candidates]

        flagged = [
            candidate.as_duplicate_of(result.existing_transaction_id)
            if result.is_duplicate
            else candidate
            for candidate, result in zip(candidates, checks)
        ]

        duplicates = sum(1 for c in checks if c.is_duplicate)
        if duplicates:
            logger.info(
                "Flagged %d of %d candidates as duplicates (ledger size %d)",
                duplicates,
                len(candidates),
                len(snapshot),
            )
        return DuplicateScanResult(transactions=flagged, checks=checks)

    # Tier predicates

    def _is_exact(
        self,
        candidate: CategorizedImportTransaction,
        candidate_date: date,
        existing: LedgerTransaction,
        existing_date: date,
    ) -> bool:
        return (
            candidate_date == existing_date
            and _amounts_equal(candidate.amount, existing.amount)
            and self._similar(candidate.description, existing.description)
        )

    def _is_likely(
        self,
        candidate: CategorizedImportTransaction,
        candidate_date: date,
        existing: LedgerTransaction,
        existing_date: date,
    ) -> bool:
        return (
            candidate_date == existing_date
            and _amounts_equal(candidate.amount, existing.amount)
            and candidate.type == existing.type
        )

    def _is_possible(
        self,
        candidate: CategorizedImportTransaction,
        candidate_date: date,
        existing: LedgerTransaction,
        existing_date: date,
    ) -> bool:
        return (
            abs((candidate_date - existing_date).days) <= POSSIBLE_MATCH_DAYS
            and _amounts_equal(candidate.amount, existing.amount)
            and candidate.type == existing.type
        )
