"""Tests for duplicate detection against the ledger."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from ledger_intake.matching.engine import DuplicateDetectionEngine
from ledger_intake.schemas.transactions import (
    CategorizedImportTransaction,
    LedgerTransaction,
    MatchType,
    TransactionType,
)


def candidate(
    description: str = "STARBUCKS COFFEE #4521",
    amount: str = "50.00",
    txn_date: date | None = date(2024, 1, 15),
    txn_type: TransactionType = TransactionType.EXPENSE,
    txn_id: str = "imp_1",
) -> CategorizedImportTransaction:
    return CategorizedImportTransaction(
        id=txn_id,
        description=description,
        amount=Decimal(amount),
        date=txn_date,
        currency="USD",
        type=txn_type,
        suggested_category_id="food",
        category_confidence=0.8,
    )


def existing(
    description: str = "Starbucks Coffee",
    amount: str = "50.00",
    txn_date: date = date(2024, 1, 15),
    txn_type: TransactionType = TransactionType.EXPENSE,
    txn_id: str = "led_1",
) -> LedgerTransaction:
    return LedgerTransaction(
        id=txn_id,
        description=description,
        amount=Decimal(amount),
        date=txn_date,
        type=txn_type,
    )


@pytest.fixture
def engine() -> DuplicateDetectionEngine:
    return DuplicateDetectionEngine()


class TestMatchTiers:
    """Tests for the exact / likely / possible tiers."""

    def test_exact_match(self, engine):
        """Same day, same amount, similar description."""
        result = engine.check(candidate(), [existing()])

        assert result.match_type == MatchType.EXACT
        assert result.confidence == 1.0
        assert result.existing_transaction_id == "led_1"
        assert result.is_duplicate

    def test_store_number_only_description_is_likely(self, engine):
        """"STARBUCKS #4521" scores 0.615 against "Starbucks Coffee", below 0.7."""
        result = engine.check(candidate(description="STARBUCKS #4521"), [existing()])

        assert result.match_type == MatchType.LIKELY
        assert result.confidence == 0.8

    def test_likely_match(self, engine):
        """Same day and amount, unrelated description, same type."""
        result = engine.check(candidate(description="Unrelated Merchant Name"), [existing()])

        assert result.match_type == MatchType.LIKELY
        assert result.confidence == 0.8

    def test_possible_match_next_day(self, engine):
        result = engine.check(
            candidate(description="Anything", txn_date=date(2024, 1, 16)), [existing()]
        )

        assert result.match_type == MatchType.POSSIBLE
        assert result.confidence == 0.5

    def test_possible_match_previous_day(self, engine):
        result = engine.check(candidate(txn_date=date(2024, 1, 14)), [existing()])

        assert result.match_type == MatchType.POSSIBLE

    def test_two_days_apart_is_none(self, engine):
        result = engine.check(candidate(txn_date=date(2024, 1, 17)), [existing()])

        assert result.match_type == MatchType.NONE
        assert result.confidence == 0.0
        assert result.existing_transaction_id is None
        assert not result.is_duplicate

    def test_likely_requires_same_type(self, engine):
        result = engine.check(
            candidate(description="Refund", txn_type=TransactionType.INCOME), [existing()]
        )

        assert result.match_type == MatchType.NONE

    def test_exact_ignores_type(self, engine):
        result = engine.check(candidate(txn_type=TransactionType.INCOME), [existing()])

        assert result.match_type == MatchType.EXACT

    def test_time_of_day_is_ignored(self, engine):
        ledger = [
            LedgerTransaction(
                id="led_9",
                description="Starbucks Coffee",
                amount=Decimal("50.00"),
                date=datetime(2024, 1, 15, 23, 59),
                type=TransactionType.EXPENSE,
            )
        ]
        result = engine.check(candidate(), ledger)

        assert result.match_type == MatchType.EXACT


class TestAmountTolerance:
    """Amounts must differ by strictly less than 0.01."""

    def test_sub_cent_difference_matches(self, engine):
        result = engine.check(candidate(amount="50.009"), [existing()])

        assert result.match_type == MatchType.EXACT

    def test_one_cent_difference_does_not_match(self, engine):
        result = engine.check(candidate(amount="50.01"), [existing()])

        assert result.match_type == MatchType.NONE


class TestSearchOrder:
    """Tier short-circuit and first-match semantics."""

    def test_exact_wins_over_earlier_likely_entry(self, engine):
        ledger = [
            existing(description="Unrelated", txn_id="led_likely"),
            existing(txn_id="led_exact"),
        ]
        result = engine.check(candidate(), ledger)

        assert result.match_type == MatchType.EXACT
        assert result.existing_transaction_id == "led_exact"

    def test_first_matching_entry_wins_within_a_tier(self, engine):
        # Both entries are exact matches; the first in ledger order is reported
        # even though the second has the identical description.
        ledger = [
            existing(description="Starbucks", txn_id="led_first"),
            existing(description="STARBUCKS COFFEE #4521", txn_id="led_second"),
        ]
        result = engine.check(candidate(), ledger)

        assert result.existing_transaction_id == "led_first"

    def test_candidate_without_date_is_never_duplicate(self, engine):
        result = engine.check(candidate(txn_date=None), [existing()])

        assert result.match_type == MatchType.NONE

    def test_empty_ledger(self, engine):
        assert engine.check(candidate(), []).match_type == MatchType.NONE

    @pytest.mark.parametrize(
        "cand",
        [
            candidate(),
            candidate(description="Unrelated"),
            candidate(txn_date=date(2024, 1, 16)),
            candidate(amount="1.00"),
        ],
    )
    def test_confidence_is_determined_by_tier(self, engine, cand):
        result = engine.check(cand, [existing()])

        assert result.confidence in {0.0, 0.5, 0.8, 1.0}
        assert result.confidence == {
            MatchType.EXACT: 1.0,
            MatchType.LIKELY: 0.8,
            MatchType.POSSIBLE: 0.5,
            MatchType.NONE: 0.0,
        }[result.match_type]


class TestCheckBatch:
    """Tests for flagging a whole batch."""

    def test_duplicates_are_flagged_and_deselected(self, engine):
        candidates = [
            candidate(txn_id="imp_1"),
            candidate(description="New shop", amount="12.00", txn_id="imp_2"),
        ]
        scan = engine.check_batch(candidates, [existing()])

        flagged, fresh = scan.transactions
        assert flagged.is_duplicate
        assert flagged.duplicate_of == "led_1"
        assert flagged.selected is False
        assert not fresh.is_duplicate
        assert fresh.selected is True
        assert scan.duplicate_count == 1

    def test_input_is_not_modified(self, engine):
        candidates = [candidate()]
        engine.check_batch(candidates, [existing()])

        assert candidates[0].is_duplicate is False
        assert candidates[0].selected is True

    def test_one_check_per_candidate(self, engine):
        candidates = [candidate(txn_id=f"imp_{i}") for i in range(3)]
        scan = engine.check_batch(candidates, [])

        assert [c.transaction_id for c in scan.checks] == ["imp_0", "imp_1", "imp_2"]
