"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_intake.config import Config
from ledger_intake.errors import PersistenceError
from ledger_intake.extractors.base import LocalAdapter, OCREngine, OCRResult
from ledger_intake.schemas.transactions import (
    ExtractionSource,
    LedgerTransaction,
    ProcessingResult,
    ProcessingSource,
    RawExtractedTransaction,
    TransactionType,
)
from ledger_intake.services.ledger import Ledger
from ledger_intake.state_store import StateStore

# Sample OCR text for testing
SAMPLE_RECEIPT_TEXT = """
CORNER MARKET
123 Main Street
Tel: 555-123-4567

Date: 2024-01-15

Milk 1L              3.49
Bread                2.99
2 x Apples           4.00

Subtotal            10.48
Tax                  0.84
TOTAL               11.32

VISA ****1234
Thank you for shopping!
"""

SAMPLE_BANK_CSV = """Date,Description,Amount
2024-01-15,STARBUCKS COFFEE #4521,-5.75
2024-01-16,ACME PAYROLL,2500.00
2024-01-17,SHELL OIL 5734,-40.12
"""


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Temporary database path."""
    return tmp_path / "state.db"


@pytest.fixture
def store(temp_db: Path) -> StateStore:
    return StateStore(temp_db)


@pytest.fixture
def config(temp_db: Path) -> Config:
    """Default config with a user and a temporary state database."""
    return Config(state_db_path=temp_db, user_id="user-1")


@pytest.fixture
def sample_receipt_text() -> str:
    return SAMPLE_RECEIPT_TEXT


@pytest.fixture
def sample_bank_csv() -> str:
    return SAMPLE_BANK_CSV


def make_raw(
    description: str = "Coffee",
    amount: str = "5.00",
    txn_date: date | None = date(2024, 1, 15),
    txn_type: TransactionType = TransactionType.EXPENSE,
    confidence: float = 0.9,
    source: ExtractionSource = ExtractionSource.CLOUD,
) -> RawExtractedTransaction:
    return RawExtractedTransaction(
        description=description,
        amount=Decimal(amount),
        date=txn_date,
        currency="USD",
        type=txn_type,
        confidence=confidence,
        extraction_source=source,
    )


class FakeLedger(Ledger):
    """In-memory ledger; descriptions listed in `failing` refuse to commit."""

    def __init__(self, existing: list[LedgerTransaction] | None = None, failing=()):
        self.existing = list(existing or [])
        self.committed: list[LedgerTransaction] = []
        self.failing = set(failing)
        self.list_calls = 0
        self.add_calls = 0

    async def list_transactions(self) -> list[LedgerTransaction]:
        self.list_calls += 1
        return list(self.existing)

    async def add_transaction(self, txn: LedgerTransaction) -> str:
        self.add_calls += 1
        if txn.description in self.failing:
            raise PersistenceError(f"Ledger rejected {txn.description}")
        self.committed.append(txn)
        return f"ledger-{len(self.committed)}"


class FakeLocalAdapter(LocalAdapter):
    """Local adapter returning a canned result, or raising `error`."""

    def __init__(self, result: ProcessingResult | None = None, error: Exception | None = None):
        self.result = result or ProcessingResult.from_transactions(
            [make_raw(source=ExtractionSource.LOCAL, confidence=0.9)], ProcessingSource.LOCAL
        )
        self.error = error
        self.calls = 0

    def is_ready(self) -> bool:
        return self.error is None

    async def process_receipt(self, image: bytes) -> ProcessingResult:
        self.calls += 1
        if self.error:
            raise self.error
        return self.result

    async def process_multiple_images(self, images: list[bytes]) -> ProcessingResult:
        return await self.process_receipt(images[0])


class FakeOCREngine(OCREngine):
    """OCR engine returning fixed text."""

    def __init__(self, text: str = SAMPLE_RECEIPT_TEXT, confidence: float = 90.0, available=True):
        self.text = text
        self.confidence = confidence
        self.available = available

    @property
    def name(self) -> str:
        return "fake"

    def is_available(self) -> bool:
        return self.available

    async def recognize(self, image: bytes) -> OCRResult:
        return OCRResult(text=self.text, confidence=self.confidence)
