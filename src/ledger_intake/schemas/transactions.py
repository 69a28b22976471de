"""
Canonical transaction objects for the import pipeline (SSOT).

Every extractor maps into these types and every downstream component
consumes them. Extracted objects are frozen: passes that mark duplicates
or merge overlapping photos build new objects with dataclasses.replace
instead of mutating shared lists.

Amounts are unsigned Decimals; direction lives in TransactionType.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class TransactionType(str, Enum):
    """Direction of money flow."""

    INCOME = "income"
    EXPENSE = "expense"


class ExtractionSource(str, Enum):
    """Which adapter produced a raw transaction."""

    LOCAL = "local"
    CLOUD = "cloud"


class ProcessingSource(str, Enum):
    """Which path produced a processing result."""

    LOCAL = "local"
    CLOUD = "cloud"
    HYBRID = "hybrid"


class ImagePosition(str, Enum):
    """Vertical position of an item within one photo."""

    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


class ImportFileType(str, Enum):
    """Classified kind of an imported file."""

    RECEIPT_IMAGE = "receipt_image"
    BANK_PDF = "bank_pdf"
    GENERIC_CSV = "generic_csv"
    BACKUP_JSON = "backup_json"
    SPREADSHEET = "spreadsheet"


class ImportSource(str, Enum):
    """Coarse source tag used for routing."""

    IMAGE = "image"
    PDF = "pdf"
    CSV = "csv"
    JSON = "json"


class MatchType(str, Enum):
    """
    Duplicate match tier, ordered by strictness.

    NONE < POSSIBLE < LIKELY < EXACT
    """

    NONE = "none"
    POSSIBLE = "possible"
    LIKELY = "likely"
    EXACT = "exact"


# Confidence is a pure function of the match tier
MATCH_CONFIDENCE: dict[MatchType, float] = {
    MatchType.EXACT: 1.0,
    MatchType.LIKELY: 0.8,
    MatchType.POSSIBLE: 0.5,
    MatchType.NONE: 0.0,
}


@dataclass(frozen=True)
class TaxInfo:
    """Tax and discount details reported by a provider, kept verbatim."""

    tax_rate: Any = None
    tax_amount: Any = None
    tax_category: Any = None
    pre_tax_amount: Any = None
    discount_applied: Any = None
    original_amount: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TaxInfo | None":
        """Build from a provider payload using its camelCase keys."""
        if not data:
            return None
        return cls(
            tax_rate=data.get("taxRate"),
            tax_amount=data.get("taxAmount"),
            tax_category=data.get("taxCategory"),
            pre_tax_amount=data.get("preTaxAmount"),
            discount_applied=data.get("discountApplied"),
            original_amount=data.get("originalAmount"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "taxRate": self.tax_rate,
            "taxAmount": self.tax_amount,
            "taxCategory": self.tax_category,
            "preTaxAmount": self.pre_tax_amount,
            "discountApplied": self.discount_applied,
            "originalAmount": self.original_amount,
        }


@dataclass(frozen=True)
class RawExtractedTransaction:
    """A transaction as produced by one extraction call."""

    description: str
    amount: Decimal
    date: date | None
    currency: str
    type: TransactionType
    confidence: float = 0.0
    extraction_source: ExtractionSource = ExtractionSource.CLOUD

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign convention income > 0, expense < 0."""
        return self.amount if self.type == TransactionType.INCOME else -self.amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "amount": str(self.amount),
            "date": self.date.isoformat() if self.date else None,
            "currency": self.currency,
            "type": self.type.value,
            "confidence": self.confidence,
            "extraction_source": self.extraction_source.value,
        }


@dataclass(frozen=True)
class MultiImageExtractedTransaction(RawExtractedTransaction):
    """A raw transaction annotated with where it was seen across photos."""

    image_index: int = 0
    position_in_image: ImagePosition = ImagePosition.MIDDLE
    was_merged: bool = False
    merged_from_images: tuple[int, ...] = ()
    tax_info: TaxInfo | None = None

    def merged_with(self, other: "MultiImageExtractedTransaction") -> "MultiImageExtractedTransaction":
        """Return a copy recording that ``other`` was folded into this item."""
        indices = set(self.merged_from_images or (self.image_index,))
        indices.update(other.merged_from_images or (other.image_index,))
        return replace(self, was_merged=True, merged_from_images=tuple(sorted(indices)))

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "image_index": self.image_index,
                "position_in_image": self.position_in_image.value,
                "was_merged": self.was_merged,
                "merged_from_images": list(self.merged_from_images),
                "tax_info": self.tax_info.to_dict() if self.tax_info else None,
            }
        )
        return data


@dataclass(frozen=True)
class CategorizedImportTransaction:
    """A candidate transaction ready for review and commit."""

    id: str
    description: str
    amount: Decimal
    date: date | None
    currency: str
    type: TransactionType
    suggested_category_id: str
    category_confidence: float
    extraction_confidence: float = 0.0
    is_duplicate: bool = False
    duplicate_of: str | None = None
    selected: bool = True
    extraction_source: ExtractionSource | None = None
    merged_from_images: tuple[int, ...] = ()
    tax_info: TaxInfo | None = None

    def as_duplicate_of(self, existing_id: str | None) -> "CategorizedImportTransaction":
        """Return a copy flagged as duplicate and deselected."""
        return replace(self, is_duplicate=True, duplicate_of=existing_id, selected=False)

    def with_selection(self, selected: bool) -> "CategorizedImportTransaction":
        return replace(self, selected=selected)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "amount": str(self.amount),
            "date": self.date.isoformat() if self.date else None,
            "currency": self.currency,
            "type": self.type.value,
            "suggested_category_id": self.suggested_category_id,
            "category_confidence": self.category_confidence,
            "is_duplicate": self.is_duplicate,
            "duplicate_of": self.duplicate_of,
            "selected": self.selected,
        }


@dataclass(frozen=True)
class LedgerTransaction:
    """An entry of the existing ledger (or a draft about to be written)."""

    description: str
    amount: Decimal
    date: date
    type: TransactionType
    currency: str = "USD"
    category_id: str | None = None
    id: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DuplicateCheck:
    """Outcome of checking one candidate against the ledger."""

    transaction_id: str
    match_type: MatchType = MatchType.NONE
    existing_transaction_id: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.match_type != MatchType.NONE

    @property
    def confidence(self) -> float:
        return MATCH_CONFIDENCE[self.match_type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "is_duplicate": self.is_duplicate,
            "match_type": self.match_type.value,
            "existing_transaction_id": self.existing_transaction_id,
            "confidence": self.confidence,
        }


def mean_confidence(transactions: list[Any], attr: str = "confidence") -> float:
    """Arithmetic mean of a confidence attribute, 0 for an empty list."""
    if not transactions:
        return 0.0
    return sum(getattr(t, attr) for t in transactions) / len(transactions)


@dataclass
class ProcessingResult:
    """Output of one extraction strategy run."""

    transactions: list[RawExtractedTransaction]
    source: ProcessingSource
    confidence: float
    processing_time_ms: float = 0.0
    used_fallback: bool = False
    raw_text: str | None = None
    # Items folded together by the multi-image overlap pass
    items_merged: int = 0

    @classmethod
    def from_transactions(
        cls,
        transactions: list[RawExtractedTransaction],
        source: ProcessingSource,
        processing_time_ms: float = 0.0,
        used_fallback: bool = False,
        raw_text: str | None = None,
        items_merged: int = 0,
    ) -> "ProcessingResult":
        """Build a result whose confidence is the mean of its members."""
        return cls(
            transactions=list(transactions),
            source=source,
            confidence=mean_confidence(transactions),
            processing_time_ms=processing_time_ms,
            used_fallback=used_fallback,
            raw_text=raw_text,
            items_merged=items_merged,
        )


@dataclass(frozen=True)
class ImportWarning:
    type: str  # "duplicate" | "low_confidence"
    message: str


@dataclass(frozen=True)
class MultiImageMetadata:
    total_images: int
    items_merged: int
    image_ids: tuple[str, ...] = ()


@dataclass
class ImportResult:
    """Everything the review step needs to show and confirm an import."""

    source: ImportSource
    file_type: ImportFileType
    file_name: str
    file_size: int
    transactions: list[CategorizedImportTransaction]
    confidence: float
    warnings: list[ImportWarning] = field(default_factory=list)
    duplicates: list[DuplicateCheck] = field(default_factory=list)
    multi_image_metadata: MultiImageMetadata | None = None

    @property
    def selected_transactions(self) -> list[CategorizedImportTransaction]:
        return [t for t in self.transactions if t.selected]

    @property
    def duplicate_count(self) -> int:
        return sum(1 for d in self.duplicates if d.is_duplicate)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "source": self.source.value,
            "file_type": self.file_type.value,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "transactions": [t.to_dict() for t in self.transactions],
            "confidence": self.confidence,
            "warnings": [{"type": w.type, "message": w.message} for w in self.warnings],
            "duplicates": [d.to_dict() for d in self.duplicates],
        }
        if self.multi_image_metadata:
            result["multi_image_metadata"] = {
                "total_images": self.multi_image_metadata.total_images,
                "items_merged": self.multi_image_metadata.items_merged,
                "image_ids": list(self.multi_image_metadata.image_ids),
            }
        return result
