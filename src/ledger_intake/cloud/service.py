"""
Cloud extraction service.

Chooses one provider per feature through an explicit, ordered fallback
table: the provider preferred for the feature when it is configured, else
the first configured provider in `providers.order`. Callers never branch
on provider names.

Also acts as the categorization collaborator: a failed categorization call
degrades to the default category instead of failing the import.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

import httpx

from ledger_intake.config import Config
from ledger_intake.errors import ConfigurationError, LedgerIntakeError
from ledger_intake.schemas.transactions import (
    ExtractionSource,
    MultiImageExtractedTransaction,
    ProcessingResult,
    ProcessingSource,
    RawExtractedTransaction,
    TransactionType,
)
from ledger_intake.services.connectivity import ConnectivityMonitor

from .providers import (
    CATEGORY_MISSING_CONFIDENCE,
    CloudProvider,
    GeminiProvider,
    OllamaProvider,
    OpenAIProvider,
    ReceiptSummary,
)

logger = logging.getLogger(__name__)

# Feature names used as keys of providers.preferred
RECEIPT_SCANNING = "receipt_scanning"
DOCUMENT_EXTRACTION = "document_extraction"
CATEGORIZATION = "categorization"

CATEGORY_FALLBACK_CONFIDENCE = 0.1


@dataclass(frozen=True)
class CategoryAssignment:
    """Category chosen for one transaction of a batch."""

    category_id: str
    confidence: float


def build_providers(
    config: Config, transport: httpx.AsyncBaseTransport | None = None
) -> dict[str, CloudProvider]:
    """Instantiate every known provider from the configuration."""
    return {
        "gemini": GeminiProvider(config.providers.gemini, config.timeouts, transport),
        "openai": OpenAIProvider(config.providers.openai, config.timeouts, transport),
        "ollama": OllamaProvider(config.providers.ollama, config.timeouts, transport),
    }


class CloudExtractionService:
    """Feature-level facade over the configured cloud providers."""

    def __init__(
        self,
        config: Config,
        connectivity: ConnectivityMonitor | None = None,
        providers: dict[str, CloudProvider] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.connectivity = connectivity
        self.providers = providers if providers is not None else build_providers(config, transport)

    def _candidates(self, feature: str) -> list[CloudProvider]:
        names: list[str] = []
        preferred = self.config.providers.preferred.get(feature)
        if preferred:
            names.append(preferred)
        names.extend(n for n in self.config.providers.order if n not in names)
        return [self.providers[n] for n in names if n in self.providers]

    def provider_for(self, feature: str, documents: bool = False) -> CloudProvider:
        """
        Provider serving a feature.

        Raises:
            ConfigurationError: If no configured provider can serve it.
        """
        for provider in self._candidates(feature):
            if not provider.is_configured():
                continue
            if documents and not provider.supports_documents:
                continue
            return provider
        if documents:
            raise ConfigurationError(
                "No configured cloud provider can read PDF documents (configure a Gemini API key)"
            )
        raise ConfigurationError(
            "No cloud provider configured; add an API key or enable Ollama in the config"
        )

    def is_configured(self) -> bool:
        return any(p.is_configured() for p in self.providers.values())

    def is_available(self) -> bool:
        """Some provider is configured and the device is online. Never raises."""
        try:
            online = self.connectivity.is_online if self.connectivity else True
            return online and self.is_configured()
        except Exception as e:
            logger.debug("Cloud availability check failed: %s", e)
            return False

    async def parse_receipt(self, image: bytes) -> ReceiptSummary:
        provider = self.provider_for(RECEIPT_SCANNING)
        logger.debug("Parsing receipt with %s", provider.name)
        return await provider.parse_receipt(image)

    async def extract_transactions_from_image(self, image: bytes) -> list[RawExtractedTransaction]:
        provider = self.provider_for(RECEIPT_SCANNING)
        return await provider.extract_transactions_from_image(image)

    async def extract_transactions_from_pdf(self, pdf: bytes) -> list[RawExtractedTransaction]:
        provider = self.provider_for(DOCUMENT_EXTRACTION, documents=True)
        return await provider.extract_transactions_from_pdf(pdf)

    async def extract_transactions_from_multiple_images(
        self, images: Sequence[bytes]
    ) -> list[MultiImageExtractedTransaction]:
        provider = self.provider_for(RECEIPT_SCANNING)
        logger.debug("Extracting %d photos with %s", len(images), provider.name)
        return await provider.extract_transactions_from_multiple_images(images)

    async def process_receipt(self, image: bytes) -> ProcessingResult:
        """Single-photo cloud path: one transaction for the receipt total."""
        started = time.monotonic()
        summary = await self.parse_receipt(image)

        transactions: list[RawExtractedTransaction] = []
        if summary.amount > Decimal("0"):
            transactions.append(
                RawExtractedTransaction(
                    description=summary.merchant,
                    amount=summary.amount,
                    date=summary.date,
                    currency=summary.currency,
                    type=TransactionType.EXPENSE,
                    confidence=summary.confidence,
                    extraction_source=ExtractionSource.CLOUD,
                )
            )
        return ProcessingResult.from_transactions(
            transactions,
            ProcessingSource.CLOUD,
            processing_time_ms=(time.monotonic() - started) * 1000,
        )

    async def categorize_transactions(
        self, transactions: Sequence[RawExtractedTransaction]
    ) -> list[CategoryAssignment]:
        """
        Assign a category to every transaction, never raising.

        Rows the provider skipped get the default category at 0.3; a failed
        call gives every row the default category at 0.1.
        """
        default = self.config.import_defaults.default_category
        if not transactions:
            return []

        categories = [(c.id, c.name) for c in self.config.categories]
        try:
            provider = self.provider_for(CATEGORIZATION)
            suggestions = await provider.categorize_transactions(transactions, categories)
        except (LedgerIntakeError, httpx.HTTPError) as e:
            logger.warning("Categorization failed, using '%s': %s", default, e)
            return [CategoryAssignment(default, CATEGORY_FALLBACK_CONFIDENCE) for _ in transactions]

        return [
            CategoryAssignment(s.category_id, s.confidence)
            if s is not None
            else CategoryAssignment(default, CATEGORY_MISSING_CONFIDENCE)
            for s in suggestions
        ]
