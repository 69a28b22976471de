"""
On-device receipt extraction.

OCR runs through Tesseract (pytesseract + Pillow) off the event loop; the
recognized text goes through the rule-based receipt parser. Nothing leaves
the machine, which is why the strategy selector uses this path for
privacy mode and while offline.
"""

import asyncio
import io
import logging
import time

import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError
from pytesseract import Output

from ledger_intake.config import OCRConfig
from ledger_intake.errors import ConfigurationError, ExtractionError
from ledger_intake.schemas.transactions import (
    ProcessingResult,
    ProcessingSource,
    RawExtractedTransaction,
)

from .base import LocalAdapter, OCREngine, OCRResult
from .receipt_parser import ReceiptTextParser

logger = logging.getLogger(__name__)


class TesseractEngine(OCREngine):
    """Tesseract OCR with grayscale + autocontrast preprocessing."""

    def __init__(self, languages: str = "eng", config: str = "--oem 3 --psm 6"):
        self.languages = languages
        self.config = config

    @property
    def name(self) -> str:
        return "tesseract"

    def is_available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError:
            return False
        return True

    async def recognize(self, image: bytes) -> OCRResult:
        return await asyncio.to_thread(self._recognize_sync, image)

    def _recognize_sync(self, image: bytes) -> OCRResult:
        try:
            img = Image.open(io.BytesIO(image))
        except UnidentifiedImageError as e:
            raise ExtractionError("Unsupported or corrupt image", provider=self.name) from e

        img = ImageOps.autocontrast(ImageOps.grayscale(img))

        data = pytesseract.image_to_data(
            img, lang=self.languages, config=self.config, output_type=Output.DICT
        )

        # Rebuild lines from word boxes; conf is -1 for non-word boxes
        lines: dict[tuple[int, int, int], list[str]] = {}
        confidences: list[float] = []
        for i, word in enumerate(data["text"]):
            conf = float(data["conf"][i])
            if conf < 0 or not word.strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            confidences.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return OCRResult(text=text, confidence=confidence)


class OnDeviceExtractor(LocalAdapter):
    """
    Local extraction adapter: OCR engine + receipt text parser.

    Results are labelled source=local with the mean parse confidence.
    """

    def __init__(
        self,
        engine: OCREngine | None = None,
        parser: ReceiptTextParser | None = None,
        config: OCRConfig | None = None,
    ):
        self.config = config or OCRConfig()
        self.engine = engine or TesseractEngine(languages=self.config.languages)
        self.parser = parser or ReceiptTextParser()
        self._ready = False

    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """Check the OCR engine once.

        Raises:
            ConfigurationError: If local OCR is disabled or the engine is missing.
        """
        if self._ready:
            return
        if not self.config.enabled:
            raise ConfigurationError("Local OCR is disabled in the configuration")
        available = await asyncio.to_thread(self.engine.is_available)
        if not available:
            raise ConfigurationError(
                f"OCR engine '{self.engine.name}' is not installed on this machine"
            )
        self._ready = True
        logger.info("Local extractor ready (engine=%s)", self.engine.name)

    async def process_receipt(self, image: bytes) -> ProcessingResult:
        started = time.monotonic()
        await self.initialize()

        ocr = await self.engine.recognize(image)
        receipt = self.parser.parse(ocr.text, ocr.confidence)
        transactions = self.parser.to_transactions(receipt)

        logger.debug(
            "Local OCR: %d transactions from '%s' (ocr confidence %.1f)",
            len(transactions),
            receipt.merchant,
            ocr.confidence,
        )
        # OCR confidence only reaches the result through the items
        return ProcessingResult.from_transactions(
            transactions,
            ProcessingSource.LOCAL,
            processing_time_ms=(time.monotonic() - started) * 1000,
            raw_text=ocr.text,
        )

    async def process_multiple_images(self, images: list[bytes]) -> ProcessingResult:
        """Process each photo and drop items repeated across photos."""
        started = time.monotonic()
        await self.initialize()

        transactions: list[RawExtractedTransaction] = []
        texts: list[str] = []

        for index, image in enumerate(images):
            ocr = await self.engine.recognize(image)
            receipt = self.parser.parse(ocr.text, ocr.confidence)
            transactions.extend(self.parser.to_transactions(receipt))
            texts.append(f"--- Image {index + 1} ---\n{ocr.text}")

        unique = self._drop_repeats(transactions)
        logger.debug(
            "Local OCR over %d images: %d transactions (%d repeats dropped)",
            len(images),
            len(unique),
            len(transactions) - len(unique),
        )
        return ProcessingResult.from_transactions(
            unique,
            ProcessingSource.LOCAL,
            processing_time_ms=(time.monotonic() - started) * 1000,
            raw_text="\n\n".join(texts),
        )

    @staticmethod
    def _drop_repeats(
        transactions: list[RawExtractedTransaction],
    ) -> list[RawExtractedTransaction]:
        """Keep the first item for each description+amount, or the more confident one."""
        seen: dict[tuple[str, str], int] = {}
        kept: list[RawExtractedTransaction] = []
        for txn in transactions:
            key = (txn.description.lower(), f"{txn.amount:.2f}")
            if key not in seen:
                seen[key] = len(kept)
                kept.append(txn)
            elif txn.confidence > kept[seen[key]].confidence:
                kept[seen[key]] = txn
        return kept
