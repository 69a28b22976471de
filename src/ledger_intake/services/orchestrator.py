"""
Import orchestrator.

Sequences one import from raw file to reviewable candidates, and the
user-triggered commit that follows:

1. classify the file and route it to its extraction path
2. categorize every extracted item and give it a stable id
3. flag duplicates against a single ledger snapshot
4. assemble the ImportResult (warnings, mean confidence)
5. confirm: commit selected rows one at a time, recording row errors

The orchestrator owns an ImportState and announces every change through
IMPORT_PROGRESS, so front-ends observe progress without polling.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum

from ledger_intake.cloud.service import CategoryAssignment, CloudExtractionService
from ledger_intake.config import Config
from ledger_intake.errors import (
    ConfigurationError,
    UnavailableError,
    UnsupportedFileError,
)
from ledger_intake.events import IMPORT_PROGRESS, PROCESS_QUEUED_IMAGE, EventEmitter
from ledger_intake.extractors.classifier import SourceClassifier, SourceFile
from ledger_intake.extractors.router import ExtractionStrategySelector, with_timeout
from ledger_intake.extractors.tabular import parse_backup_json, parse_csv
from ledger_intake.matching.engine import DuplicateDetectionEngine
from ledger_intake.schemas.identity import compute_batch_key, generate_import_id
from ledger_intake.schemas.normalize import normalize_commit_date
from ledger_intake.schemas.transactions import (
    CategorizedImportTransaction,
    ImportFileType,
    ImportResult,
    ImportSource,
    ImportWarning,
    LedgerTransaction,
    MultiImageMetadata,
    RawExtractedTransaction,
    TransactionType,
    mean_confidence,
)
from ledger_intake.services.import_history import CommitError, CommitTotals, ImportHistoryService
from ledger_intake.services.ledger import Ledger
from ledger_intake.services.offline_queue import OfflineQueueService

logger = logging.getLogger(__name__)

BACKUP_CATEGORY_CONFIDENCE = 1.0
UNCATEGORIZED_CONFIDENCE = 0.1
PARKED_MESSAGE = "The photos were saved and will be processed when an extractor is available."


class ImportStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    REVIEW = "review"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ImportState:
    """Snapshot of the orchestrator, replaced field by field at checkpoints."""

    status: ImportStatus = ImportStatus.IDLE
    step: str = ""
    progress: int = 0
    result: ImportResult | None = None
    totals: CommitTotals | None = None
    error: str | None = None


class ImportOrchestrator:
    """
    Top-level import pipeline.

    Photos go through the strategy selector, PDFs straight to the cloud
    service, CSV and JSON backups through the deterministic parsers. When a
    photo cannot be extracted for lack of an extractor it is parked in the
    offline queue (when one is attached) and processed again once the queue
    hands it back through PROCESS_QUEUED_IMAGE.
    """

    def __init__(
        self,
        config: Config,
        ledger: Ledger,
        selector: ExtractionStrategySelector | None = None,
        cloud: CloudExtractionService | None = None,
        history: ImportHistoryService | None = None,
        queue: OfflineQueueService | None = None,
        events: EventEmitter | None = None,
        classifier: SourceClassifier | None = None,
        engine: DuplicateDetectionEngine | None = None,
    ):
        self.config = config
        self.ledger = ledger
        self.selector = selector
        self.cloud = cloud
        self.history = history
        self.queue = queue
        self.events = events or (queue.events if queue else EventEmitter())
        self.classifier = classifier or SourceClassifier()
        self.engine = engine or DuplicateDetectionEngine()
        self.state = ImportState()

        # Results of queued photos processed in the background, keyed by queue id
        self.queued_results: dict[str, ImportResult] = {}
        self._background: set[asyncio.Task] = set()

        if queue is not None:
            queue.events.on(PROCESS_QUEUED_IMAGE, self._on_process_queued_image)

    # State

    def _update(self, state: ImportState | None = None, **changes) -> None:
        """Apply changes to `state`; only the shared state is broadcast."""
        target = self.state if state is None else state
        for key, value in changes.items():
            setattr(target, key, value)
        if target is not self.state:
            return
        self.events.emit(
            IMPORT_PROGRESS,
            status=self.state.status.value,
            step=self.state.step,
            progress=self.state.progress,
        )

    def reset(self) -> None:
        self.state = ImportState()
        self._update()

    # Import

    async def import_file(
        self, source: SourceFile, queue_when_unavailable: bool = True
    ) -> ImportResult:
        """
        Extract, categorize and duplicate-check one file.

        Raises:
            UnsupportedFileError: For spreadsheets.
            UnavailableError: If no extractor can serve the file right now.
            ExtractionError: If the extraction path fails without fallback.
        """
        return await self._import_file(source, queue_when_unavailable)

    async def _import_file(
        self,
        source: SourceFile,
        queue_when_unavailable: bool,
        state: ImportState | None = None,
    ) -> ImportResult:
        self._update(
            state,
            status=ImportStatus.PROCESSING, step="classifying", progress=10, result=None, error=None
        )
        file_type, import_source = self.classifier.classify(source)
        logger.info("Importing %s as %s (%d bytes)", source.name, file_type.value, source.size)

        try:
            if file_type == ImportFileType.SPREADSHEET:
                raise UnsupportedFileError(
                    f"{source.name}: spreadsheets are not supported; export the sheet as CSV"
                )

            self._update(state, step="extracting", progress=30)
            known_categories: list[str] | None = None
            if file_type == ImportFileType.RECEIPT_IMAGE:
                raws = await self._extract_images([source], queue_when_unavailable)
            elif file_type == ImportFileType.BANK_PDF:
                raws = await self._extract_pdf(source)
            elif file_type == ImportFileType.BACKUP_JSON:
                entries = parse_backup_json(
                    source.data,
                    self.config.import_defaults.default_currency,
                    self.config.import_defaults.default_category,
                )
                raws = [e.transaction for e in entries]
                known_categories = [e.category_id for e in entries]
            else:
                raws = parse_csv(source.data, self.config.import_defaults.default_currency)

            result = await self._build_result(
                raws,
                source=import_source,
                file_type=file_type,
                file_name=source.name,
                file_size=source.size,
                batch_key=compute_batch_key(source.data),
                known_categories=known_categories,
                state=state,
            )
        except Exception as e:
            self._update(state, status=ImportStatus.FAILED, step="failed", error=str(e))
            raise

        self._update(state, status=ImportStatus.REVIEW, step="ready", progress=100, result=result)
        return result

    async def import_images(
        self, sources: Sequence[SourceFile], queue_when_unavailable: bool = True
    ) -> ImportResult:
        """Import several photos of one receipt as a single batch."""
        if len(sources) == 1:
            return await self.import_file(sources[0], queue_when_unavailable)
        if not sources:
            raise ValueError("No images given")

        self._update(
            status=ImportStatus.PROCESSING, step="extracting", progress=30, result=None, error=None
        )
        logger.info("Importing %d photos as one receipt", len(sources))
        try:
            raws, items_merged = await self._extract_multiple(sources, queue_when_unavailable)
            result = await self._build_result(
                raws,
                source=ImportSource.IMAGE,
                file_type=ImportFileType.RECEIPT_IMAGE,
                file_name=f"{len(sources)} images",
                file_size=sum(s.size for s in sources),
                batch_key=compute_batch_key(b"".join(s.data for s in sources)),
            )
        except Exception as e:
            self._update(status=ImportStatus.FAILED, step="failed", error=str(e))
            raise

        result.multi_image_metadata = MultiImageMetadata(
            total_images=len(sources),
            items_merged=items_merged,
            image_ids=tuple(s.name for s in sources),
        )
        self._update(status=ImportStatus.REVIEW, step="ready", progress=100, result=result)
        return result

    async def _extract_images(
        self, sources: Sequence[SourceFile], queue_when_unavailable: bool
    ) -> list[RawExtractedTransaction]:
        selector = self._require_selector()
        try:
            result = await selector.process_receipt(sources[0].data)
        except UnavailableError as e:
            if not queue_when_unavailable or self.queue is None:
                raise
            await self._park_images(sources)
            raise UnavailableError(f"{e} {PARKED_MESSAGE}") from e
        return result.transactions

    async def _extract_multiple(
        self, sources: Sequence[SourceFile], queue_when_unavailable: bool
    ) -> tuple[list[RawExtractedTransaction], int]:
        selector = self._require_selector()
        try:
            result = await selector.process_multiple_images([s.data for s in sources])
        except UnavailableError as e:
            if not queue_when_unavailable or self.queue is None:
                raise
            await self._park_images(sources)
            raise UnavailableError(f"{e} {PARKED_MESSAGE}") from e
        return result.transactions, result.items_merged

    async def _park_images(self, sources: Sequence[SourceFile]) -> None:
        await self.queue.queue_images([(s.data, s.name, s.mime_type or None) for s in sources])
        logger.info("Queued %d photos for later processing", len(sources))

    async def _extract_pdf(self, source: SourceFile) -> list[RawExtractedTransaction]:
        if self.cloud is None or not self.cloud.is_available():
            raise UnavailableError(
                "PDF statements need a configured cloud provider and a network connection."
            )
        return await with_timeout(
            self.cloud.extract_transactions_from_pdf(source.data),
            self.config.timeouts.single_seconds,
        )

    def _require_selector(self) -> ExtractionStrategySelector:
        if self.selector is None:
            raise ConfigurationError("Photo import needs an extraction strategy selector")
        return self.selector

    # Result building

    async def _categorize(
        self, raws: Sequence[RawExtractedTransaction]
    ) -> list[CategoryAssignment]:
        if self.cloud is not None and self.cloud.is_available():
            return await self.cloud.categorize_transactions(raws)
        default = self.config.import_defaults.default_category
        logger.debug("No categorizer available; %d items get '%s'", len(raws), default)
        return [CategoryAssignment(default, UNCATEGORIZED_CONFIDENCE) for _ in raws]

    async def _build_result(
        self,
        raws: Sequence[RawExtractedTransaction],
        source: ImportSource,
        file_type: ImportFileType,
        file_name: str,
        file_size: int,
        batch_key: str,
        known_categories: list[str] | None = None,
        state: ImportState | None = None,
    ) -> ImportResult:
        self._update(state, step="categorizing", progress=60)
        if known_categories is not None:
            assignments = [
                CategoryAssignment(cid, BACKUP_CATEGORY_CONFIDENCE) for cid in known_categories
            ]
        else:
            assignments = await self._categorize(raws)

        candidates = [
            CategorizedImportTransaction(
                id=generate_import_id(
                    batch_key, index, raw.amount, raw.date, raw.description, raw.type.value
                ),
                description=raw.description,
                amount=raw.amount,
                date=raw.date,
                currency=raw.currency,
                type=raw.type,
                suggested_category_id=assignment.category_id,
                category_confidence=assignment.confidence,
                extraction_confidence=raw.confidence,
                extraction_source=raw.extraction_source,
                merged_from_images=getattr(raw, "merged_from_images", ()),
                tax_info=getattr(raw, "tax_info", None),
            )
            for index, (raw, assignment) in enumerate(zip(raws, assignments))
        ]

        self._update(state, step="checking_duplicates", progress=80)
        # One snapshot per batch
        snapshot = await self.ledger.list_transactions()
        scan = self.engine.check_batch(candidates, snapshot)

        warnings: list[ImportWarning] = []
        if scan.duplicate_count > 0:
            warnings.append(
                ImportWarning(
                    "duplicate",
                    f"{scan.duplicate_count} possible duplicate(s) found and deselected",
                )
            )
        threshold = self.config.import_defaults.low_confidence_threshold
        low = sum(1 for t in scan.transactions if t.category_confidence < threshold)
        if low:
            warnings.append(
                ImportWarning(
                    "low_confidence", f"{low} transaction(s) have an uncertain category; please review"
                )
            )

        logger.info(
            "%s: %d candidates, %d duplicates, %d low confidence",
            file_name,
            len(candidates),
            scan.duplicate_count,
            low,
        )
        return ImportResult(
            source=source,
            file_type=file_type,
            file_name=file_name,
            file_size=file_size,
            transactions=scan.transactions,
            confidence=mean_confidence(scan.transactions, "category_confidence"),
            warnings=warnings,
            duplicates=scan.checks,
        )

    # Confirm

    async def confirm_import(self, result: ImportResult) -> CommitTotals:
        """
        Commit the selected candidates one at a time.

        A row that fails to commit is recorded in the totals and the loop
        moves on. The history record ends `completed` whenever the loop ran to
        the end, and `failed` only when an exception escaped it.

        Raises:
            ConfigurationError: If there is no history service or no user.
        """
        if self.history is None:
            raise ConfigurationError("Committing an import needs an import history service")

        selected = result.selected_transactions
        self._update(status=ImportStatus.COMMITTING, step="committing", progress=0, error=None)
        try:
            history_id = self.history.start(result, len(selected))
        except Exception as e:
            self._update(status=ImportStatus.FAILED, step="failed", error=str(e))
            raise

        totals = CommitTotals(
            skipped_count=len(result.transactions) - len(selected),
            duplicates_skipped=sum(
                1 for t in result.transactions if t.is_duplicate and not t.selected
            ),
        )

        try:
            for row, txn in enumerate(selected, start=1):
                await self._commit_row(row, txn, result.file_name, totals)
                self._update(progress=round(row / len(selected) * 100))
        except Exception as e:
            logger.error("Commit of %s aborted: %s", result.file_name, e)
            self.history.fail(history_id, totals)
            self._update(status=ImportStatus.FAILED, step="failed", totals=totals, error=str(e))
            raise

        self.history.complete(history_id, totals)
        self._update(status=ImportStatus.COMPLETED, step="done", progress=100, totals=totals)
        return totals

    async def _commit_row(
        self, row: int, txn: CategorizedImportTransaction, file_name: str, totals: CommitTotals
    ) -> None:
        draft = LedgerTransaction(
            description=txn.description,
            amount=abs(txn.amount),
            date=self._commit_date(txn.date),
            type=txn.type,
            currency=txn.currency,
            category_id=txn.suggested_category_id,
            notes=f"Imported from {file_name}",
        )
        try:
            await self.ledger.add_transaction(draft)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning("Row %d (%s) failed to commit: %s", row, txn.description, message)
            totals.error_count += 1
            totals.errors.append(CommitError(row, message, txn.description))
            return

        totals.success_count += 1
        if txn.type == TransactionType.INCOME:
            totals.total_income += txn.amount
        else:
            totals.total_expenses += txn.amount

    @staticmethod
    def _commit_date(value: date | None) -> date:
        # Missing or invalid dates become today instead of failing the row
        return normalize_commit_date(value).date()

    # Queued photos

    async def process_queued_image(self, image_id: str) -> ImportResult | None:
        """
        Extract a photo handed back by the offline queue.

        Reports the outcome to the queue: completed on success, failed (one
        retry used) otherwise. Progress is tracked on a private state so an
        import the user is reviewing is left untouched.
        """
        if self.queue is None:
            raise ConfigurationError("No offline queue attached")
        image = self.queue.get_image(image_id)
        if image is None:
            logger.warning("Queued image %s no longer exists", image_id)
            return None

        source = SourceFile(name=image.file_name, data=image.data, mime_type=image.mime_type or "")
        try:
            result = await self._import_file(
                source, queue_when_unavailable=False, state=ImportState()
            )
        except Exception as e:
            logger.warning("Queued image %s failed: %s", image_id, e)
            self.queue.fail_image(image_id, str(e) or e.__class__.__name__)
            return None

        self.queue.complete_image(image_id)
        self.queued_results[image_id] = result
        return result

    def _on_process_queued_image(self, image_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Queued image %s handed off outside an event loop", image_id)
            return
        task = loop.create_task(self.process_queued_image(image_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_for_background(self) -> None:
        """Wait until every queued photo handed off so far has been processed."""
        while self._background:
            await asyncio.gather(*list(self._background))

