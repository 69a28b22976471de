"""
Offline Queue Service.

Keeps work that could not be done while offline (or while no extractor was
available) and drains it when conditions improve.

Features:
- Durable queue of receipt photos and ledger writes (SQLite)
- Single in-flight drain; concurrent triggers collapse into one
- Bounded retries: items are given up on after max_retry_count failures
- Append-only sync log of every step
- Photos are handed to the processing pipeline via PROCESS_QUEUED_IMAGE;
  the queue itself never runs extraction
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ledger_intake.errors import PersistenceError
from ledger_intake.events import (
    CONNECTIVITY_CHANGED,
    PROCESS_QUEUED_IMAGE,
    SYNC_PROGRESS,
    EventEmitter,
)
from ledger_intake.schemas.identity import (
    IMAGE_ID_PREFIX,
    LOG_ID_PREFIX,
    TRANSACTION_ID_PREFIX,
    generate_id,
)
from ledger_intake.schemas.transactions import LedgerTransaction
from ledger_intake.services.connectivity import ConnectivityMonitor
from ledger_intake.services.ledger import Ledger, payload_to_transaction, transaction_to_payload
from ledger_intake.state_store.sqlite_store import (
    QueuedImage,
    QueuedTransaction,
    QueueStatus,
    StateStore,
    SyncLogEntry,
)

logger = logging.getLogger(__name__)

MAX_RETRY_COUNT = 3
MAX_RETRIES_MESSAGE = "Max retries exceeded"
BACKGROUND_SYNC_TAG = "sync-offline-queue"

# Sync log actions
SYNC_STARTED = "sync_started"
SYNC_COMPLETED = "sync_completed"
SYNC_FAILED = "sync_failed"
ITEM_PROCESSED = "item_processed"
ITEM_FAILED = "item_failed"


@dataclass
class SyncOutcome:
    """Counters of one drain run."""

    success: int = 0
    failed: int = 0
    # Photos passed on to the processing pipeline (neither success nor failure yet)
    handed_off: int = 0
    skipped: bool = False


@dataclass
class QueueStats:
    pending_images: int
    pending_transactions: int
    failed_items: int
    last_sync_time: str | None


class OfflineQueueService:
    """
    Durable queue of unprocessed photos and uncommitted transactions.

    Handles enqueueing, draining with bounded retry, and maintenance.
    """

    def __init__(
        self,
        state_store: StateStore,
        ledger: Ledger,
        connectivity: ConnectivityMonitor,
        events: EventEmitter | None = None,
        max_retry_count: int = MAX_RETRY_COUNT,
        background_sync: Callable[[str], Any] | None = None,
    ):
        """
        Initialize the offline queue.

        Args:
            state_store: Durable storage for queue items and the sync log
            ledger: Where queued transactions are committed
            connectivity: Online flag; drains are no-ops while offline
            events: Emitter for hand-off and progress events
            max_retry_count: Failed attempts before an item is given up on
            background_sync: Optional platform hook to request a later sync
        """
        self.store = state_store
        self.ledger = ledger
        self.connectivity = connectivity
        self.events = events or connectivity.events
        self.max_retry_count = max_retry_count
        self.background_sync = background_sync

        self._sync_in_progress = False
        self._progress = 0
        self._pending_drain: asyncio.Task | None = None
        # Images handed off by this process and not yet reported back
        self._in_flight: set[str] = set()

        self.events.on(CONNECTIVITY_CHANGED, self._on_connectivity_changed)

    @property
    def is_syncing(self) -> bool:
        return self._sync_in_progress

    @property
    def sync_progress(self) -> int:
        """Percentage of the current drain run, 0 when idle."""
        return self._progress

    # Enqueue

    async def queue_image(
        self, data: bytes, file_name: str, mime_type: str | None = None
    ) -> str:
        """Persist a photo for later extraction. Returns its queue id."""
        image_id = generate_id(IMAGE_ID_PREFIX)
        self.store.insert_queued_image(image_id, file_name, mime_type, data)
        self._log(ITEM_PROCESSED, image_id, "Image queued for processing")
        logger.info("Queued image %s (%s, %d bytes)", image_id, file_name, len(data))
        self._request_background_sync()
        return image_id

    async def queue_images(self, files: list[tuple[bytes, str, str | None]]) -> list[str]:
        ids = []
        for data, file_name, mime_type in files:
            ids.append(await self.queue_image(data, file_name, mime_type))
        return ids

    async def queue_transaction(self, txn: LedgerTransaction) -> str:
        """Persist a ledger write for later commit. Returns its queue id."""
        txn_id = generate_id(TRANSACTION_ID_PREFIX)
        self.store.insert_queued_transaction(txn_id, transaction_to_payload(txn))
        self._log(ITEM_PROCESSED, txn_id, "Transaction queued")
        logger.info("Queued transaction %s", txn_id)
        self._request_background_sync()
        return txn_id

    # Drain

    async def sync_queue(self) -> SyncOutcome:
        """
        Drain pending and retryable items.

        Returns immediately with zero counts while offline or while another
        drain is running.

        Raises:
            PersistenceError: If the queue storage is unreachable.
        """
        if self._sync_in_progress or not self.connectivity.is_online:
            return SyncOutcome(skipped=True)

        self._sync_in_progress = True
        self._progress = 0
        outcome = SyncOutcome()

        try:
            self._log(SYNC_STARTED)

            # Processing images not in flight were left behind by an earlier run
            images = [
                image
                for image in self.store.get_drainable_images(include_processing=True)
                if image.id not in self._in_flight
            ]
            transactions = self.store.get_drainable_transactions()
            total = len(images) + len(transactions)

            if total == 0:
                self._log(SYNC_COMPLETED, details="No pending items")
                return outcome

            processed = 0
            for image in images:
                self._drain_image(image, outcome)
                processed += 1
                self._report_progress(processed, total)

            for txn in transactions:
                await self._drain_transaction(txn, outcome)
                processed += 1
                self._report_progress(processed, total)

            self._log(
                SYNC_COMPLETED,
                details=f"Success: {outcome.success}, Failed: {outcome.failed}, "
                f"Handed off: {outcome.handed_off}",
            )
            logger.info(
                "Queue drain finished: %d succeeded, %d failed, %d handed off",
                outcome.success,
                outcome.failed,
                outcome.handed_off,
            )
            return outcome
        except Exception as e:
            logger.error("Queue drain failed: %s", e)
            try:
                self._log(SYNC_FAILED, details=str(e) or e.__class__.__name__)
            except PersistenceError as log_error:
                logger.warning("Could not record failed drain: %s", log_error)
            raise
        finally:
            self._sync_in_progress = False
            self._progress = 0

    def _drain_image(self, image: QueuedImage, outcome: SyncOutcome) -> None:
        if image.retry_count >= self.max_retry_count:
            self.store.update_queued_image(
                image.id, QueueStatus.FAILED, error=MAX_RETRIES_MESSAGE, exhausted=True
            )
            self._log(ITEM_FAILED, image.id, MAX_RETRIES_MESSAGE)
            outcome.failed += 1
            return

        self.store.update_queued_image(image.id, QueueStatus.PROCESSING)
        self._log(ITEM_PROCESSED, image.id, "Handed off for processing")
        self._in_flight.add(image.id)
        self.events.emit(PROCESS_QUEUED_IMAGE, image_id=image.id)
        outcome.handed_off += 1

    async def _drain_transaction(self, txn: QueuedTransaction, outcome: SyncOutcome) -> None:
        if txn.retry_count >= self.max_retry_count:
            self.store.update_queued_transaction(
                txn.id, QueueStatus.FAILED, error=MAX_RETRIES_MESSAGE, exhausted=True
            )
            self._log(ITEM_FAILED, txn.id, MAX_RETRIES_MESSAGE)
            outcome.failed += 1
            return

        try:
            await self.ledger.add_transaction(payload_to_transaction(txn.payload))
        except Exception as e:
            error_msg = str(e) or e.__class__.__name__
            logger.warning("Queued transaction %s failed to commit: %s", txn.id, error_msg)
            self.store.update_queued_transaction(
                txn.id, QueueStatus.FAILED, error=error_msg, increment_retry=True
            )
            self._log(ITEM_FAILED, txn.id, error_msg)
            outcome.failed += 1
            return

        self.store.update_queued_transaction(txn.id, QueueStatus.COMPLETED, synced=True)
        self._log(ITEM_PROCESSED, txn.id, "Transaction synced")
        outcome.success += 1

    # Hand-off results reported by the processing pipeline

    def get_image(self, image_id: str) -> QueuedImage | None:
        return self.store.get_queued_image(image_id)

    def complete_image(self, image_id: str) -> None:
        self._in_flight.discard(image_id)
        self.store.update_queued_image(image_id, QueueStatus.COMPLETED)
        self._log(ITEM_PROCESSED, image_id, "Image processed")

    def fail_image(self, image_id: str, error: str) -> None:
        """Record a failed processing attempt; the image is retried on a later drain."""
        self._in_flight.discard(image_id)
        self.store.update_queued_image(
            image_id, QueueStatus.FAILED, error=error, increment_retry=True
        )
        self._log(ITEM_FAILED, image_id, error)

    # Maintenance

    def get_pending_images(self) -> list[QueuedImage]:
        return self.store.get_drainable_images()

    def get_pending_transactions(self) -> list[QueuedTransaction]:
        return self.store.get_drainable_transactions()

    def clear_completed(self) -> int:
        count = self.store.delete_queue_items(QueueStatus.COMPLETED)
        logger.info("Cleared %d completed queue items", count)
        return count

    def clear_failed(self) -> int:
        count = self.store.delete_queue_items(QueueStatus.FAILED)
        logger.info("Cleared %d failed queue items", count)
        return count

    def clear_all(self) -> int:
        count = self.store.delete_queue_items()
        logger.info("Cleared all %d queue items", count)
        return count

    def clear_old_logs(self, older_than_days: int = 7) -> int:
        """Prune sync log entries only; queue items are never touched."""
        count = self.store.prune_sync_log(older_than_days)
        if count:
            logger.info("Pruned %d sync log entries older than %d days", count, older_than_days)
        return count

    def get_sync_log(self, limit: int = 50) -> list[SyncLogEntry]:
        return self.store.get_sync_log(limit)

    def get_stats(self) -> QueueStats:
        stats = self.store.get_queue_stats()
        return QueueStats(
            pending_images=stats["pending_images"],
            pending_transactions=stats["pending_transactions"],
            failed_items=stats["failed_items"],
            last_sync_time=self.store.get_last_sync_time(),
        )

    # Internals

    def _log(self, action: str, item_id: str | None = None, details: str | None = None) -> None:
        self.store.append_sync_log(generate_id(LOG_ID_PREFIX), action, item_id, details)

    def _report_progress(self, processed: int, total: int) -> None:
        self._progress = round(processed / total * 100)
        self.events.emit(SYNC_PROGRESS, progress=self._progress, processed=processed, total=total)

    def _request_background_sync(self) -> None:
        if self.background_sync is None:
            return
        try:
            self.background_sync(BACKGROUND_SYNC_TAG)
        except Exception as e:
            logger.warning("Background sync registration failed: %s", e)

    def _on_connectivity_changed(self, online: bool) -> None:
        """Start a drain when connectivity comes back, if an event loop is running."""
        if not online:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Connectivity restored outside an event loop; drain not scheduled")
            return
        self._pending_drain = loop.create_task(self.sync_queue())
        self._pending_drain.add_done_callback(self._on_drain_done)

    @staticmethod
    def _on_drain_done(task: asyncio.Task) -> None:
        # Reconnect drains have no caller
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Drain after reconnect failed: %s", error)
