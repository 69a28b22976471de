"""Tests for the offline queue service."""

import asyncio
import logging
import sqlite3
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from conftest import FakeLedger

from ledger_intake.errors import PersistenceError
from ledger_intake.events import PROCESS_QUEUED_IMAGE, SYNC_PROGRESS, EventEmitter
from ledger_intake.schemas.transactions import LedgerTransaction, TransactionType
from ledger_intake.services.connectivity import ConnectivityMonitor
from ledger_intake.services.offline_queue import (
    BACKGROUND_SYNC_TAG,
    MAX_RETRIES_MESSAGE,
    OfflineQueueService,
)
from ledger_intake.state_store import QueueStatus


def ledger_txn(description: str = "Groceries") -> LedgerTransaction:
    return LedgerTransaction(
        id="",
        description=description,
        amount=Decimal("42.10"),
        date=date(2024, 1, 15),
        type=TransactionType.EXPENSE,
        category_id="groceries",
    )


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def connectivity(events):
    return ConnectivityMonitor(events=events)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def queue(store, ledger, connectivity, events):
    return OfflineQueueService(store, ledger, connectivity, events)


class TestEnqueue:
    """Tests for queueing photos and transactions."""

    def test_queue_image_is_pending(self, queue, store):
        image_id = asyncio.run(queue.queue_image(b"\x89PNG", "receipt.png", "image/png"))

        image = store.get_queued_image(image_id)
        assert image.status == QueueStatus.PENDING
        assert image.retry_count == 0
        assert image.size == 4
        assert image.data == b"\x89PNG"
        assert image_id.startswith("img_")

    def test_queue_images_keeps_order(self, queue):
        ids = asyncio.run(
            queue.queue_images([(b"a", "one.jpg", "image/jpeg"), (b"b", "two.jpg", "image/jpeg")])
        )

        assert [img.id for img in queue.get_pending_images()] == ids

    def test_queue_transaction_is_pending(self, queue, store):
        txn_id = asyncio.run(queue.queue_transaction(ledger_txn()))

        queued = store.get_queued_transaction(txn_id)
        assert queued.status == QueueStatus.PENDING
        assert queued.payload["description"] == "Groceries"

    def test_background_sync_is_requested(self, store, ledger, connectivity):
        hook = MagicMock()
        queue = OfflineQueueService(store, ledger, connectivity, background_sync=hook)

        asyncio.run(queue.queue_transaction(ledger_txn()))

        hook.assert_called_once_with(BACKGROUND_SYNC_TAG)

    def test_failing_background_sync_hook_is_ignored(self, store, ledger, connectivity):
        hook = MagicMock(side_effect=RuntimeError("not supported"))
        queue = OfflineQueueService(store, ledger, connectivity, background_sync=hook)

        txn_id = asyncio.run(queue.queue_transaction(ledger_txn()))

        assert store.get_queued_transaction(txn_id) is not None


class TestSyncTransactions:
    """Tests for draining queued ledger writes."""

    def test_successful_commit(self, queue, store, ledger):
        txn_id = asyncio.run(queue.queue_transaction(ledger_txn()))

        outcome = asyncio.run(queue.sync_queue())

        assert outcome.success == 1
        assert outcome.failed == 0
        queued = store.get_queued_transaction(txn_id)
        assert queued.status == QueueStatus.COMPLETED
        assert queued.synced_at is not None
        assert [t.description for t in ledger.committed] == ["Groceries"]
        assert queue.get_pending_transactions() == []

    def test_failures_are_retried_until_exhausted(self, store, connectivity, events):
        """Three failed commits, then the fourth drain gives up without calling the ledger."""
        ledger = FakeLedger(failing={"Groceries"})
        queue = OfflineQueueService(store, ledger, connectivity, events)
        txn_id = asyncio.run(queue.queue_transaction(ledger_txn()))

        for attempt in range(1, 4):
            outcome = asyncio.run(queue.sync_queue())
            queued = store.get_queued_transaction(txn_id)
            assert outcome.failed == 1
            assert queued.status == QueueStatus.FAILED
            assert queued.retry_count == attempt
            assert queued.exhausted_at is None

        assert ledger.add_calls == 3

        outcome = asyncio.run(queue.sync_queue())

        queued = store.get_queued_transaction(txn_id)
        assert outcome.failed == 1
        assert ledger.add_calls == 3
        assert queued.status == QueueStatus.FAILED
        assert queued.last_error == MAX_RETRIES_MESSAGE
        assert queued.exhausted_at is not None

        # Exhausted items are no longer drained
        outcome = asyncio.run(queue.sync_queue())
        assert outcome.failed == 0
        assert queue.get_pending_transactions() == []

    def test_failed_item_recovers_on_retry(self, store, connectivity, events):
        ledger = FakeLedger(failing={"Groceries"})
        queue = OfflineQueueService(store, ledger, connectivity, events)
        txn_id = asyncio.run(queue.queue_transaction(ledger_txn()))

        asyncio.run(queue.sync_queue())
        ledger.failing.clear()
        outcome = asyncio.run(queue.sync_queue())

        assert outcome.success == 1
        assert store.get_queued_transaction(txn_id).status == QueueStatus.COMPLETED


class TestSyncGuards:
    """Drains are skipped while offline or already running."""

    def test_offline_drain_is_skipped(self, queue, connectivity, ledger):
        asyncio.run(queue.queue_transaction(ledger_txn()))
        connectivity.set_online(False)

        outcome = asyncio.run(queue.sync_queue())

        assert outcome.skipped
        assert outcome.success == 0
        assert ledger.add_calls == 0

    def test_concurrent_drain_is_skipped(self, queue):
        queue._sync_in_progress = True

        outcome = asyncio.run(queue.sync_queue())

        assert outcome.skipped
        assert queue.is_syncing

    def test_empty_queue(self, queue, store):
        outcome = asyncio.run(queue.sync_queue())

        assert not outcome.skipped
        assert outcome.success == outcome.failed == outcome.handed_off == 0
        assert store.get_sync_log(1)[0].action == "sync_completed"
        assert queue.is_syncing is False

    def test_reconnect_starts_a_drain(self, store, connectivity, events):
        ledger = FakeLedger()
        queue = OfflineQueueService(store, ledger, connectivity, events)
        connectivity.set_online(False)

        async def scenario():
            await queue.queue_transaction(ledger_txn())
            connectivity.set_online(True)
            await queue._pending_drain

        asyncio.run(scenario())

        assert len(ledger.committed) == 1

    def test_storage_failure_is_logged_and_raised(self, queue, store):
        store.get_drainable_transactions = MagicMock(
            side_effect=PersistenceError("disk I/O error")
        )

        with pytest.raises(PersistenceError, match="disk I/O error"):
            asyncio.run(queue.sync_queue())

        (entry,) = store.get_sync_log(1)
        assert entry.action == "sync_failed"
        assert entry.details == "disk I/O error"
        assert queue.is_syncing is False

    def test_unwritable_sync_log_keeps_original_error(self, queue, store):
        append = store.append_sync_log

        def append_unless_failed(log_id, action, item_id=None, details=None):
            if action == "sync_failed":
                raise PersistenceError("database is locked")
            append(log_id, action, item_id, details)

        store.append_sync_log = append_unless_failed
        store.get_drainable_images = MagicMock(side_effect=PersistenceError("disk I/O error"))

        with pytest.raises(PersistenceError, match="disk I/O error"):
            asyncio.run(queue.sync_queue())

    def test_failed_reconnect_drain_is_logged(self, store, connectivity, events, caplog):
        queue = OfflineQueueService(store, FakeLedger(), connectivity, events)
        store.get_drainable_transactions = MagicMock(
            side_effect=PersistenceError("disk I/O error")
        )
        connectivity.set_online(False)

        async def scenario():
            connectivity.set_online(True)
            await asyncio.gather(queue._pending_drain, return_exceptions=True)
            await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="ledger_intake.services.offline_queue"):
            asyncio.run(scenario())

        assert "Drain after reconnect failed: disk I/O error" in caplog.text


class TestImageHandOff:
    """Photos are handed to the processing pipeline, never extracted here."""

    def test_image_is_handed_off(self, queue, store, events):
        handed = []
        events.on(PROCESS_QUEUED_IMAGE, lambda image_id: handed.append(image_id))
        image_id = asyncio.run(queue.queue_image(b"jpg", "receipt.jpg", "image/jpeg"))

        outcome = asyncio.run(queue.sync_queue())

        assert handed == [image_id]
        assert outcome.handed_off == 1
        assert outcome.success == 0
        assert store.get_queued_image(image_id).status == QueueStatus.PROCESSING

    def test_processing_image_is_not_handed_off_twice(self, queue, events):
        handed = []
        events.on(PROCESS_QUEUED_IMAGE, lambda image_id: handed.append(image_id))
        asyncio.run(queue.queue_image(b"jpg", "receipt.jpg"))

        asyncio.run(queue.sync_queue())
        asyncio.run(queue.sync_queue())

        assert len(handed) == 1

    def test_image_left_processing_by_earlier_run_is_handed_off(
        self, store, ledger, connectivity, events
    ):
        handed = []
        events.on(PROCESS_QUEUED_IMAGE, lambda image_id: handed.append(image_id))
        store.insert_queued_image("img_stale", "receipt.jpg", "image/jpeg", b"jpg")
        store.update_queued_image("img_stale", QueueStatus.PROCESSING)
        queue = OfflineQueueService(store, ledger, connectivity, events)

        outcome = asyncio.run(queue.sync_queue())

        assert handed == ["img_stale"]
        assert outcome.handed_off == 1

    def test_reported_image_can_be_handed_off_again(self, queue, events):
        handed = []
        events.on(PROCESS_QUEUED_IMAGE, lambda image_id: handed.append(image_id))
        image_id = asyncio.run(queue.queue_image(b"jpg", "receipt.jpg"))

        asyncio.run(queue.sync_queue())
        queue.fail_image(image_id, "Blurry photo")
        asyncio.run(queue.sync_queue())

        assert handed == [image_id, image_id]

    def test_complete_and_fail_image(self, queue, store):
        done = asyncio.run(queue.queue_image(b"a", "a.jpg"))
        broken = asyncio.run(queue.queue_image(b"b", "b.jpg"))

        queue.complete_image(done)
        queue.fail_image(broken, "Blurry photo")

        assert store.get_queued_image(done).status == QueueStatus.COMPLETED
        failed = store.get_queued_image(broken)
        assert failed.status == QueueStatus.FAILED
        assert failed.retry_count == 1
        assert failed.last_error == "Blurry photo"
        assert [img.id for img in queue.get_pending_images()] == [broken]

    def test_image_is_exhausted_after_max_retries(self, store, ledger, connectivity):
        queue = OfflineQueueService(store, ledger, connectivity, max_retry_count=1)
        image_id = asyncio.run(queue.queue_image(b"a", "a.jpg"))
        queue.fail_image(image_id, "Blurry photo")

        outcome = asyncio.run(queue.sync_queue())

        image = store.get_queued_image(image_id)
        assert outcome.failed == 1
        assert image.last_error == MAX_RETRIES_MESSAGE
        assert image.exhausted_at is not None

    def test_progress_events(self, queue, events):
        progress = []
        events.on(SYNC_PROGRESS, lambda **payload: progress.append(payload["progress"]))
        asyncio.run(queue.queue_image(b"a", "a.jpg"))
        asyncio.run(queue.queue_transaction(ledger_txn()))

        asyncio.run(queue.sync_queue())

        assert progress == [50, 100]
        assert queue.sync_progress == 0


class TestMaintenance:
    """Tests for clearing, pruning and statistics."""

    def test_stats(self, queue, store):
        asyncio.run(queue.queue_image(b"a", "a.jpg"))
        asyncio.run(queue.queue_transaction(ledger_txn()))
        failed = asyncio.run(queue.queue_image(b"b", "b.jpg"))
        queue.fail_image(failed, "Blurry photo")

        stats = queue.get_stats()

        assert stats.pending_images == 1
        assert stats.pending_transactions == 1
        assert stats.failed_items == 1
        assert stats.last_sync_time is None

    def test_last_sync_time_after_drain(self, queue):
        asyncio.run(queue.sync_queue())

        assert queue.get_stats().last_sync_time is not None

    def test_clear_by_status(self, queue, store):
        done = asyncio.run(queue.queue_image(b"a", "a.jpg"))
        broken = asyncio.run(queue.queue_image(b"b", "b.jpg"))
        pending = asyncio.run(queue.queue_image(b"c", "c.jpg"))
        queue.complete_image(done)
        queue.fail_image(broken, "Blurry photo")

        assert queue.clear_completed() == 1
        assert queue.clear_failed() == 1
        assert store.get_queued_image(pending) is not None
        assert queue.clear_all() == 1
        assert store.get_queued_image(pending) is None

    def test_clearing_keeps_sync_log(self, queue, store):
        asyncio.run(queue.queue_image(b"a", "a.jpg"))
        entries = len(queue.get_sync_log())

        queue.clear_all()

        assert len(queue.get_sync_log()) == entries

    def test_clear_old_logs_only_prunes_old_entries(self, queue, store, temp_db):
        image_id = asyncio.run(queue.queue_image(b"a", "a.jpg"))
        queue._log("item_processed", image_id, "old entry")
        conn = sqlite3.connect(temp_db)
        conn.execute(
            "UPDATE sync_log SET timestamp = '2020-01-01T00:00:00.000000Z' WHERE details = ?",
            ("old entry",),
        )
        conn.commit()
        conn.close()

        removed = queue.clear_old_logs(7)

        assert removed == 1
        assert [e.details for e in queue.get_sync_log()] == ["Image queued for processing"]
        assert store.get_queued_image(image_id) is not None
