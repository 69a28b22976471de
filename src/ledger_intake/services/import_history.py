"""
Import history records.

One record per confirmed import, created before the commit loop starts and
finished once it ends. A record only ends up `failed` when the loop itself
could not run to completion; row-level commit errors are kept in its
errors list.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ledger_intake.errors import ConfigurationError
from ledger_intake.schemas.identity import HISTORY_ID_PREFIX, generate_id
from ledger_intake.schemas.transactions import ImportResult
from ledger_intake.state_store import HistoryStatus, ImportHistoryRecord, StateStore

logger = logging.getLogger(__name__)


@dataclass
class CommitError:
    """One row that failed to commit (1-based row index)."""

    row: int
    message: str
    original_value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "message": self.message, "original_value": self.original_value}


@dataclass
class CommitTotals:
    """Running totals of a confirm run."""

    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    duplicates_skipped: int = 0
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    errors: list[CommitError] = field(default_factory=list)


class ImportHistoryService:
    """Creates, finishes and lists import-history records for one user."""

    def __init__(self, state_store: StateStore, user_id: str | None):
        self.store = state_store
        self.user_id = user_id

    def _require_user(self) -> str:
        if not self.user_id:
            raise ConfigurationError(
                "No user configured; set user_id in the config or LEDGER_INTAKE_USER_ID"
            )
        return self.user_id

    def start(self, result: ImportResult, transaction_count: int) -> str:
        """Create a `processing` record for an import about to be committed.

        Raises:
            ConfigurationError: If there is no user to attribute the import to.
            PersistenceError: If the record cannot be written.
        """
        user_id = self._require_user()
        history_id = generate_id(HISTORY_ID_PREFIX)
        self.store.create_import_history(
            history_id=history_id,
            user_id=user_id,
            file_name=result.file_name,
            file_type=result.file_type.value,
            source=result.source.value,
            file_size=result.file_size,
            transaction_count=transaction_count,
        )
        logger.debug("Started import history %s for %s", history_id, result.file_name)
        return history_id

    def complete(self, history_id: str, totals: CommitTotals) -> None:
        self._finish(history_id, HistoryStatus.COMPLETED, totals)

    def fail(self, history_id: str, totals: CommitTotals) -> None:
        self._finish(history_id, HistoryStatus.FAILED, totals)

    def _finish(self, history_id: str, status: HistoryStatus, totals: CommitTotals) -> None:
        self.store.finish_import_history(
            history_id,
            status,
            imported_count=totals.success_count,
            skipped_count=totals.skipped_count,
            duplicates_skipped=totals.duplicates_skipped,
            error_count=totals.error_count,
            total_income=str(totals.total_income),
            total_expenses=str(totals.total_expenses),
            errors=[e.to_dict() for e in totals.errors],
        )
        logger.info(
            "Import %s %s: %d imported, %d errors",
            history_id,
            status.value,
            totals.success_count,
            totals.error_count,
        )

    def get(self, history_id: str) -> ImportHistoryRecord | None:
        return self.store.get_import_history(history_id)

    def recent(self, limit: int = 20) -> list[ImportHistoryRecord]:
        """Newest first; all users when none is configured."""
        return self.store.list_import_history(self.user_id, limit)

    def delete(self, history_id: str) -> bool:
        return self.store.delete_import_history(history_id)
