"""
Ledger collaborator.

The pipeline needs two things from the ledger: a snapshot of existing
transactions for duplicate detection, and single-item writes for the
commit step. Both may fail with PersistenceError.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

from ledger_intake.schemas.identity import TRANSACTION_ID_PREFIX, generate_id
from ledger_intake.schemas.normalize import parse_date
from ledger_intake.schemas.transactions import LedgerTransaction, TransactionType
from ledger_intake.state_store import StateStore

logger = logging.getLogger(__name__)


def transaction_to_payload(txn: LedgerTransaction) -> dict[str, Any]:
    """Serialize a ledger draft for the durable queue."""
    return {
        "description": txn.description,
        "amount": str(txn.amount),
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "currency": txn.currency,
        "category_id": txn.category_id,
        "notes": txn.notes,
    }


def payload_to_transaction(payload: dict[str, Any]) -> LedgerTransaction:
    """Rebuild a ledger draft from a queue payload.

    Raises:
        ValueError: If the payload lacks a usable date or amount.
    """
    txn_date = parse_date(payload.get("date"))
    if txn_date is None:
        raise ValueError(f"Queued transaction has an invalid date: {payload.get('date')!r}")
    return LedgerTransaction(
        description=payload.get("description") or "Unknown",
        amount=abs(Decimal(str(payload["amount"]))),
        date=txn_date,
        type=TransactionType(payload.get("type", TransactionType.EXPENSE.value)),
        currency=payload.get("currency") or "USD",
        category_id=payload.get("category_id"),
        notes=payload.get("notes"),
    )


class Ledger(ABC):
    """Read/write contract the pipeline relies on."""

    @abstractmethod
    async def list_transactions(self) -> list[LedgerTransaction]:
        """Current ledger contents in ledger order."""
        ...

    @abstractmethod
    async def add_transaction(self, txn: LedgerTransaction) -> str:
        """Write one transaction and return its id."""
        ...


class SQLiteLedger(Ledger):
    """Ledger kept in the local state database, scoped to one user."""

    def __init__(self, store: StateStore, user_id: str | None = None):
        self.store = store
        self.user_id = user_id

    async def list_transactions(self) -> list[LedgerTransaction]:
        rows = self.store.list_ledger_transactions(self.user_id)
        return [
            LedgerTransaction(
                id=row["id"],
                description=row["description"],
                amount=Decimal(row["amount"]),
                date=parse_date(row["date"]),
                type=TransactionType(row["type"]),
                currency=row["currency"],
                category_id=row["category_id"],
                notes=row["notes"],
            )
            for row in rows
        ]

    async def add_transaction(self, txn: LedgerTransaction) -> str:
        txn_id = txn.id or generate_id(TRANSACTION_ID_PREFIX)
        self.store.insert_ledger_transaction(
            txn_id=txn_id,
            description=txn.description,
            amount=str(abs(txn.amount)),
            date=txn.date.isoformat(),
            txn_type=txn.type.value,
            currency=txn.currency,
            category_id=txn.category_id,
            notes=txn.notes,
            user_id=self.user_id,
        )
        logger.debug("Committed ledger transaction %s", txn_id)
        return txn_id
