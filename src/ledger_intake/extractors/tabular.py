"""
Tabular sources: bank CSV exports and JSON backups.

These are parsed deterministically and never routed through the strategy
selector. Amounts come out unsigned with an explicit type.
"""

import csv
import io
import json
import logging
from dataclasses import dataclass
from decimal import Decimal

from ledger_intake.errors import ExtractionError
from ledger_intake.schemas.normalize import parse_date, to_decimal
from ledger_intake.schemas.transactions import (
    ExtractionSource,
    RawExtractedTransaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

# Header keywords, matched as substrings of the lowercased header
DATE_COLUMNS = ["date", "transaction date", "posted date"]
DESCRIPTION_COLUMNS = ["description", "memo", "payee", "merchant"]
AMOUNT_COLUMNS = ["amount", "value", "sum"]
DEBIT_COLUMNS = ["debit", "withdrawal", "expense"]
CREDIT_COLUMNS = ["credit", "deposit", "income"]
TYPE_COLUMNS = ["type", "transaction type"]


@dataclass(frozen=True)
class BackupTransaction:
    """A backup entry; its category is already known."""

    transaction: RawExtractedTransaction
    category_id: str


def find_column(headers: list[str], names: list[str]) -> int:
    for index, header in enumerate(headers):
        if any(name in header for name in names):
            return index
    return -1


def _decode(data: bytes | str) -> str:
    if isinstance(data, str):
        return data
    return data.decode("utf-8-sig", errors="replace")


def parse_csv(data: bytes | str, currency: str = "USD") -> list[RawExtractedTransaction]:
    """
    Parse a bank CSV export.

    Args:
        data: File content
        currency: Currency assigned to every row

    Returns:
        Transactions in file order

    Raises:
        ExtractionError: If the date, description or amount columns are missing.
    """
    rows = [row for row in csv.reader(io.StringIO(_decode(data))) if any(c.strip() for c in row)]
    if len(rows) < 2:
        return []

    headers = [h.strip().lower() for h in rows[0]]
    date_col = find_column(headers, DATE_COLUMNS)
    desc_col = find_column(headers, DESCRIPTION_COLUMNS)
    amount_col = find_column(headers, AMOUNT_COLUMNS)
    debit_col = find_column(headers, DEBIT_COLUMNS)
    credit_col = find_column(headers, CREDIT_COLUMNS)
    type_col = find_column(headers, TYPE_COLUMNS)

    if date_col < 0 or desc_col < 0:
        raise ExtractionError("CSV needs a date and a description column")
    if amount_col < 0 and (debit_col < 0 or credit_col < 0):
        raise ExtractionError("CSV needs an amount column or debit and credit columns")

    transactions: list[RawExtractedTransaction] = []
    for line_no, values in enumerate(rows[1:], start=2):
        if len(values) <= max(date_col, desc_col, amount_col):
            logger.warning("CSV line %d skipped: too few columns", line_no)
            continue

        if amount_col >= 0:
            amount = to_decimal(values[amount_col])
        else:
            debit = to_decimal(values[debit_col]) if debit_col < len(values) else None
            credit = to_decimal(values[credit_col]) if credit_col < len(values) else None
            if debit is None and credit is None:
                amount = None
            else:
                credit = credit or Decimal("0")
                amount = credit if credit > 0 else -abs(debit or Decimal("0"))

        if amount is None:
            logger.warning("CSV line %d skipped: unparseable amount", line_no)
            continue

        if 0 <= type_col < len(values):
            type_value = values[type_col].lower()
            txn_type = (
                TransactionType.INCOME
                if "income" in type_value or "credit" in type_value
                else TransactionType.EXPENSE
            )
        else:
            txn_type = TransactionType.INCOME if amount >= 0 else TransactionType.EXPENSE

        txn_date = parse_date(values[date_col])
        if txn_date is None:
            logger.debug("CSV line %d has no parseable date", line_no)

        transactions.append(
            RawExtractedTransaction(
                description=values[desc_col].strip() or "Unknown",
                amount=abs(amount),
                date=txn_date,
                currency=currency,
                type=txn_type,
                confidence=1.0,
                extraction_source=ExtractionSource.LOCAL,
            )
        )

    logger.info("Parsed %d transactions from CSV", len(transactions))
    return transactions


def parse_backup_json(
    data: bytes | str,
    default_currency: str = "USD",
    default_category: str = "other_expense",
) -> list[BackupTransaction]:
    """
    Parse a JSON backup export.

    Raises:
        ExtractionError: If the content is not JSON or has no transactions array.
    """
    try:
        payload = json.loads(_decode(data))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"Invalid backup file: {e}") from e

    entries = payload.get("transactions") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        raise ExtractionError("Invalid backup format: missing transactions array")

    results: list[BackupTransaction] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Backup entry %d skipped: not an object", index)
            continue
        amount = to_decimal(entry.get("amount")) or Decimal("0")
        try:
            txn_type = TransactionType(entry.get("type") or TransactionType.EXPENSE.value)
        except ValueError:
            txn_type = TransactionType.EXPENSE
        results.append(
            BackupTransaction(
                transaction=RawExtractedTransaction(
                    description=entry.get("description") or "Unknown",
                    amount=abs(amount),
                    date=parse_date(entry.get("date")),
                    currency=entry.get("currency") or default_currency,
                    type=txn_type,
                    confidence=1.0,
                    extraction_source=ExtractionSource.LOCAL,
                ),
                category_id=entry.get("categoryId") or default_category,
            )
        )

    logger.info("Parsed %d transactions from backup", len(results))
    return results
