"""
Identifier generation (SSOT).

Queue ids:      img_<ts>_<rand>, tx_<ts>_<rand>, log_<ts>_<rand>
Import ids:     imp_<batch>_<index>_<hash12>
History ids:    hist_<ts>_<rand>

<ts> is milliseconds since the epoch, <rand> is 9 lowercase base-36
characters. Import ids are stable: the same batch key, row index and
transaction fields always produce the same id.
"""

import hashlib
import secrets
import string
import time
from datetime import date
from decimal import Decimal

IMAGE_ID_PREFIX = "img"
TRANSACTION_ID_PREFIX = "tx"
LOG_ID_PREFIX = "log"
HISTORY_ID_PREFIX = "hist"
IMPORT_ID_PREFIX = "imp"

_ALPHABET = string.ascii_lowercase + string.digits
RANDOM_SUFFIX_LENGTH = 9
HASH_PREFIX_LENGTH = 12


def generate_id(prefix: str) -> str:
    """Generate a unique time-ordered id with the given prefix."""
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(RANDOM_SUFFIX_LENGTH))
    return f"{prefix}_{timestamp}_{suffix}"


def compute_transaction_hash(
    amount: Decimal | str,
    txn_date: date | None,
    description: str | None,
    txn_type: str,
) -> str:
    """Deterministic SHA256 over the identifying fields of a transaction."""
    normalized_amount = f"{Decimal(str(amount)):.2f}"
    normalized_date = txn_date.isoformat() if txn_date else ""
    normalized_desc = (description or "").strip().lower()
    canonical = f"{normalized_amount}|{normalized_date}|{normalized_desc}|{txn_type}"
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def generate_import_id(
    batch_key: str,
    index: int,
    amount: Decimal | str,
    txn_date: date | None,
    description: str | None,
    txn_type: str,
) -> str:
    """Stable id for a candidate within one import batch."""
    digest = compute_transaction_hash(amount, txn_date, description, txn_type)
    return f"{IMPORT_ID_PREFIX}_{batch_key}_{index}_{digest[:HASH_PREFIX_LENGTH]}"


def compute_batch_key(content: bytes) -> str:
    """Short content hash identifying one imported file or photo set."""
    return hashlib.sha256(content).hexdigest()[:8]
