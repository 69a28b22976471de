"""
Receipt text heuristics parser.

Turns OCR text of a single receipt into merchant, date, total, currency
and line items using pattern matching. This is the on-device fallback when
no cloud provider is used, so confidence scores are scaled down from the
OCR engine's own confidence.

Supported formats:
- Dates: Y-M-D, Y/M/D, D/M/Y, M-D-Y, D.M.Y, "Jan 15, 2024", "15 Jan 2024"
- Amounts: 1,234.56 (English), 1.234,56 (EUR receipts)
- Currency: symbol counts ($ € £ ¥ ฿ ₩), then ISO codes, default USD
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from ledger_intake.schemas.transactions import (
    ExtractionSource,
    RawExtractedTransaction,
    TransactionType,
)

UNKNOWN_MERCHANT = "Unknown Merchant"
DEFAULT_CURRENCY = "USD"

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "￥": "JPY",
    "฿": "THB",
    "₩": "KRW",
}

# Checked in order once no symbol was found
CURRENCY_CODE_PATTERNS = [
    (r"\bUSD\b|\bUS\$|\bU\.S\.", "USD"),
    (r"\bEUR\b|\bEURO\b", "EUR"),
    (r"\bGBP\b|\bSTERLING\b", "GBP"),
    (r"\bJPY\b|円", "JPY"),
    (r"\bCNY\b|\bRMB\b", "CNY"),
    (r"\bTHB\b|\bBAHT\b", "THB"),
    (r"\bKRW\b|\bWON\b", "KRW"),
    (r"\bTWD\b|\bNT\$", "TWD"),
    (r"\bHKD\b|\bHK\$", "HKD"),
    (r"\bSGD\b|\bS\$", "SGD"),
    (r"\bAUD\b|\bA\$", "AUD"),
    (r"\bCAD\b|\bC\$", "CAD"),
    (r"\bCHF\b", "CHF"),
]

MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

_MONTH_NAME = (
    r"(Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|Jun(?:e)?|Jul(?:y)?"
    r"|Aug(?:ust)?|Sep(?:tember)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)

# Date patterns (ordered by specificity); the tag names the group order
DATE_PATTERNS = [
    (r"(\d{4})-(\d{2})-(\d{2})", "ymd"),
    (r"(\d{4})/(\d{1,2})/(\d{1,2})", "ymd"),
    (r"(\d{1,2})/(\d{1,2})/(\d{4})", "dmy"),
    (r"(\d{1,2})-(\d{1,2})-(\d{4})", "mdy"),
    (r"(\d{1,2})\.(\d{1,2})\.(\d{4})", "dmy"),
    (_MONTH_NAME + r"[.\s]+(\d{1,2})[,\s]+(\d{4})", "month_day"),
    (r"(\d{1,2})[.\s]+" + _MONTH_NAME + r"[.\s]+(\d{4})", "day_month"),
    (r"(\d{4})年(\d{1,2})月(\d{1,2})日", "ymd"),
]

# Lines that never name the merchant
MERCHANT_SKIP_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"^tel[:\s]",
        r"^phone[:\s]",
        r"^fax[:\s]",
        r"^\+?\d[\d\s-]{6,}",
        r"^www\.",
        r"^http",
        r"^@",
        r"register",
        r"receipt",
        r"invoice",
        r"^date[:\s]",
        r"^time[:\s]",
        r"^\d{2}[/-]\d{2}",
        r"^\d{2}:\d{2}",
        r"^order\s*#",
        r"^ticket\s*#",
        r"^trans(?:action)?",
        r"^welcome",
        r"^thank",
        r"^table\s*\d",
        r"^server",
        r"^cashier",
        r"^\*+$",
        r"^-+$",
        r"^=+$",
    ]
]

STORE_WORDS = re.compile(
    r"store|shop|market|cafe|restaurant|bar|pub|mart|supermarket|convenience", re.IGNORECASE
)

# Lines that are totals, payments or headers rather than items
ITEM_SKIP_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"^total",
        r"^subtotal",
        r"^sub-total",
        r"^tax",
        r"^vat",
        r"^gst",
        r"^cash",
        r"^change",
        r"^card",
        r"^payment",
        r"^visa",
        r"^mastercard",
        r"^amex",
        r"^balance",
        r"^amount due",
        r"^date",
        r"^time",
        r"^receipt",
        r"^invoice",
        r"^thank",
        r"^please",
        r"^tel",
        r"^phone",
        r"^fax",
        r"^合計",
        r"^小計",
        r"^総計|^總計",
        r"^\d{2}[/-]\d{2}",
        r"^\d{2}:\d{2}",
    ]
]

TOTAL_WORDS_IN_DESCRIPTION = re.compile(
    r"total|subtotal|tax|payment|cash|change|card|合計|小計", re.IGNORECASE
)

_AMOUNT = r"([¥￥$€£฿]?\s*[\d,]+\.?\d*)"

# Total keywords (ordered by specificity); the largest match wins
TOTAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"grand\s*total[:\s]*" + _AMOUNT,
        r"total\s*(?:due|payable|amount)[:\s]*" + _AMOUNT,
        r"balance\s*(?:due)?[:\s]*" + _AMOUNT,
        r"amount\s*(?:due)?[:\s]*" + _AMOUNT,
        r"(?<!sub)total[:\s]*" + _AMOUNT,
        r"sum[:\s]*" + _AMOUNT,
        r"to\s*pay[:\s]*" + _AMOUNT,
        r"合計[:\s]*" + _AMOUNT,
    ]
]

AMOUNT_AT_END = re.compile(r"([¥￥$€£฿]?\s*[\d,]+\.?\d{0,2})\s*$")
QUANTITY_PREFIX = re.compile(r"^(\d+)\s*[x×@]\s*", re.IGNORECASE)

MIN_ITEM_AMOUNT = Decimal("0.01")
MAX_ITEM_AMOUNT = Decimal("10000")
MAX_LINE_TOTAL = Decimal("100000")


@dataclass
class ReceiptItem:
    description: str
    amount: Decimal
    quantity: int | None = None


@dataclass
class ParsedReceipt:
    """Fields recovered from one receipt's text."""

    merchant: str
    date: date | None
    total: Decimal
    currency: str
    items: list[ReceiptItem] = field(default_factory=list)
    confidence: float = 0.0


def parse_amount(amount_str: str, currency: str) -> Decimal:
    """Parse a receipt amount; EUR receipts use 1.234,56."""
    cleaned = re.sub(r"[$€£¥￥฿₩\s]", "", amount_str)
    if currency == "EUR":
        cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    else:
        cleaned = cleaned.replace(",", "")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


def clean_ocr_line(line: str) -> str:
    """Fix common OCR character substitutions around digits."""
    line = re.sub(r"[oO](?=\d)", "0", line)
    line = re.sub(r"(?<=\d)[oO]", "0", line)
    line = re.sub(r"[lI](?=\d)", "1", line)
    line = re.sub(r"(?<=\d)[lI]", "1", line)
    line = re.sub(r"[Ss](?=\d{2,})", "$", line)
    line = re.sub(r"\s{2,}", " ", line)
    return line.strip()


def capitalize_words(text: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), text.lower())


class ReceiptTextParser:
    """
    Extract receipt fields from OCR text using pattern matching.

    Confidence starts at the OCR engine's confidence and is reduced when
    the merchant, the total or the items could not be found.
    """

    def parse(self, text: str, ocr_confidence: float = 100.0) -> ParsedReceipt:
        """
        Parse receipt text.

        Args:
            text: OCR text
            ocr_confidence: Engine confidence on a 0-100 scale

        Returns:
            ParsedReceipt with a confidence in [0, 1]
        """
        lines = [line.strip() for line in text.split("\n") if line.strip()]
        cleaned = [clean_ocr_line(line) for line in lines]

        currency = self.detect_currency(text)
        receipt_date = self.extract_date(text)
        merchant = self.extract_merchant(cleaned)
        items = self.extract_items(cleaned, currency)
        total = self.extract_total(text, currency) or sum(
            (item.amount for item in items), Decimal("0")
        )

        confidence = max(0.0, min(1.0, ocr_confidence / 100))
        if merchant == UNKNOWN_MERCHANT:
            confidence *= 0.8
        if not total:
            confidence *= 0.7
        if not items:
            confidence *= 0.8

        return ParsedReceipt(
            merchant=merchant,
            date=receipt_date,
            total=total,
            currency=currency,
            items=items,
            confidence=confidence,
        )

    def detect_currency(self, text: str) -> str:
        counts: dict[str, int] = {}
        for symbol, code in CURRENCY_SYMBOLS.items():
            found = text.count(symbol)
            if found:
                counts[code] = counts.get(code, 0) + found
        if counts:
            return max(counts.items(), key=lambda kv: kv[1])[0]

        for pattern, code in CURRENCY_CODE_PATTERNS:
            if re.search(pattern, text, re.IGNORECASE):
                return code

        return DEFAULT_CURRENCY

    def extract_date(self, text: str) -> date | None:
        """First plausible date in pattern order, None when none is found."""
        for pattern, order in DATE_PATTERNS:
            match = re.search(pattern, text, re.IGNORECASE)
            if not match:
                continue
            try:
                if order == "ymd":
                    year, month, day = (int(g) for g in match.groups())
                elif order == "dmy":
                    day, month, year = (int(g) for g in match.groups())
                elif order == "mdy":
                    month, day, year = (int(g) for g in match.groups())
                elif order == "month_day":
                    month = MONTHS[match.group(1)[:3].lower()]
                    day, year = int(match.group(2)), int(match.group(3))
                else:
                    day = int(match.group(1))
                    month = MONTHS[match.group(2)[:3].lower()]
                    year = int(match.group(3))
                if 2000 <= year <= 2100:
                    return date(year, month, day)
            except (ValueError, KeyError):
                continue
        return None

    def extract_merchant(self, lines: list[str]) -> str:
        """Score the first lines of the receipt and keep the best candidate."""
        candidates: list[tuple[int, str]] = []

        for i, line in enumerate(lines[:8]):
            if len(line) < 3 or len(line) > 50:
                continue
            if any(p.search(line) for p in MERCHANT_SKIP_PATTERNS):
                continue
            digits = sum(1 for c in line if c.isdigit())
            if digits / len(line) > 0.5:
                continue

            score = 10 - i
            if line == line.upper() and re.search(r"[A-Z]", line):
                score += 3
            if 5 <= len(line) <= 30:
                score += 2
            if STORE_WORDS.search(line):
                score += 3
            # Store numbers at the end ("Store 123") are fine
            if re.search(r"\d", line) and not re.search(r"\s+\d+$", line):
                score -= 2

            candidates.append((score, line))

        if not candidates:
            return UNKNOWN_MERCHANT

        # Stable sort keeps the earlier line on equal scores
        candidates.sort(key=lambda c: -c[0])
        return capitalize_words(candidates[0][1])

    def extract_items(self, lines: list[str], currency: str) -> list[ReceiptItem]:
        items: list[ReceiptItem] = []
        seen: set[tuple[str, Decimal]] = set()

        for line in lines:
            if any(p.search(line) for p in ITEM_SKIP_PATTERNS):
                continue
            if len(line) < 3 or len(line) > 100:
                continue

            match = AMOUNT_AT_END.search(line)
            if not match:
                continue

            amount = parse_amount(match.group(1), currency)
            if amount < MIN_ITEM_AMOUNT or amount > MAX_ITEM_AMOUNT:
                continue

            description = re.sub(r"[\s\-:.]+$", "", line[: match.start()].strip())

            quantity = None
            qty_match = QUANTITY_PREFIX.match(description)
            if qty_match:
                quantity = int(qty_match.group(1))
                description = description[qty_match.end() :].strip()

            if len(description) < 2:
                continue
            if TOTAL_WORDS_IN_DESCRIPTION.search(description):
                continue

            description = capitalize_words(description)
            key = (description.lower(), amount.quantize(Decimal("0.01")))
            if key in seen:
                continue
            seen.add(key)
            items.append(ReceiptItem(description=description, amount=amount, quantity=quantity))

        return items

    def extract_total(self, text: str, currency: str) -> Decimal:
        """Largest keyword total, else the largest amount ending a line."""
        best = Decimal("0")

        for pattern in TOTAL_PATTERNS:
            for match in pattern.finditer(text):
                amount = parse_amount(match.group(1), currency)
                if amount > best:
                    best = amount

        if best == 0:
            for line in text.split("\n"):
                match = AMOUNT_AT_END.search(line.strip())
                if not match:
                    continue
                amount = parse_amount(match.group(1), currency)
                if best < amount < MAX_LINE_TOTAL:
                    best = amount

        return best

    def to_transactions(self, receipt: ParsedReceipt) -> list[RawExtractedTransaction]:
        """One expense per item, else one expense for the total."""
        if receipt.items:
            return [
                RawExtractedTransaction(
                    description=f"{receipt.merchant}: {item.description}",
                    amount=item.amount,
                    date=receipt.date,
                    currency=receipt.currency,
                    type=TransactionType.EXPENSE,
                    confidence=receipt.confidence,
                    extraction_source=ExtractionSource.LOCAL,
                )
                for item in receipt.items
            ]
        if receipt.total > 0:
            return [
                RawExtractedTransaction(
                    description=receipt.merchant,
                    amount=receipt.total,
                    date=receipt.date,
                    currency=receipt.currency,
                    type=TransactionType.EXPENSE,
                    confidence=receipt.confidence,
                    extraction_source=ExtractionSource.LOCAL,
                )
            ]
        return []
