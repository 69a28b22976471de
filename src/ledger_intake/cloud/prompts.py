"""Prompt templates for cloud extraction providers.

Every prompt asks for strict JSON so that one response parser serves all
providers. Prompts are versioned so that logged results can be traced
back to the wording that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.0: receipt, statement, multi-image and categorization prompts
PROMPT_VERSION = "v1.0"


@dataclass
class ReceiptPrompt:
    """Prompt for a single receipt summary (merchant, total, date)."""

    version: str = PROMPT_VERSION

    text: str = """Analyze this receipt image and extract the following information.
Return ONLY a valid JSON object with this exact structure (no markdown, no code blocks):
{
  "merchant": "store/restaurant name",
  "amount": total amount as number,
  "currency": "detected currency code (USD, EUR, THB, etc.)",
  "date": "YYYY-MM-DD format",
  "items": [{"name": "item name", "amount": item price as number}]
}

If you cannot extract certain fields, use these defaults:
- merchant: "Unknown"
- currency: "USD"
- date: null
- items: empty array
- amount: 0 if not readable"""


@dataclass
class StatementPrompt:
    """Prompt for extracting every transaction from one image or PDF."""

    version: str = PROMPT_VERSION

    template: str = """Analyze this {document} and extract ALL transactions.

For each transaction found, extract:
- date: in YYYY-MM-DD format
- description: merchant/payee name or transaction description
- amount: as a positive number
- type: "income" for credits/deposits, "expense" for debits/withdrawals
- currency: detected currency code (default to USD if unclear)

Return ONLY a valid JSON array with this structure (no markdown, no explanation):
[
  {{
    "date": "2024-01-15",
    "description": "AMAZON.COM",
    "amount": 45.99,
    "type": "expense",
    "currency": "USD"
  }}
]

If no transactions can be extracted, return an empty array: []
Only include posted/confirmed transactions, not pending ones."""

    def for_image(self) -> str:
        return self.template.format(
            document="image (bank statement, receipt, or financial document)"
        )

    def for_pdf(self) -> str:
        return self.template.format(document="PDF bank statement")


@dataclass
class MultiImagePrompt:
    """Prompt for several overlapping photos of one receipt, top to bottom."""

    version: str = PROMPT_VERSION

    template: str = """You are analyzing {count} sequential photos of a SINGLE receipt or financial document.
The images are ordered from TOP to BOTTOM of the receipt.

IMPORTANT: These photos likely have OVERLAPPING content at the edges.
- The BOTTOM portion of Image N likely overlaps with the TOP portion of Image N+1
- You MUST identify and DEDUPLICATE overlapping items
- Return each unique item ONLY ONCE, preferring the clearer/more complete instance

For each UNIQUE transaction/line item found, extract:
- date: in YYYY-MM-DD format (use the receipt date if individual items don't have dates)
- description: item name or transaction description
- amount: FINAL amount after any discounts applied (as a positive number)
- type: "income" for credits/refunds, "expense" for purchases/debits
- currency: detected currency code (default to USD if unclear)
- imageIndex: which image this item appears in (0-based)
- positionInImage: "top", "middle", or "bottom" based on vertical position
- confidence: your confidence in the extraction accuracy (0.0 to 1.0)
- wasMerged: true if this item appeared in multiple images and was deduplicated
- mergedFromImages: list of image indices the item was seen on (only when wasMerged)
- taxInfo: optional {{"taxRate", "taxAmount", "taxCategory", "preTaxAmount", "discountApplied", "originalAmount"}}

Return ONLY a valid JSON array (no markdown):
[
  {{
    "date": "2024-01-15",
    "description": "Item name",
    "amount": 10.99,
    "type": "expense",
    "currency": "USD",
    "imageIndex": 0,
    "positionInImage": "middle",
    "confidence": 0.95,
    "wasMerged": false
  }}
]

If no transactions can be extracted, return an empty array: []"""

    def format(self, count: int) -> str:
        return self.template.format(count=count)


@dataclass
class CategorizationPrompt:
    """Prompt for assigning category ids to a batch of descriptions."""

    version: str = PROMPT_VERSION

    template: str = """Categorize these transactions into the most appropriate category.

Available categories:
{categories}

Transactions:
{transactions}

Return ONLY a valid JSON array with objects containing "index" and "categoryId":
[{{"index": 0, "categoryId": "food"}}, {{"index": 1, "categoryId": "transport"}}]"""

    def format(self, categories: list[tuple[str, str]], transactions: list[tuple[str, str]]) -> str:
        """Format the prompt.

        Args:
            categories: (id, name) pairs.
            transactions: (description, amount) pairs in batch order.

        Returns:
            Formatted prompt.
        """
        category_list = "\n".join(f"{cid}: {name}" for cid, name in categories)
        transaction_list = "\n".join(
            f'{i}: "{description}" ({amount})' for i, (description, amount) in enumerate(transactions)
        )
        return self.template.format(categories=category_list, transactions=transaction_list)
