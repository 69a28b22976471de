"""Cloud extraction providers.

One small capability interface with one implementation per provider:
- GeminiProvider: generateContent REST API, accepts images and PDFs
- OpenAIProvider: chat completions with image data URLs (no PDFs)
- OllamaProvider: /api/chat on a local, LAN or remote server (no PDFs)

All three share the prompts and the JSON response handling in
PromptedProvider; they differ only in how a prompt plus attachments is
sent and how the text answer is read back.

Privacy constraints:
- Never log prompts, images or raw responses above DEBUG
- API keys are sent as headers and never logged
"""

from __future__ import annotations

import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from ledger_intake.config import GeminiConfig, OllamaConfig, OpenAIConfig, TimeoutConfig
from ledger_intake.errors import ConfigurationError, ExtractionError, ExtractionTimeoutError
from ledger_intake.schemas.normalize import parse_date, to_decimal
from ledger_intake.schemas.transactions import (
    ExtractionSource,
    ImagePosition,
    MultiImageExtractedTransaction,
    RawExtractedTransaction,
    TaxInfo,
    TransactionType,
)

from .prompts import CategorizationPrompt, MultiImagePrompt, ReceiptPrompt, StatementPrompt

logger = logging.getLogger(__name__)

# Confidence assigned when the provider does not report one
DEFAULT_ITEM_CONFIDENCE = 0.85
DEFAULT_MULTI_IMAGE_CONFIDENCE = 0.7
RECEIPT_CONFIDENCE_COMPLETE = 0.85
RECEIPT_CONFIDENCE_PARTIAL = 0.5
CATEGORY_MATCH_CONFIDENCE = 0.8
CATEGORY_MISSING_CONFIDENCE = 0.3


@dataclass
class Attachment:
    """Binary content sent along with a prompt."""

    data: bytes
    mime_type: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class ReceiptSummary:
    """Headline fields of one receipt."""

    merchant: str
    amount: Decimal
    currency: str
    date: date | None
    confidence: float
    items: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CategorySuggestion:
    """Category proposed for one transaction of a batch."""

    category_id: str
    confidence: float


def guess_image_mime(data: bytes) -> str:
    """Sniff the image format from its magic bytes (JPEG when unknown)."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith(b"GIF8"):
        return "image/gif"
    return "image/jpeg"


def parse_json_response(content: str, provider: str | None = None) -> Any:
    """Parse JSON from an LLM response.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Leading/trailing prose around the JSON
    - Trailing commas and control characters

    Raises:
        ExtractionError: If no JSON can be recovered.
    """
    if not content or not content.strip():
        raise ExtractionError("Empty response from provider", provider=provider)

    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    # Whichever bracket opens first is the outermost value
    patterns = [r"\[[\s\S]*\]", r"\{[\s\S]*\}"]
    first_brace = content.find("{")
    first_bracket = content.find("[")
    if first_brace != -1 and (first_bracket == -1 or first_brace < first_bracket):
        patterns.reverse()
    for pattern in patterns:
        match = re.search(pattern, content)
        if not match:
            continue
        candidate = match.group()
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass
        cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", candidate)
        cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            continue

    logger.debug("Unparseable provider response: %s", content[:200])
    raise ExtractionError("Provider returned invalid JSON", provider=provider)


def _as_list(parsed: Any) -> list[Any]:
    """Accept a bare array or an object wrapping one (JSON-mode models)."""
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for value in parsed.values():
            if isinstance(value, list):
                return value
        return [parsed]
    return []


def _parse_type(value: Any) -> TransactionType:
    return TransactionType.INCOME if str(value).lower() == "income" else TransactionType.EXPENSE


def _parse_position(value: Any) -> ImagePosition:
    try:
        return ImagePosition(str(value).lower())
    except ValueError:
        return ImagePosition.MIDDLE


def _confidence(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def raw_transaction_from_item(
    item: dict[str, Any], default_confidence: float = DEFAULT_ITEM_CONFIDENCE
) -> RawExtractedTransaction:
    amount = to_decimal(item.get("amount")) or Decimal("0")
    return RawExtractedTransaction(
        description=str(item.get("description") or "Unknown"),
        amount=abs(amount),
        date=parse_date(item.get("date")),
        currency=str(item.get("currency") or "USD"),
        type=_parse_type(item.get("type")),
        confidence=_confidence(item.get("confidence"), default_confidence),
        extraction_source=ExtractionSource.CLOUD,
    )


def multi_image_transaction_from_item(item: dict[str, Any]) -> MultiImageExtractedTransaction:
    raw = raw_transaction_from_item(item, DEFAULT_MULTI_IMAGE_CONFIDENCE)
    try:
        image_index = int(item.get("imageIndex") or 0)
    except (TypeError, ValueError):
        image_index = 0
    merged_from = item.get("mergedFromImages") or ()
    return MultiImageExtractedTransaction(
        description=raw.description,
        amount=raw.amount,
        date=raw.date,
        currency=raw.currency,
        type=raw.type,
        confidence=raw.confidence,
        extraction_source=raw.extraction_source,
        image_index=image_index,
        position_in_image=_parse_position(item.get("positionInImage")),
        was_merged=bool(item.get("wasMerged")),
        merged_from_images=tuple(int(i) for i in merged_from if isinstance(i, (int, float))),
        tax_info=TaxInfo.from_dict(item.get("taxInfo")),
    )


class CloudProvider(ABC):
    """Capability interface of a remote extraction provider."""

    name: str = "cloud"
    supports_documents: bool = False

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials (or a server URL) are present. Never raises."""
        pass

    @abstractmethod
    async def parse_receipt(self, image: bytes) -> ReceiptSummary:
        pass

    @abstractmethod
    async def extract_transactions_from_image(self, image: bytes) -> list[RawExtractedTransaction]:
        pass

    async def extract_transactions_from_pdf(self, pdf: bytes) -> list[RawExtractedTransaction]:
        raise ConfigurationError(f"{self.name} cannot read PDF documents")

    @abstractmethod
    async def extract_transactions_from_multiple_images(
        self, images: Sequence[bytes]
    ) -> list[MultiImageExtractedTransaction]:
        pass

    @abstractmethod
    async def categorize_transactions(
        self,
        transactions: Sequence[RawExtractedTransaction],
        categories: Sequence[tuple[str, str]],
    ) -> list[CategorySuggestion | None]:
        """One suggestion per transaction, None where the provider gave none."""
        pass


class PromptedProvider(CloudProvider):
    """JSON-prompt implementation shared by all providers.

    Subclasses implement `_generate`, which sends one prompt with optional
    attachments and returns the model's text answer.
    """

    def __init__(
        self,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeouts = timeouts or TimeoutConfig()
        self._transport = transport
        self._receipt_prompt = ReceiptPrompt()
        self._statement_prompt = StatementPrompt()
        self._multi_image_prompt = MultiImagePrompt()
        self._categorization_prompt = CategorizationPrompt()

    @abstractmethod
    async def _generate(self, prompt: str, attachments: Sequence[Attachment] = ()) -> str:
        pass

    def _client(self, headers: dict[str, str] | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=self.timeouts.http_connect_seconds,
                read=self.timeouts.multi_seconds,
                write=30.0,
                pool=10.0,
            ),
            headers=headers or {},
            transport=self._transport,
        )

    async def _post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None
    ) -> dict[str, Any]:
        """POST a JSON payload and return the decoded body.

        Raises:
            ExtractionTimeoutError: If the provider does not answer in time.
            ExtractionError: On HTTP errors or a non-JSON body.
        """
        try:
            async with self._client(headers) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.warning("%s request timed out", self.name)
            raise ExtractionTimeoutError(
                f"{self.name} did not answer in time", timeout_seconds=self.timeouts.multi_seconds
            ) from e
        except httpx.HTTPStatusError as e:
            logger.error("%s API error %s", self.name, e.response.status_code)
            raise ExtractionError(
                f"{self.name} API error {e.response.status_code}", provider=self.name
            ) from e
        except httpx.RequestError as e:
            logger.error("%s request failed: %s", self.name, e)
            raise ExtractionError(f"{self.name} request failed: {e}", provider=self.name) from e
        except ValueError as e:
            raise ExtractionError(f"{self.name} returned a non-JSON body", provider=self.name) from e

    @staticmethod
    def _image(image: bytes) -> Attachment:
        return Attachment(data=image, mime_type=guess_image_mime(image))

    async def parse_receipt(self, image: bytes) -> ReceiptSummary:
        text = await self._generate(self._receipt_prompt.text, [self._image(image)])
        parsed = parse_json_response(text, self.name)
        if not isinstance(parsed, dict):
            raise ExtractionError("Expected a JSON object for the receipt", provider=self.name)

        amount = to_decimal(parsed.get("amount")) or Decimal("0")
        merchant = parsed.get("merchant") or "Unknown"
        complete = bool(amount) and bool(parsed.get("merchant"))
        return ReceiptSummary(
            merchant=str(merchant),
            amount=abs(amount),
            currency=str(parsed.get("currency") or "USD"),
            date=parse_date(parsed.get("date")),
            confidence=RECEIPT_CONFIDENCE_COMPLETE if complete else RECEIPT_CONFIDENCE_PARTIAL,
            items=[i for i in parsed.get("items") or [] if isinstance(i, dict)],
        )

    async def extract_transactions_from_image(self, image: bytes) -> list[RawExtractedTransaction]:
        text = await self._generate(self._statement_prompt.for_image(), [self._image(image)])
        items = _as_list(parse_json_response(text, self.name))
        return [raw_transaction_from_item(i) for i in items if isinstance(i, dict)]

    async def extract_transactions_from_multiple_images(
        self, images: Sequence[bytes]
    ) -> list[MultiImageExtractedTransaction]:
        if not images:
            return []
        text = await self._generate(
            self._multi_image_prompt.format(len(images)), [self._image(i) for i in images]
        )
        items = _as_list(parse_json_response(text, self.name))
        return [multi_image_transaction_from_item(i) for i in items if isinstance(i, dict)]

    async def categorize_transactions(
        self,
        transactions: Sequence[RawExtractedTransaction],
        categories: Sequence[tuple[str, str]],
    ) -> list[CategorySuggestion | None]:
        if not transactions:
            return []
        prompt = self._categorization_prompt.format(
            list(categories), [(t.description, str(t.signed_amount)) for t in transactions]
        )
        parsed = _as_list(parse_json_response(await self._generate(prompt), self.name))

        known = {cid for cid, _ in categories}
        by_index: dict[int, str] = {}
        for entry in parsed:
            if not isinstance(entry, dict):
                continue
            try:
                index = int(entry.get("index"))
            except (TypeError, ValueError):
                continue
            category_id = entry.get("categoryId")
            if category_id in known:
                by_index.setdefault(index, category_id)

        return [
            CategorySuggestion(by_index[i], CATEGORY_MATCH_CONFIDENCE) if i in by_index else None
            for i in range(len(transactions))
        ]


class GeminiProvider(PromptedProvider):
    """Google Gemini via the generateContent REST endpoint."""

    name = "gemini"
    supports_documents = True

    def __init__(
        self,
        config: GeminiConfig,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeouts, transport)
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    async def extract_transactions_from_pdf(self, pdf: bytes) -> list[RawExtractedTransaction]:
        text = await self._generate(
            self._statement_prompt.for_pdf(), [Attachment(pdf, "application/pdf")]
        )
        items = _as_list(parse_json_response(text, self.name))
        return [raw_transaction_from_item(i) for i in items if isinstance(i, dict)]

    async def _generate(self, prompt: str, attachments: Sequence[Attachment] = ()) -> str:
        if not self.config.api_key:
            raise ConfigurationError("Gemini API key is not configured")

        parts: list[dict[str, Any]] = [{"text": prompt}]
        for attachment in attachments:
            parts.append(
                {"inline_data": {"mime_type": attachment.mime_type, "data": attachment.base64}}
            )

        url = f"{self.config.base_url.rstrip('/')}/models/{self.config.model}:generateContent"
        logger.debug("Calling Gemini model %s with %d attachments", self.config.model, len(attachments))
        data = await self._post_json(
            url,
            {"contents": [{"parts": parts}], "generationConfig": {"temperature": 0.1}},
            headers={"x-goog-api-key": self.config.api_key},
        )

        try:
            candidate_parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExtractionError("Gemini response has no candidates", provider=self.name) from e
        return "".join(p.get("text", "") for p in candidate_parts if isinstance(p, dict))


class OpenAIProvider(PromptedProvider):
    """OpenAI chat completions with inline image data URLs."""

    name = "openai"

    def __init__(
        self,
        config: OpenAIConfig,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeouts, transport)
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    async def _generate(self, prompt: str, attachments: Sequence[Attachment] = ()) -> str:
        if not self.config.api_key:
            raise ConfigurationError("OpenAI API key is not configured")

        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for attachment in attachments:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{attachment.mime_type};base64,{attachment.base64}"},
                }
            )

        logger.debug("Calling OpenAI model %s with %d images", self.config.model, len(attachments))
        data = await self._post_json(
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            {
                "model": self.config.model,
                "messages": [{"role": "user", "content": content}],
                "max_tokens": 4000,
            },
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ExtractionError("OpenAI response has no choices", provider=self.name) from e


class OllamaProvider(PromptedProvider):
    """Ollama vision model on a local, LAN or remote server."""

    name = "ollama"

    def __init__(
        self,
        config: OllamaConfig,
        timeouts: TimeoutConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(timeouts, transport)
        self.config = config

    def is_configured(self) -> bool:
        return self.config.enabled and bool(self.config.url)

    def _auth_headers(self) -> dict[str, str]:
        # Support formats: "Bearer token" or "Custom-Header: value"
        if not self.config.auth_header:
            return {}
        if ":" in self.config.auth_header:
            key, value = self.config.auth_header.split(":", 1)
            return {key.strip(): value.strip()}
        return {"Authorization": self.config.auth_header}

    async def _generate(self, prompt: str, attachments: Sequence[Attachment] = ()) -> str:
        if not self.is_configured():
            raise ConfigurationError("Ollama is not enabled")

        message: dict[str, Any] = {"role": "user", "content": prompt}
        if attachments:
            message["images"] = [a.base64 for a in attachments]

        logger.debug("Calling Ollama model %s at %s", self.config.model, self.config.url)
        data = await self._post_json(
            f"{self.config.url.rstrip('/')}/api/chat",
            {"model": self.config.model, "messages": [message], "stream": False, "format": "json"},
            headers=self._auth_headers(),
        )
        content = data.get("message", {}).get("content", "") if isinstance(data, dict) else ""
        logger.debug("Ollama %s returned %d chars", self.config.model, len(content))
        return content
