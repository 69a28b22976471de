"""Cloud extraction providers and the provider fallback service."""

from .providers import (
    CloudProvider,
    GeminiProvider,
    OllamaProvider,
    OpenAIProvider,
    PromptedProvider,
    ReceiptSummary,
    parse_json_response,
)
from .service import CategoryAssignment, CloudExtractionService, build_providers

__all__ = [
    "CategoryAssignment",
    "CloudExtractionService",
    "CloudProvider",
    "GeminiProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "PromptedProvider",
    "ReceiptSummary",
    "build_providers",
    "parse_json_response",
]
