"""
Base contracts for on-device extraction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ledger_intake.schemas.transactions import ProcessingResult


@dataclass
class OCRResult:
    """Text recognized from one image."""

    text: str
    # Engine confidence on a 0-100 scale
    confidence: float = 0.0


class OCREngine(ABC):
    """Turns image bytes into text."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Engine name for logging."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """True when the engine can run on this machine."""
        pass

    @abstractmethod
    async def recognize(self, image: bytes) -> OCRResult:
        """
        Recognize text in an image.

        Args:
            image: Encoded image bytes (PNG, JPEG, WEBP)

        Returns:
            OCRResult with the full text and mean confidence
        """
        pass


class LocalAdapter(ABC):
    """
    On-device extraction capability used by the strategy selector.

    Results carry source=local; the selector relabels them when it mixes
    in cloud output.
    """

    @abstractmethod
    def is_ready(self) -> bool:
        """True once the adapter can process images without further setup."""
        pass

    async def initialize(self) -> None:
        """Prepare the adapter. Adapters that need no setup keep the default."""
        return None

    @abstractmethod
    async def process_receipt(self, image: bytes) -> ProcessingResult:
        """Extract transactions from one receipt photo."""
        pass

    @abstractmethod
    async def process_multiple_images(self, images: list[bytes]) -> ProcessingResult:
        """Extract transactions from several photos of one receipt."""
        pass
