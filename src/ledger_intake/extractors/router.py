"""
Extraction strategy selector - chooses between on-device and cloud extraction.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from ..cloud.service import CloudExtractionService
from ..config import AIMode, AIPreferences, AIStrategy, TimeoutConfig
from ..errors import ConfigurationError, ExtractionTimeoutError, UnavailableError
from ..events import EXTRACTION_FINISHED, EXTRACTION_STARTED, STRATEGY_SELECTED, EventEmitter
from ..matching.multi_image import MultiImageMerger
from ..schemas.transactions import ProcessingResult, ProcessingSource
from ..services.connectivity import ConnectivityMonitor
from .base import LocalAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_timeout(call: Awaitable[T], timeout: float) -> T:
    """Await an extraction call, cancelling it once the budget is spent."""
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as e:
        raise ExtractionTimeoutError(
            f"Extraction did not finish within {timeout:.0f} seconds", timeout_seconds=timeout
        ) from e


class ExtractionMode(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"
    HYBRID = "hybrid"


class ExtractionStrategySelector:
    """
    Routes photo extraction to the local adapter, the cloud, or both.

    Decision table, first matching rule wins:
    1. mode local_only or privacy mode      -> local
    2. mode cloud_only                      -> cloud, or UnavailableError
    3. offline                              -> local
    4. strategy privacy                     -> local
    5. strategy accuracy and cloud usable   -> cloud
    6. otherwise                            -> hybrid

    Hybrid runs local first and keeps its result when the confidence reaches
    the threshold. Below the threshold (or when local fails) the cloud result
    replaces it outright, labelled source=hybrid with used_fallback set.
    """

    def __init__(
        self,
        preferences: AIPreferences,
        local: LocalAdapter | None = None,
        cloud: CloudExtractionService | None = None,
        connectivity: ConnectivityMonitor | None = None,
        events: EventEmitter | None = None,
        timeouts: TimeoutConfig | None = None,
        merger: MultiImageMerger | None = None,
    ):
        self.preferences = preferences
        self.local = local
        self.cloud = cloud
        self.connectivity = connectivity
        self.events = events or EventEmitter()
        self.timeouts = timeouts or TimeoutConfig()
        self.merger = merger or MultiImageMerger(cloud)

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online if self.connectivity else True

    def cloud_available(self) -> bool:
        return self.cloud is not None and self.cloud.is_available()

    def decide_mode(self) -> ExtractionMode:
        """
        Apply the decision table.

        Raises:
            UnavailableError: If cloud_only is set and no cloud provider can run.
        """
        prefs = self.preferences
        if prefs.mode == AIMode.LOCAL_ONLY or prefs.privacy_mode:
            return ExtractionMode.LOCAL
        if prefs.mode == AIMode.CLOUD_ONLY:
            if self.cloud_available():
                return ExtractionMode.CLOUD
            raise UnavailableError(
                "Cloud-only mode is selected but no cloud provider is available. "
                "Check your API keys and network connection, or switch the AI mode."
            )
        if not self.is_online:
            return ExtractionMode.LOCAL
        if prefs.strategy == AIStrategy.PRIVACY:
            return ExtractionMode.LOCAL
        if prefs.strategy == AIStrategy.ACCURACY and self.cloud_available():
            return ExtractionMode.CLOUD
        return ExtractionMode.HYBRID

    async def process_receipt(self, image: bytes) -> ProcessingResult:
        """Extract one receipt photo using the selected strategy."""
        return await self._run(
            image_count=1,
            timeout=self.timeouts.single_seconds,
            local_call=lambda: self._local_adapter().process_receipt(image),
            cloud_call=lambda: self._cloud_service().process_receipt(image),
        )

    async def process_multiple_images(self, images: list[bytes]) -> ProcessingResult:
        """Extract several photos of one receipt using the selected strategy."""
        return await self._run(
            image_count=len(images),
            timeout=self.timeouts.multi_seconds,
            local_call=lambda: self._local_adapter().process_multiple_images(images),
            cloud_call=lambda: self._cloud_multiple(images),
        )

    async def _cloud_multiple(self, images: list[bytes]) -> ProcessingResult:
        started = time.monotonic()
        outcome = await self.merger.merge(images)
        return ProcessingResult.from_transactions(
            outcome.transactions,
            ProcessingSource.CLOUD,
            processing_time_ms=(time.monotonic() - started) * 1000,
            items_merged=outcome.items_merged,
        )

    async def _run(
        self,
        image_count: int,
        timeout: float,
        local_call: Callable[[], Awaitable[ProcessingResult]],
        cloud_call: Callable[[], Awaitable[ProcessingResult]],
    ) -> ProcessingResult:
        mode = self.decide_mode()
        logger.info("Extraction strategy: %s (%d images)", mode.value, image_count)
        self.events.emit(STRATEGY_SELECTED, mode=mode.value)
        self.events.emit(EXTRACTION_STARTED, mode=mode.value, image_count=image_count)

        started = time.monotonic()
        if mode == ExtractionMode.LOCAL:
            result = await self._run_local(local_call, timeout)
        elif mode == ExtractionMode.CLOUD:
            result = await with_timeout(cloud_call(), timeout)
        else:
            result = await self._run_hybrid(local_call, cloud_call, timeout)
        result.processing_time_ms = (time.monotonic() - started) * 1000

        logger.info(
            "Extraction finished: source=%s confidence=%.2f fallback=%s (%d transactions)",
            result.source.value,
            result.confidence,
            result.used_fallback,
            len(result.transactions),
        )
        self.events.emit(
            EXTRACTION_FINISHED,
            source=result.source.value,
            confidence=result.confidence,
            used_fallback=result.used_fallback,
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def _run_local(
        self, local_call: Callable[[], Awaitable[ProcessingResult]], timeout: float
    ) -> ProcessingResult:
        try:
            return await with_timeout(local_call(), timeout)
        except ConfigurationError as e:
            raise UnavailableError(f"On-device extraction is not available: {e}") from e

    async def _run_hybrid(
        self,
        local_call: Callable[[], Awaitable[ProcessingResult]],
        cloud_call: Callable[[], Awaitable[ProcessingResult]],
        timeout: float,
    ) -> ProcessingResult:
        threshold = self.preferences.confidence_threshold
        try:
            local_result = await with_timeout(local_call(), timeout)
        except Exception as e:
            if not self.cloud_available():
                raise
            logger.warning("Local extraction failed, falling back to cloud: %s", e)
        else:
            if local_result.confidence >= threshold:
                return local_result
            if not self.cloud_available():
                logger.info(
                    "Local confidence %.2f below %.2f and no cloud available; keeping local result",
                    local_result.confidence,
                    threshold,
                )
                return local_result
            logger.info(
                "Local confidence %.2f below %.2f, falling back to cloud",
                local_result.confidence,
                threshold,
            )

        cloud_result = await with_timeout(cloud_call(), timeout)
        cloud_result.source = ProcessingSource.HYBRID
        cloud_result.used_fallback = True
        return cloud_result

    def _local_adapter(self) -> LocalAdapter:
        if self.local is None:
            raise ConfigurationError("No on-device extractor is installed")
        return self.local

    def _cloud_service(self) -> CloudExtractionService:
        if self.cloud is None:
            raise ConfigurationError("No cloud extraction service is configured")
        return self.cloud
