"""Tests for the extraction strategy selector."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeLocalAdapter, FakeOCREngine, make_raw

from ledger_intake.config import AIMode, AIPreferences, AIStrategy, TimeoutConfig
from ledger_intake.errors import (
    ConfigurationError,
    ExtractionError,
    ExtractionTimeoutError,
    UnavailableError,
)
from ledger_intake.events import (
    EXTRACTION_FINISHED,
    EXTRACTION_STARTED,
    STRATEGY_SELECTED,
    EventEmitter,
)
from ledger_intake.extractors.local import OnDeviceExtractor
from ledger_intake.extractors.router import ExtractionMode, ExtractionStrategySelector, with_timeout
from ledger_intake.matching.multi_image import MergeOutcome
from ledger_intake.schemas.transactions import (
    ExtractionSource,
    ProcessingResult,
    ProcessingSource,
)
from ledger_intake.services.connectivity import ConnectivityMonitor


def local_result(confidence: float) -> ProcessingResult:
    return ProcessingResult.from_transactions(
        [make_raw("Local item", confidence=confidence, source=ExtractionSource.LOCAL)],
        ProcessingSource.LOCAL,
    )


def cloud_result(confidence: float = 0.85) -> ProcessingResult:
    return ProcessingResult.from_transactions(
        [make_raw("Cloud item", confidence=confidence)], ProcessingSource.CLOUD
    )


def fake_cloud(available: bool = True, result: ProcessingResult | None = None) -> MagicMock:
    cloud = MagicMock()
    cloud.is_available.return_value = available
    cloud.process_receipt = AsyncMock(return_value=result or cloud_result())
    return cloud


def make_selector(
    mode: AIMode = AIMode.AUTO,
    strategy: AIStrategy = AIStrategy.SPEED,
    privacy: bool = False,
    online: bool = True,
    local=None,
    cloud=None,
    events: EventEmitter | None = None,
    timeouts: TimeoutConfig | None = None,
    merger=None,
) -> ExtractionStrategySelector:
    connectivity = ConnectivityMonitor()
    connectivity.set_online(online)
    return ExtractionStrategySelector(
        AIPreferences(mode=mode, strategy=strategy, privacy_mode=privacy),
        local=local,
        cloud=cloud,
        connectivity=connectivity,
        events=events,
        timeouts=timeouts,
        merger=merger,
    )


class TestDecisionTable:
    """Tests for decide_mode."""

    def test_local_only(self):
        selector = make_selector(mode=AIMode.LOCAL_ONLY, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.LOCAL

    def test_privacy_mode_beats_cloud_only(self):
        selector = make_selector(mode=AIMode.CLOUD_ONLY, privacy=True, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.LOCAL

    def test_cloud_only_with_cloud(self):
        selector = make_selector(mode=AIMode.CLOUD_ONLY, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.CLOUD

    def test_cloud_only_without_cloud(self):
        selector = make_selector(mode=AIMode.CLOUD_ONLY, cloud=fake_cloud(available=False))

        with pytest.raises(UnavailableError):
            selector.decide_mode()

    def test_cloud_only_without_service(self):
        selector = make_selector(mode=AIMode.CLOUD_ONLY)

        with pytest.raises(UnavailableError):
            selector.decide_mode()

    def test_offline_is_local(self):
        selector = make_selector(strategy=AIStrategy.ACCURACY, online=False, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.LOCAL

    def test_privacy_strategy_is_local(self):
        selector = make_selector(strategy=AIStrategy.PRIVACY, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.LOCAL

    def test_accuracy_with_cloud(self):
        selector = make_selector(strategy=AIStrategy.ACCURACY, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.CLOUD

    def test_accuracy_without_cloud_is_hybrid(self):
        selector = make_selector(strategy=AIStrategy.ACCURACY, cloud=fake_cloud(available=False))
        assert selector.decide_mode() == ExtractionMode.HYBRID

    def test_speed_strategy_is_hybrid(self):
        selector = make_selector(strategy=AIStrategy.SPEED, cloud=fake_cloud())
        assert selector.decide_mode() == ExtractionMode.HYBRID


class TestHybrid:
    """Tests for local-first extraction with cloud fallback."""

    def test_confident_local_result_is_kept(self):
        cloud = fake_cloud()
        selector = make_selector(local=FakeLocalAdapter(local_result(0.9)), cloud=cloud)

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.LOCAL
        assert result.used_fallback is False
        cloud.process_receipt.assert_not_awaited()

    def test_threshold_is_inclusive(self):
        cloud = fake_cloud()
        selector = make_selector(local=FakeLocalAdapter(local_result(0.7)), cloud=cloud)

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.LOCAL
        cloud.process_receipt.assert_not_awaited()

    def test_low_confidence_falls_back_to_cloud(self):
        """Local 0.45 below 0.7 is replaced by the cloud result outright."""
        cloud = fake_cloud(result=cloud_result(0.85))
        selector = make_selector(local=FakeLocalAdapter(local_result(0.45)), cloud=cloud)

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.HYBRID
        assert result.used_fallback is True
        assert result.confidence == pytest.approx(0.85)
        assert [t.description for t in result.transactions] == ["Cloud item"]

    def test_blank_photo_falls_back_to_cloud(self):
        """A confident OCR read that yields no items scores 0 and goes to the cloud."""
        cloud = fake_cloud(result=cloud_result(0.85))
        local = OnDeviceExtractor(engine=FakeOCREngine(text="", confidence=95.0))
        selector = make_selector(local=local, cloud=cloud)

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.HYBRID
        assert result.used_fallback is True
        assert cloud.process_receipt.await_count == 1

    def test_low_confidence_without_cloud_returns_local(self):
        selector = make_selector(
            local=FakeLocalAdapter(local_result(0.45)), cloud=fake_cloud(available=False)
        )

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.LOCAL
        assert result.confidence == pytest.approx(0.45)
        assert result.used_fallback is False

    def test_local_failure_falls_back_to_cloud(self):
        local = FakeLocalAdapter(error=ExtractionError("OCR crashed"))
        selector = make_selector(local=local, cloud=fake_cloud())

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.HYBRID
        assert result.used_fallback is True

    def test_local_failure_without_cloud_propagates(self):
        local = FakeLocalAdapter(error=ExtractionError("OCR crashed"))
        selector = make_selector(local=local, cloud=fake_cloud(available=False))

        with pytest.raises(ExtractionError, match="OCR crashed"):
            asyncio.run(selector.process_receipt(b"img"))

    def test_missing_local_adapter_uses_cloud(self):
        selector = make_selector(local=None, cloud=fake_cloud())

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.HYBRID


class TestLocalAndCloudModes:
    """Tests for the single-path modes."""

    def test_local_mode_never_calls_cloud(self):
        cloud = fake_cloud()
        selector = make_selector(
            mode=AIMode.LOCAL_ONLY, local=FakeLocalAdapter(local_result(0.2)), cloud=cloud
        )

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.LOCAL
        cloud.process_receipt.assert_not_awaited()

    def test_local_mode_without_adapter_is_unavailable(self):
        selector = make_selector(mode=AIMode.LOCAL_ONLY)

        with pytest.raises(UnavailableError):
            asyncio.run(selector.process_receipt(b"img"))

    def test_local_configuration_error_is_unavailable(self):
        local = FakeLocalAdapter(error=ConfigurationError("tesseract missing"))
        selector = make_selector(mode=AIMode.LOCAL_ONLY, local=local)

        with pytest.raises(UnavailableError, match="tesseract missing"):
            asyncio.run(selector.process_receipt(b"img"))

    def test_cloud_mode(self):
        local = FakeLocalAdapter()
        selector = make_selector(strategy=AIStrategy.ACCURACY, local=local, cloud=fake_cloud())

        result = asyncio.run(selector.process_receipt(b"img"))

        assert result.source == ProcessingSource.CLOUD
        assert local.calls == 0

    def test_multiple_images_in_cloud_mode_use_merger(self):
        merger = MagicMock()
        merger.merge = AsyncMock(
            return_value=MergeOutcome(transactions=[make_raw("Sandwich")], items_merged=2)
        )
        selector = make_selector(strategy=AIStrategy.ACCURACY, cloud=fake_cloud(), merger=merger)

        result = asyncio.run(selector.process_multiple_images([b"a", b"b", b"c"]))

        merger.merge.assert_awaited_once_with([b"a", b"b", b"c"])
        assert result.source == ProcessingSource.CLOUD
        assert result.items_merged == 2


class TestTimeouts:
    """Extraction calls are cancelled once their budget is spent."""

    def test_with_timeout_raises_timeout_error(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(ExtractionTimeoutError) as exc_info:
            asyncio.run(with_timeout(slow(), 0.01))

        assert exc_info.value.timeout_seconds == 0.01

    def test_with_timeout_returns_result(self):
        async def fast():
            return 42

        assert asyncio.run(with_timeout(fast(), 1)) == 42

    def test_slow_cloud_call_times_out(self):
        async def slow_receipt(image):
            await asyncio.sleep(1)

        cloud = fake_cloud()
        cloud.process_receipt = slow_receipt
        selector = make_selector(
            strategy=AIStrategy.ACCURACY,
            cloud=cloud,
            timeouts=TimeoutConfig(single_seconds=0.01),
        )

        with pytest.raises(ExtractionTimeoutError):
            asyncio.run(selector.process_receipt(b"img"))


class TestEvents:
    """Tests for progress notifications."""

    def test_events_are_emitted_in_order(self):
        events = EventEmitter()
        seen = []
        for name in (STRATEGY_SELECTED, EXTRACTION_STARTED, EXTRACTION_FINISHED):
            events.on(name, lambda _name=name, **payload: seen.append((_name, payload)))
        selector = make_selector(
            mode=AIMode.LOCAL_ONLY, local=FakeLocalAdapter(local_result(0.9)), events=events
        )

        asyncio.run(selector.process_receipt(b"img"))

        assert [name for name, _ in seen] == [
            STRATEGY_SELECTED,
            EXTRACTION_STARTED,
            EXTRACTION_FINISHED,
        ]
        assert seen[0][1] == {"mode": "local"}
        assert seen[1][1] == {"mode": "local", "image_count": 1}
        finished = seen[2][1]
        assert finished["source"] == "local"
        assert finished["used_fallback"] is False
        assert finished["confidence"] == pytest.approx(0.9)
