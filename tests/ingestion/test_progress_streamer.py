"""
Tests for progress events, cancellation tokens and the progress streamer
"""

import asyncio
import json
import pytest
from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock

from core.database.history_service import HistoryService
from core.database.models import RecordFamily
from ingestion.backfill.gap_scanner import GapScanner
from ingestion.backfill.orchestrator import BackfillOrchestrator, BackfillRequest
from ingestion.backfill.progress import (
    CancellationToken, ProgressEvent, ProgressEventType, ProgressStreamer
)
from ingestion.errors import GapScanError
from ingestion.fetchers.upstream_gateway import SocialMessage


@pytest.fixture
def history(session_factory):
    return HistoryService(session_factory)


@pytest.fixture
def orchestrator(history):
    gateway = MagicMock()
    gateway.fetch_messages = AsyncMock(
        return_value=[SocialMessage(id=i, body="x", sentiment="bullish") for i in range(12)]
    )
    analysis = MagicMock()
    analysis.analyze_narratives = AsyncMock(return_value=[])
    analysis.analyze_emotions = AsyncMock(return_value=[])
    scanner = GapScanner(history, clock=lambda: datetime(2024, 1, 3, 16, 0))
    return BackfillOrchestrator(gateway, analysis, history, scanner=scanner, sleep=AsyncMock())


def _request():
    return BackfillRequest("AAPL", date(2024, 1, 1), date(2024, 1, 3))


class TestProgressEvent:

    def test_to_dict_keys(self):
        event = ProgressEvent(ProgressEventType.SKIPPED, "job1", processed=1, total=3, skipped=1,
                              current_unit="2024-01-02", data={"reason": "already exists"},
                              timestamp=datetime(2024, 1, 2, 12, 0))

        assert event.to_dict() == {
            "type": "skipped",
            "jobId": "job1",
            "timestamp": "2024-01-02T12:00:00Z",
            "processed": 1,
            "total": 3,
            "created": 0,
            "skipped": 1,
            "failed": 0,
            "currentUnit": "2024-01-02",
            "reason": "already exists",
        }

    def test_json_line(self):
        line = ProgressEvent(ProgressEventType.START, "job1").to_json_line()

        assert line.endswith("\n")
        assert json.loads(line)["type"] == "start"


class TestCancellationToken:

    @pytest.mark.asyncio
    async def test_explicit_cancel(self):
        token = CancellationToken()
        assert await token.is_cancelled() is False

        token.cancel()
        assert token.cancelled is True
        assert await token.is_cancelled() is True

    @pytest.mark.asyncio
    async def test_checker_latches(self):
        checker = AsyncMock(side_effect=[False, True])
        token = CancellationToken()
        token.add_checker(checker)

        assert await token.is_cancelled() is False
        assert await token.is_cancelled() is True
        assert await token.is_cancelled() is True
        assert checker.await_count == 2


class TestProgressStreamer:

    @pytest.mark.asyncio
    async def test_full_stream_order(self, orchestrator):
        streamer = ProgressStreamer(orchestrator)

        types = [event.event_type async for event in streamer.stream(_request())]

        assert types[0] is ProgressEventType.START
        assert types[-1] is ProgressEventType.COMPLETE
        assert types.count(ProgressEventType.CREATED) == 3

    @pytest.mark.asyncio
    async def test_closing_early_cancels_run(self, orchestrator, history):
        token = CancellationToken()

        async def hold_until_cancelled(delay):
            # Parks the run between units until the consumer goes away
            while delay == orchestrator.config.inter_unit_delay and not token.cancelled:
                await asyncio.sleep(0.01)

        orchestrator.sleep = hold_until_cancelled
        stream = ProgressStreamer(orchestrator).stream(_request(), cancellation=token)

        seen = []
        async for event in stream:
            seen.append(event.event_type)
            if event.event_type is ProgressEventType.CREATED:
                break
        await stream.aclose()

        assert token.cancelled is True
        assert ProgressEventType.COMPLETE not in seen
        assert history.count_records(RecordFamily.SENTIMENT) == 1

    @pytest.mark.asyncio
    async def test_scan_failure_raised_from_stream(self, history):
        scanner = MagicMock()
        scanner.scan.side_effect = GapScanError("boom")
        orchestrator = BackfillOrchestrator(MagicMock(), MagicMock(), history, scanner=scanner,
                                            sleep=AsyncMock())

        with pytest.raises(GapScanError):
            async for _ in ProgressStreamer(orchestrator).stream(_request()):
                pass
