"""
Backfill Orchestrator

Fills missing sentiment, narrative and emotion records for a symbol over a
date range (daily mode) or over the trading hours of one day (hourly mode).

Each invocation:
1. scans storage for missing units,
2. takes a bounded slice of the missing units,
3. processes units one at a time: fetch messages, aggregate sentiment,
   run narrative/emotion analysis, upsert each record family,
4. reports whether more units remain.

Units that produce records drop out of the next scan on their own. Units
skipped for insufficient data or failed write nothing, so the summary also
carries a ``cursor`` (label of the last unit attempted); echoing it back
restricts the next call to units after it and the slice keeps advancing.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from core.database.history_service import HistoryService
from core.database.models import RecordFamily
from ingestion.analysis.client import AnalysisClient, dominant_emotion, dominant_narrative
from ingestion.analysis.sanitize import sanitize_tree
from ingestion.analysis.sentiment import compute_sentiment
from ingestion.fetchers.upstream_gateway import UpstreamGateway
from .gap_scanner import GapScanner, GapScanResult, TimeUnit
from .progress import CancellationToken, ProgressEvent, ProgressEventType, ProgressListener

logger = logging.getLogger(__name__)

SKIP_ALREADY_EXISTS = "already exists"
SKIP_INSUFFICIENT_DATA = "insufficient data"
CANCELLED_BY_USER = "cancelled by user"


class BackfillMode(str, Enum):
    DAILY = "daily"
    HOURLY = "hourly"


class IngestionType(str, Enum):
    """Which record families a backfill produces."""
    MESSAGES = "messages"    # sentiment aggregates only
    ANALYTICS = "analytics"  # narratives and emotions only
    ALL = "all"

    @property
    def families(self) -> FrozenSet[RecordFamily]:
        if self is IngestionType.MESSAGES:
            return frozenset({RecordFamily.SENTIMENT})
        if self is IngestionType.ANALYTICS:
            return frozenset({RecordFamily.NARRATIVE, RecordFamily.EMOTION})
        return frozenset(RecordFamily)


class BackfillState(Enum):
    """Job lifecycle states."""
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING_UNIT = "processing_unit"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


@dataclass
class BackfillConfig:
    """Configuration for backfill operations."""
    daily_batch_size: int = 3
    hourly_batch_size: int = 5
    daily_min_messages: int = 10
    hourly_min_messages: int = 5
    daily_message_limit: int = 500
    hourly_message_limit: int = 200
    inter_unit_delay: float = 0.5  # seconds between consecutive units
    analysis_delay: float = 0.3    # seconds between narrative and emotion calls

    @classmethod
    def from_settings(cls, settings) -> 'BackfillConfig':
        return cls(
            daily_batch_size=settings.backfill_daily_batch_size,
            hourly_batch_size=settings.backfill_hourly_batch_size,
            daily_min_messages=settings.backfill_daily_min_messages,
            hourly_min_messages=settings.backfill_hourly_min_messages,
            daily_message_limit=settings.backfill_daily_message_limit,
            hourly_message_limit=settings.backfill_hourly_message_limit,
            inter_unit_delay=settings.backfill_inter_unit_delay,
            analysis_delay=settings.backfill_analysis_delay
        )


@dataclass
class BackfillRequest:
    """Parameters of one backfill invocation."""
    symbol: str
    start_date: date
    end_date: date
    ingestion_type: IngestionType = IngestionType.ALL
    force: bool = False
    force_hourly: bool = False
    now_hour: Optional[int] = None
    cursor: Optional[str] = None  # label of the last unit attempted by a previous call

    def __post_init__(self):
        self.symbol = (self.symbol or '').strip().upper()
        self.cursor = (self.cursor or '').strip() or None
        if not self.symbol:
            raise ValueError("symbol is required")
        if self.start_date > self.end_date:
            raise ValueError(f"start_date {self.start_date} is after end_date {self.end_date}")
        self.ingestion_type = IngestionType(self.ingestion_type)

    @property
    def mode(self) -> BackfillMode:
        """Hourly only when explicitly requested for a single day."""
        if self.force_hourly and self.start_date == self.end_date:
            return BackfillMode.HOURLY
        return BackfillMode.DAILY


@dataclass
class BackfillJob:
    """Transient state of one invocation; ``to_dict`` is the summary returned to callers."""
    job_id: str
    request: BackfillRequest
    state: BackfillState = BackfillState.IDLE
    expected_units: int = 0
    total: int = 0
    processed: List[TimeUnit] = field(default_factory=list)
    skipped: List[Tuple[TimeUnit, str]] = field(default_factory=list)
    failed: List[Tuple[TimeUnit, str]] = field(default_factory=list)
    sentiment_records: int = 0
    narrative_records: int = 0
    emotion_records: int = 0
    errors: List[str] = field(default_factory=list)
    remaining_count: int = 0
    cursor: Optional[str] = None
    cancelled: bool = False

    @property
    def mode(self) -> BackfillMode:
        return self.request.mode

    @property
    def has_more(self) -> bool:
        return self.remaining_count > 0

    @property
    def handled(self) -> int:
        return len(self.processed) + len(self.skipped) + len(self.failed)

    def event(self, event_type: ProgressEventType, current: Optional[TimeUnit] = None,
              **data: Any) -> ProgressEvent:
        return ProgressEvent(
            event_type=event_type,
            job_id=self.job_id,
            processed=self.handled,
            total=self.total,
            created=len(self.processed),
            skipped=len(self.skipped),
            failed=len(self.failed),
            current_unit=current.label if current else None,
            data=data
        )

    def to_dict(self) -> Dict[str, Any]:
        suffix = "Hours" if self.mode is BackfillMode.HOURLY else "Dates"
        return {
            'jobId': self.job_id,
            'symbol': self.request.symbol,
            'mode': self.mode.value,
            'ingestionType': self.request.ingestion_type.value,
            'force': self.request.force,
            f'processed{suffix}': [u.summary_value for u in self.processed],
            f'skipped{suffix}': [u.summary_value for u, _ in self.skipped],
            f'failed{suffix}': [u.summary_value for u, _ in self.failed],
            'skippedReasons': {u.label: reason for u, reason in self.skipped},
            'sentimentRecords': self.sentiment_records,
            'narrativeRecords': self.narrative_records,
            'emotionRecords': self.emotion_records,
            'errors': list(self.errors),
            'hasMore': self.has_more,
            'cursor': self.cursor,
            f'remaining{suffix}': self.remaining_count,
            'processed': len(self.processed),
            'skipped': len(self.skipped),
            'failed': len(self.failed),
            'total': self.total,
            'expected': self.expected_units,
            'cancelled': self.cancelled,
        }


@dataclass
class UnitOutcome:
    """Result of a unit that did not raise."""
    skip_reason: Optional[str] = None
    message_count: int = 0
    records: Dict[str, int] = field(default_factory=dict)


class BackfillOrchestrator:
    """
    Sequential backfill over missing units.

    A failure inside a unit marks that unit failed and moves on; only a
    failed gap scan aborts the invocation.
    """

    def __init__(self,
                 gateway: UpstreamGateway,
                 analysis: AnalysisClient,
                 history: HistoryService,
                 scanner: Optional[GapScanner] = None,
                 config: Optional[BackfillConfig] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Args:
            gateway: Source of raw messages
            analysis: Narrative/emotion extraction
            history: Store for derived records
            scanner: Gap scanner (defaults to one over ``history``)
            config: Batch sizes, thresholds and delays
            sleep: Awaitable delay, injectable for tests
        """
        self.gateway = gateway
        self.analysis = analysis
        self.history = history
        self.scanner = scanner or GapScanner(history)
        self.config = config or BackfillConfig()
        self.sleep = sleep

    async def run(self,
                  request: BackfillRequest,
                  listener: Optional[ProgressListener] = None,
                  cancellation: Optional[CancellationToken] = None) -> BackfillJob:
        """
        Execute one bounded backfill invocation.

        Raises:
            GapScanError: if missing units could not be determined
        """
        job = BackfillJob(job_id=uuid.uuid4().hex[:12], request=request)
        token = cancellation or CancellationToken()
        hourly = request.mode is BackfillMode.HOURLY

        def emit(event_type: ProgressEventType, current: Optional[TimeUnit] = None, **data):
            if listener is not None:
                listener(job.event(event_type, current, **data))

        logger.info(f"Backfill {job.job_id}: {request.symbol} {request.start_date}..{request.end_date} "
                    f"mode={request.mode.value} type={request.ingestion_type.value} force={request.force}")

        job.state = BackfillState.SCANNING
        scan: GapScanResult = await asyncio.to_thread(
            self.scanner.scan,
            request.symbol,
            request.start_date,
            request.end_date,
            hourly,
            request.ingestion_type.families,
            request.force,
            request.now_hour
        )

        # Labels of one mode sort chronologically
        missing = [u for u in scan.missing if not request.cursor or u.label > request.cursor]
        present_units = [u for u in scan.present if not request.cursor or u.label > request.cursor]

        batch_size = self.config.hourly_batch_size if hourly else self.config.daily_batch_size
        batch = missing[:batch_size]
        present = set(present_units)
        units = sorted(present_units + batch, key=lambda u: (u.day, u.hour or 0))

        job.expected_units = len(scan.expected)
        job.total = len(units)
        job.cursor = batch[-1].label if batch else request.cursor
        job.remaining_count = len(missing) - len(batch)

        emit(ProgressEventType.START,
             symbol=request.symbol,
             mode=request.mode.value,
             ingestionType=request.ingestion_type.value,
             force=request.force,
             expectedUnits=len(scan.expected),
             existingCount=len(present_units),
             missingCount=len(missing))

        attempted = 0
        last_attempted: Optional[TimeUnit] = None
        for unit in units:
            is_missing = unit not in present
            if is_missing and attempted > 0:
                await self.sleep(self.config.inter_unit_delay)

            if await token.is_cancelled():
                job.cancelled = True
                job.errors.append(CANCELLED_BY_USER)
                logger.info(f"Backfill {job.job_id} cancelled before {unit.label}")
                break

            job.state = BackfillState.PROCESSING_UNIT
            emit(ProgressEventType.PROGRESS, unit)

            if not is_missing:
                job.skipped.append((unit, SKIP_ALREADY_EXISTS))
                emit(ProgressEventType.SKIPPED, unit, unit=unit.summary_value, reason=SKIP_ALREADY_EXISTS)
                continue

            attempted += 1
            last_attempted = unit
            try:
                outcome = await self._process_unit(job, unit)
            except Exception as e:
                reason = str(e) or type(e).__name__
                job.failed.append((unit, reason))
                job.errors.append(f"{unit.label}: {reason}")
                logger.error(f"Backfill {job.job_id} failed on {unit.label}: {reason}")
                emit(ProgressEventType.ERROR, unit, unit=unit.summary_value, error=reason)
                continue

            if outcome.skip_reason:
                job.skipped.append((unit, outcome.skip_reason))
                logger.warning(f"Skipping {unit.label}: {outcome.skip_reason} "
                               f"({outcome.message_count} messages)")
                emit(ProgressEventType.SKIPPED, unit, unit=unit.summary_value,
                     reason=outcome.skip_reason, messageCount=outcome.message_count)
            else:
                job.processed.append(unit)
                emit(ProgressEventType.CREATED, unit, unit=unit.summary_value,
                     messageCount=outcome.message_count, records=outcome.records)

        if job.cancelled:
            job.remaining_count = len(missing) - attempted
            job.cursor = last_attempted.label if last_attempted else request.cursor
            job.state = BackfillState.CANCELLED
        else:
            job.state = BackfillState.COMPLETE
            emit(ProgressEventType.COMPLETE, summary=job.to_dict())

        logger.info(f"Backfill {job.job_id} finished: processed={len(job.processed)} "
                    f"skipped={len(job.skipped)} failed={len(job.failed)} "
                    f"remaining={job.remaining_count} cancelled={job.cancelled}")
        return job

    async def _process_unit(self, job: BackfillJob, unit: TimeUnit) -> UnitOutcome:
        if unit.is_hourly:
            limit, minimum = self.config.hourly_message_limit, self.config.hourly_min_messages
        else:
            limit, minimum = self.config.daily_message_limit, self.config.daily_min_messages

        messages = await self.gateway.fetch_messages(unit.symbol, unit.window_start, unit.window_end, limit)
        outcome = UnitOutcome(message_count=len(messages))
        if len(messages) < minimum:
            outcome.skip_reason = SKIP_INSUFFICIENT_DATA
            return outcome

        if RecordFamily.SENTIMENT in unit.families:
            aggregate = compute_sentiment(messages)
            await asyncio.to_thread(
                self.history.upsert_sentiment,
                unit.symbol, unit.recorded_at, unit.period_type,
                aggregate.sentiment_score,
                aggregate.bullish_count,
                aggregate.bearish_count,
                aggregate.neutral_count,
                len(messages)
            )
            job.sentiment_records += 1
            outcome.records['sentiment'] = 1

        wants_narratives = RecordFamily.NARRATIVE in unit.families
        wants_emotions = RecordFamily.EMOTION in unit.families

        if wants_narratives:
            narratives = await self.analysis.analyze_narratives(messages)
            if narratives:
                await asyncio.to_thread(
                    self.history.upsert_narratives,
                    unit.symbol, unit.recorded_at, unit.period_type,
                    sanitize_tree([n.to_dict() for n in narratives]).value,
                    sanitize_tree(dominant_narrative(narratives)).value,
                    len(messages)
                )
                job.narrative_records += 1
                outcome.records['narrative'] = 1

        if wants_narratives and wants_emotions:
            await self.sleep(self.config.analysis_delay)

        if wants_emotions:
            emotions = await self.analysis.analyze_emotions(messages)
            if emotions:
                await asyncio.to_thread(
                    self.history.upsert_emotions,
                    unit.symbol, unit.recorded_at, unit.period_type,
                    sanitize_tree([e.to_dict() for e in emotions]).value,
                    sanitize_tree(dominant_emotion(emotions)).value,
                    len(messages)
                )
                job.emotion_records += 1
                outcome.records['emotion'] = 1

        return outcome


def parse_ingestion_type(value: Union[str, IngestionType, None]) -> IngestionType:
    """Lenient parsing of the request's type field; unknown values mean 'all'."""
    if value is None:
        return IngestionType.ALL
    try:
        return IngestionType(value)
    except ValueError:
        logger.warning(f"Unknown ingestion type {value!r}, using 'all'")
        return IngestionType.ALL
