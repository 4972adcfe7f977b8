"""
Historical Record Backfill System

Contains components for detecting missing derived records and filling them
in bounded, cancellable batches.

Key Components:
- GapScanner: Missing daily/hourly unit detection
- BackfillOrchestrator: Sequential unit processing with bounded slices
- ProgressStreamer: Ordered progress events for live consumers
"""

from .gap_scanner import (
    GapScanner,
    GapScanResult,
    TimeUnit
)

from .orchestrator import (
    BackfillOrchestrator,
    BackfillConfig,
    BackfillRequest,
    BackfillJob,
    BackfillMode,
    BackfillState,
    IngestionType,
    parse_ingestion_type
)

from .progress import (
    ProgressStreamer,
    ProgressEvent,
    ProgressEventType,
    CancellationToken
)
