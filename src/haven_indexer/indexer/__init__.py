"""Indexer drivers and the per-token steps they share."""

from haven_indexer.indexer.backfill import BackfillIndexer, BackfillState, BackfillStats
from haven_indexer.indexer.processor import TokenProcessor, TokenRunResult
from haven_indexer.indexer.realtime import RealtimeIndexer, RealtimeState, RealtimeStats
from haven_indexer.indexer.scheduler import BlockRange, IntervalThrottle, WatermarkScheduler

__all__ = [
    "BackfillIndexer",
    "BackfillState",
    "BackfillStats",
    "BlockRange",
    "IntervalThrottle",
    "RealtimeIndexer",
    "RealtimeState",
    "RealtimeStats",
    "TokenProcessor",
    "TokenRunResult",
    "WatermarkScheduler",
]
