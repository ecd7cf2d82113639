"""
Reliability Module.

Retry with exponential backoff, per-document locks and pipeline metrics.
"""

from src.ingestion.reliability.locks import KeyedLock
from src.ingestion.reliability.metrics import (
    InMemoryMetricsRecorder,
    LatencyStats,
    MetricsRecorder,
    StageMetrics,
)
from src.ingestion.reliability.retry_handler import (
    GENERATION_RETRY_POLICY,
    GRAPH_RETRY_POLICY,
    SCHEMA_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
    is_retryable_error,
)

__all__ = [
    # Retry
    "RetryExecutor",
    "RetryPolicy",
    "is_retryable_error",
    "GENERATION_RETRY_POLICY",
    "SCHEMA_RETRY_POLICY",
    "GRAPH_RETRY_POLICY",
    # Locks
    "KeyedLock",
    # Metrics
    "MetricsRecorder",
    "InMemoryMetricsRecorder",
    "LatencyStats",
    "StageMetrics",
]
