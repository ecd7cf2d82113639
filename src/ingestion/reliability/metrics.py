"""
Pipeline Metrics.

Sink interface for per-stage success/failure counts and timings, with an
in-process implementation aggregating:
- Per-stage success and failure counts
- Per-stage latency statistics (mean, median, p95, p99)
- Document completions, overall and by document type
"""

import statistics
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


# Below these sample counts p95/p99 report the maximum
P95_MIN_SAMPLES = 20
P99_MIN_SAMPLES = 100


@dataclass
class LatencyStats:
    """Stage durations in milliseconds, summarized on demand."""

    samples: list[float] = field(default_factory=list, repr=False)

    def add(self, latency_ms: float) -> None:
        self.samples.append(latency_ms)

    @property
    def count(self) -> int:
        return len(self.samples)

    @property
    def total_ms(self) -> float:
        return sum(self.samples)

    def percentile(self, fraction: float, min_samples: int) -> float:
        ordered = sorted(self.samples)
        if len(ordered) < min_samples:
            return ordered[-1]
        return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]

    def to_dict(self) -> dict[str, Any]:
        if not self.samples:
            return dict.fromkeys(
                ("total_ms", "min_ms", "max_ms", "mean_ms", "median_ms", "p95_ms", "p99_ms"), 0.0
            ) | {"count": 0}

        summary = {
            "total_ms": self.total_ms,
            "min_ms": min(self.samples),
            "max_ms": max(self.samples),
            "mean_ms": statistics.fmean(self.samples),
            "median_ms": statistics.median(self.samples),
            "p95_ms": self.percentile(0.95, P95_MIN_SAMPLES),
            "p99_ms": self.percentile(0.99, P99_MIN_SAMPLES),
        }
        return {"count": self.count} | {key: round(value, 2) for key, value in summary.items()}


@dataclass
class StageMetrics:
    """Counters and latencies for one pipeline stage."""

    stage: str
    success: int = 0
    failed: int = 0
    latency: LatencyStats = field(default_factory=LatencyStats)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        total = self.success + self.failed
        return {
            "stage": self.stage,
            "success": self.success,
            "failed": self.failed,
            "success_rate": round(self.success / total, 4) if total else 0.0,
            "avg_processing_time_ms": round(self.latency.total_ms / self.latency.count, 2)
            if self.latency.count
            else 0.0,
            "latency": self.latency.to_dict(),
            "last_error": self.last_error,
        }


class MetricsRecorder(ABC):
    """Sink for pipeline stage and document outcomes."""

    @abstractmethod
    def record_stage(
        self,
        stage: str,
        success: bool,
        duration_ms: float,
        document_type: str | None = None,
        error: str | None = None,
    ) -> None:
        """Record the outcome of one stage execution."""
        pass

    @abstractmethod
    def record_document_completion(
        self,
        success: bool,
        document_type: str | None = None,
    ) -> None:
        """Record the end of a pipeline run for one document."""
        pass

    @abstractmethod
    def snapshot(self) -> dict[str, Any]:
        """Return aggregated metrics."""
        pass


class InMemoryMetricsRecorder(MetricsRecorder):
    """Aggregates metrics in process memory."""

    def __init__(self) -> None:
        self.started_at = datetime.now(timezone.utc)
        self._stages: dict[str, StageMetrics] = {}
        self._documents_completed = 0
        self._documents_failed = 0
        self._by_document_type: dict[str, dict[str, int]] = {}

    def _stage(self, stage: str) -> StageMetrics:
        if stage not in self._stages:
            self._stages[stage] = StageMetrics(stage=stage)
        return self._stages[stage]

    def _type_bucket(self, document_type: str | None) -> dict[str, int]:
        key = document_type or "unknown"
        if key not in self._by_document_type:
            self._by_document_type[key] = {"success": 0, "failed": 0}
        return self._by_document_type[key]

    def record_stage(
        self,
        stage: str,
        success: bool,
        duration_ms: float,
        document_type: str | None = None,
        error: str | None = None,
    ) -> None:
        metrics = self._stage(stage)
        if success:
            metrics.success += 1
        else:
            metrics.failed += 1
            metrics.last_error = error
        metrics.latency.add(duration_ms)

        logger.debug(
            "Stage recorded",
            stage=stage,
            success=success,
            duration_ms=round(duration_ms, 2),
        )

    def record_document_completion(
        self,
        success: bool,
        document_type: str | None = None,
    ) -> None:
        bucket = self._type_bucket(document_type)
        if success:
            self._documents_completed += 1
            bucket["success"] += 1
        else:
            self._documents_failed += 1
            bucket["failed"] += 1

    def stage(self, stage: str) -> StageMetrics | None:
        return self._stages.get(stage)

    def snapshot(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "documents": {
                "completed": self._documents_completed,
                "failed": self._documents_failed,
            },
            "stages": {name: m.to_dict() for name, m in self._stages.items()},
            "by_document_type": {k: dict(v) for k, v in self._by_document_type.items()},
        }
