# observability.py
# Decision log, confusion analysis and replay.
#
# The recorder is an append-only ring buffer. Every analysis below is a pure
# fold over its records, so a report can be rebuilt from an exported log.

import logging
import math
import secrets
import threading
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

from tool_orchestrator.catalog import maybe_await
from tool_orchestrator.errors import ReplayError
from tool_orchestrator.models import (
    ConfusionMatrix,
    DecisionRecord,
    ObservabilityReport,
    Outcome,
    PerformanceMetrics,
    ReplayContext,
    ReplayOutcome,
    ReplayStats,
    ToolAccuracy,
)

logger = logging.getLogger(__name__)

ReplayFn = Callable[[str], ReplayOutcome | Awaitable[ReplayOutcome]]


def new_decision_id() -> str:
    return f"dec_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


# ---------------------------------------------------------------------------
# DecisionRecorder
# ---------------------------------------------------------------------------


class DecisionRecorder:
    """Bounded, append-only log. The oldest record is dropped once full."""

    def __init__(self, max_records: int = 10_000) -> None:
        self._records: deque[DecisionRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(self, **fields: Any) -> str:
        record = DecisionRecord(id=new_decision_id(), **fields)
        with self._lock:
            self._records.append(record)
        return record.id

    def get(self, decision_id: str) -> DecisionRecord | None:
        with self._lock:
            return next((r for r in self._records if r.id == decision_id), None)

    def recent(self, limit: int = 100) -> list[DecisionRecord]:
        with self._lock:
            records = list(self._records)
        return records[-limit:] if limit > 0 else []

    def by_outcome(self, outcome: Outcome) -> list[DecisionRecord]:
        return [r for r in self.all() if r.outcome == outcome]

    def by_time_range(self, start: datetime, end: datetime) -> list[DecisionRecord]:
        return [r for r in self.all() if start <= r.timestamp <= end]

    def all(self) -> list[DecisionRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ---------------------------------------------------------------------------
# Pure analyses
# ---------------------------------------------------------------------------


def classify_routing(record: DecisionRecord) -> str:
    """
    How routing went for one record.

    pattern_agrees     a pattern fired and the classifier's top pick is among its tools
    pattern_overrides  a pattern fired and the classifier preferred something else
    pattern_only       a pattern fired and the classifier had no opinion
    classifier_only    no pattern fired; the classifier chose
    unrouted           nothing produced a candidate
    """
    if record.patterns_matched:
        if not record.shadow_candidates:
            return "pattern_only"
        pattern_tools = {c.tool for c in record.router_candidates}
        if record.shadow_candidates[0].tool in pattern_tools:
            return "pattern_agrees"
        return "pattern_overrides"
    if record.router_candidates:
        return "classifier_only"
    return "unrouted"


def analyze_pattern_vs_classifier(records: Iterable[DecisionRecord]) -> dict[str, int]:
    return dict(Counter(classify_routing(r) for r in records))


def analyze_tool_accuracy(records: Iterable[DecisionRecord]) -> dict[str, ToolAccuracy]:
    stats: dict[str, ToolAccuracy] = {}
    for record in records:
        for tool in record.chosen_tools:
            current = stats.get(tool, ToolAccuracy())
            stats[tool] = ToolAccuracy(
                correct=current.correct + (record.outcome == "ok"),
                total=current.total + 1,
            )
    return stats


_ERROR_CATEGORIES = (
    ("timeout", ("timeout", "timed out")),
    ("permission", ("permission",)),
    ("validation", ("validation",)),
    ("network", ("network",)),
    ("quota", ("quota",)),
    ("circuit_breaker", ("circuit breaker",)),
)


def categorize_error(error: str) -> str:
    lowered = error.lower()
    for category, markers in _ERROR_CATEGORIES:
        if any(marker in lowered for marker in markers):
            return category
    return "other"


def analyze_common_failures(records: Iterable[DecisionRecord]) -> list[tuple[str, int]]:
    """Failure categories, most frequent first."""
    counts = Counter(
        categorize_error(r.error) for r in records if r.outcome == "fail" and r.error
    )
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def _percentile(sorted_values: list[float], fraction: float) -> float:
    index = min(math.floor(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def calculate_performance_metrics(records: list[DecisionRecord]) -> PerformanceMetrics:
    if not records:
        return PerformanceMetrics()

    count = len(records)
    latencies = sorted(r.latency_ms for r in records)
    successes = sum(1 for r in records if r.outcome == "ok")

    timestamps = sorted(r.timestamp for r in records)
    span_ms = (timestamps[-1] - timestamps[0]).total_seconds() * 1000
    # A zero-width window reports the raw count rather than dividing by zero.
    throughput = count / span_ms * 60_000 if span_ms > 0 else float(count)

    return PerformanceMetrics(
        avg_latency_ms=sum(latencies) / count,
        p95_latency_ms=_percentile(latencies, 0.95),
        p99_latency_ms=_percentile(latencies, 0.99),
        success_rate=successes / count,
        error_rate=(count - successes) / count,
        throughput_per_minute=throughput,
    )


def build_confusion_matrix(records: list[DecisionRecord]) -> ConfusionMatrix:
    return ConfusionMatrix(
        pattern_vs_classifier=analyze_pattern_vs_classifier(records),
        tool_accuracy=analyze_tool_accuracy(records),
        common_failures=analyze_common_failures(records),
        performance=calculate_performance_metrics(records),
    )


def calculate_replay_stats(records: Iterable[DecisionRecord]) -> ReplayStats:
    replays = [r for r in records if r.replay]
    return ReplayStats(
        total_replays=len(replays),
        successful_replays=sum(1 for r in replays if r.outcome == "ok"),
        failed_replays=sum(1 for r in replays if r.outcome == "fail"),
        outcome_changes=sum(1 for r in replays if r.outcome != r.original_outcome),
    )


# ---------------------------------------------------------------------------
# ObservabilityManager
# ---------------------------------------------------------------------------


class ObservabilityManager:
    def __init__(self, max_records: int = 10_000) -> None:
        self.recorder = DecisionRecorder(max_records)

    def record_decision(self, **fields: Any) -> str:
        decision_id = self.recorder.record(**fields)
        logger.debug(f"[Observability] Recorded {decision_id} outcome={fields.get('outcome')}")
        return decision_id

    def get_report(self, recent: int = 10) -> ObservabilityReport:
        records = self.recorder.all()
        return ObservabilityReport(
            confusion_matrix=build_confusion_matrix(records),
            recent_decisions=records[-recent:] if recent > 0 else [],
            replay_stats=calculate_replay_stats(records),
        )

    async def replay(self, decision_id: str, execute: ReplayFn) -> ReplayContext:
        """
        Re-run a recorded input and log the result as a new replay record.

        The original record is never modified. A raising `execute` is logged
        as a failed replay rather than propagated.
        """
        original = self.recorder.get(decision_id)
        if original is None:
            raise ReplayError(f"Decision {decision_id} not found", {"decision_id": decision_id})

        start = time.perf_counter()
        try:
            outcome = await maybe_await(execute(original.input))
        except Exception as exc:
            logger.warning(f"[Observability] Replay of {decision_id} raised: {exc}")
            outcome = ReplayOutcome(
                outcome="fail",
                latency_ms=(time.perf_counter() - start) * 1000,
                error=str(exc),
            )

        replay_id = self.record_decision(
            input=original.input,
            patterns_matched=original.patterns_matched,
            router_candidates=original.router_candidates,
            shadow_candidates=original.shadow_candidates,
            chosen_tools=original.chosen_tools,
            args=original.args,
            outcome=outcome.outcome,
            latency_ms=outcome.latency_ms,
            error=outcome.error,
            replay=True,
            original_decision_id=original.id,
            original_outcome=original.outcome,
        )
        return ReplayContext(
            decision_id=original.id,
            replay_decision_id=replay_id,
            original_input=original.input,
            original_outcome=original.outcome,
            replay_outcome=outcome.outcome,
        )

    def export(self) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self.recorder.all()]

    def clear(self) -> None:
        self.recorder.clear()
