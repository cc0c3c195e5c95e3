import re
from datetime import datetime, timedelta, timezone

import pytest

from tool_orchestrator.errors import ReplayError
from tool_orchestrator.models import DecisionRecord, ReplayOutcome, RouterCandidate
from tool_orchestrator.observability import (
    DecisionRecorder,
    ObservabilityManager,
    analyze_common_failures,
    analyze_tool_accuracy,
    calculate_performance_metrics,
    categorize_error,
    classify_routing,
    new_decision_id,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _pattern(tool):
    return RouterCandidate(tool=tool, score=1.0, reason="pattern")


def _classified(tool, score=0.6):
    return RouterCandidate(tool=tool, score=score, reason="classifier")


def _record(outcome="ok", **fields):
    fields.setdefault("input", "read a.txt")
    return DecisionRecord(id=new_decision_id(), outcome=outcome, **fields)

# ---------------------------------------------------------------------------
# DecisionRecorder
# ---------------------------------------------------------------------------

def test_decision_id_format():
    assert re.match(r"^dec_\d+_[0-9a-f]{10}$", new_decision_id())
    assert new_decision_id() != new_decision_id()

def test_recorder_drops_oldest_when_full():
    recorder = DecisionRecorder(max_records=3)
    ids = [recorder.record(input=f"q{i}", outcome="ok") for i in range(5)]

    assert len(recorder) == 3
    assert recorder.get(ids[0]) is None
    assert [r.input for r in recorder.all()] == ["q2", "q3", "q4"]
    assert [r.input for r in recorder.recent(2)] == ["q3", "q4"]

def test_recorder_queries():
    recorder = DecisionRecorder()
    recorder.record(input="a", outcome="ok", timestamp=T0)
    recorder.record(input="b", outcome="fail", error="boom", timestamp=T0 + timedelta(minutes=5))

    assert [r.input for r in recorder.by_outcome("fail")] == ["b"]
    assert [r.input for r in recorder.by_time_range(T0, T0 + timedelta(minutes=1))] == ["a"]

    recorder.clear()
    assert len(recorder) == 0

# ---------------------------------------------------------------------------
# Analyses
# ---------------------------------------------------------------------------

def test_classify_routing_categories():
    agrees = _record(
        patterns_matched=["read_file:verb_path"],
        router_candidates=[_pattern("read_file")],
        shadow_candidates=[_classified("read_file")],
    )
    overrides = _record(
        patterns_matched=["read_file:verb_path"],
        router_candidates=[_pattern("read_file")],
        shadow_candidates=[_classified("web_search")],
    )
    only = _record(patterns_matched=["read_file:verb_path"], router_candidates=[_pattern("read_file")])
    classifier = _record(router_candidates=[_classified("code_search")])
    unrouted = _record(outcome="fail")

    assert classify_routing(agrees) == "pattern_agrees"
    assert classify_routing(overrides) == "pattern_overrides"
    assert classify_routing(only) == "pattern_only"
    assert classify_routing(classifier) == "classifier_only"
    assert classify_routing(unrouted) == "unrouted"

@pytest.mark.parametrize(
    "error, category",
    [
        ("Operation timed out after 10ms", "timeout"),
        ("Permission denied: /root/x", "permission"),
        ("Input validation failed for read_file", "validation"),
        ("Network error calling https://x", "network"),
        ("Quota exceeded for max_concurrency while starting ls", "quota"),
        ("Circuit breaker is open for write_file", "circuit_breaker"),
        ("Approval required for tool: write_file", "other"),
    ],
)
def test_categorize_error(error, category):
    assert categorize_error(error) == category

def test_tool_accuracy_counts_every_chosen_tool():
    records = [
        _record(chosen_tools=["read_file", "code_search"]),
        _record(outcome="fail", error="boom", chosen_tools=["read_file"]),
    ]
    accuracy = analyze_tool_accuracy(records)

    assert (accuracy["read_file"].correct, accuracy["read_file"].total) == (1, 2)
    assert accuracy["read_file"].accuracy == 0.5
    assert accuracy["code_search"].accuracy == 1.0

def test_common_failures_sorted_by_count_then_name():
    records = [
        _record(outcome="fail", error="Operation timed out after 5ms"),
        _record(outcome="fail", error="Quota max_memory_mb exceeded"),
        _record(outcome="fail", error="Network error"),
        _record(outcome="fail", error="timeout again"),
        _record(outcome="ok"),
    ]
    assert analyze_common_failures(records) == [("timeout", 2), ("network", 1), ("quota", 1)]

def test_performance_metrics():
    records = [
        _record(
            outcome="ok" if i <= 15 else "fail",
            latency_ms=float(i),
            timestamp=T0 + timedelta(seconds=30) if i == 20 else T0,
        )
        for i in range(1, 21)
    ]
    perf = calculate_performance_metrics(records)

    assert perf.avg_latency_ms == 10.5
    assert perf.p95_latency_ms == 20.0
    assert perf.p99_latency_ms == 20.0
    assert perf.success_rate == 0.75
    assert perf.error_rate == 0.25
    assert perf.throughput_per_minute == 40.0

def test_performance_metrics_zero_span_and_empty():
    records = [_record(timestamp=T0), _record(timestamp=T0)]
    assert calculate_performance_metrics(records).throughput_per_minute == 2.0
    assert calculate_performance_metrics([]).avg_latency_ms == 0.0

# ---------------------------------------------------------------------------
# ObservabilityManager
# ---------------------------------------------------------------------------

def test_report_shape():
    manager = ObservabilityManager()
    for i in range(3):
        manager.record_decision(input=f"q{i}", outcome="ok", chosen_tools=["read_file"])

    report = manager.get_report(recent=2)

    assert [r.input for r in report.recent_decisions] == ["q1", "q2"]
    assert report.confusion_matrix.pattern_vs_classifier == {"unrouted": 3}
    assert report.confusion_matrix.tool_accuracy["read_file"].total == 3
    assert report.replay_stats.total_replays == 0

@pytest.mark.asyncio
async def test_replay_unknown_decision():
    with pytest.raises(ReplayError, match="Decision dec_missing not found"):
        await ObservabilityManager().replay("dec_missing", lambda text: None)

@pytest.mark.asyncio
async def test_replay_records_changed_outcome():
    manager = ObservabilityManager()
    original = manager.record_decision(input="read a.txt", outcome="fail", error="boom")
    seen = []

    async def execute(text):
        seen.append(text)
        return ReplayOutcome(outcome="ok", latency_ms=3.0)

    context = await manager.replay(original, execute)

    assert seen == ["read a.txt"]
    assert context.outcome_changed is True
    assert context.original_outcome == "fail"
    replayed = manager.recorder.get(context.replay_decision_id)
    assert replayed.replay is True
    assert replayed.original_decision_id == original
    assert manager.recorder.get(original).outcome == "fail"

    stats = manager.get_report().replay_stats
    assert (stats.total_replays, stats.successful_replays, stats.outcome_changes) == (1, 1, 1)

@pytest.mark.asyncio
async def test_replay_that_raises_is_recorded_as_failure():
    manager = ObservabilityManager()
    original = manager.record_decision(input="read a.txt", outcome="ok")

    def execute(text):
        raise RuntimeError("disk gone")

    context = await manager.replay(original, execute)

    assert context.replay_outcome == "fail"
    assert manager.recorder.get(context.replay_decision_id).error == "disk gone"
    assert manager.get_report().replay_stats.failed_replays == 1

def test_export_is_json_ready():
    manager = ObservabilityManager()
    manager.record_decision(input="q", outcome="ok", timestamp=T0)

    exported = manager.export()

    assert exported[0]["input"] == "q"
    assert exported[0]["timestamp"].startswith("2024-01-01T00:00:00")
    manager.clear()
    assert manager.export() == []
