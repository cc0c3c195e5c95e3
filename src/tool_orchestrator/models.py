# models.py
# Data contracts for the tool-orchestration core.
# No business logic lives here. Pure schema and validation.

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Risk(str, Enum):
    """Risk tier of a tool. Ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER = [Risk.LOW, Risk.MEDIUM, Risk.HIGH, Risk.CRITICAL]


class Capability(str, Enum):
    FS_READ = "fs.read"
    FS_WRITE = "fs.write"
    FS_DELETE = "fs.delete"
    NET_HTTP = "net.http"
    NET_WEBSOCKET = "net.websocket"
    SHELL_EXEC = "shell.exec"
    SHELL_SCRIPT = "shell.script"
    PROCESS_SPAWN = "process.spawn"
    MEMORY_READ = "memory.read"
    MEMORY_WRITE = "memory.write"
    COMPUTE_CPU = "compute.cpu"
    COMPUTE_GPU = "compute.gpu"
    DATABASE_QUERY = "database.query"
    DATABASE_WRITE = "database.write"
    CACHE_READ = "cache.read"
    CACHE_WRITE = "cache.write"


Outcome = Literal["ok", "fail"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class RouterCandidate(BaseModel):
    """A ranked tool suggestion. Produced fresh per routing call."""

    model_config = ConfigDict(frozen=True)

    tool: str = Field(..., description="Tool name as registered in the catalog.")
    score: float = Field(..., ge=0.0, le=1.0)
    reason: Literal["pattern", "classifier"]


class RouteResult(BaseModel):
    """Router output: selection candidates plus what fired to produce them."""

    candidates: list[RouterCandidate] = Field(default_factory=list)
    patterns_matched: list[str] = Field(
        default_factory=list, description="Names of the pattern rules that matched."
    )
    shadow: list[RouterCandidate] = Field(
        default_factory=list,
        description="Classifier opinion when a pattern pre-empted it. Never used for selection.",
    )

    @property
    def tools(self) -> list[str]:
        return [c.tool for c in self.candidates]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """One tool invocation within a plan."""

    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    provides: frozenset[str] = Field(default_factory=frozenset)
    consumes: frozenset[str] = Field(default_factory=frozenset)
    order: int = 0
    risk: Risk = Risk.LOW
    clause: str = Field(default="", description="Utterance clause this step was parsed from.")
    descriptor: Any = Field(default=None, exclude=True, repr=False)

    def leaf(self) -> dict[str, Any]:
        """Canonical dict committed to the plan's Merkle tree."""
        return {
            "order": self.order,
            "tool": self.tool,
            "args": self.args,
            "provides": sorted(self.provides),
            "consumes": sorted(self.consumes),
        }


class Plan(BaseModel):
    """Ordered steps plus aggregate budgets. Built once per turn."""

    steps: list[PlanStep] = Field(..., min_length=1)
    total_time_budget_ms: int
    total_memory_budget_mb: int
    risk_level: Risk

    @property
    def requires_approval(self) -> bool:
        return self.risk_level in (Risk.HIGH, Risk.CRITICAL)

    def summary(self) -> str:
        names = " → ".join(step.tool for step in self.steps)
        return (
            f"Plan: {names} ({len(self.steps)} steps, "
            f"{self.total_time_budget_ms}ms, {self.risk_level.value} risk)"
        )

    def dependency_graph(self) -> dict[str, list[str]]:
        return {f"{s.tool}_{s.order}": sorted(s.consumes) for s in self.steps}

    def leaves(self) -> list[dict[str, Any]]:
        return [step.leaf() for step in self.steps]


# ---------------------------------------------------------------------------
# Resources and safety
# ---------------------------------------------------------------------------


class ResourceQuotas(BaseModel):
    """Configured ceilings. Usage may never exceed these."""

    max_concurrency: int = Field(5, ge=0)
    max_memory_mb: int = Field(100, ge=0)
    max_cpu_time_ms: int = Field(60_000, ge=0)
    max_network_requests: int = Field(10, ge=0)


class ResourceUsage(BaseModel):
    """Snapshot of the quota manager's counters, keyed like ResourceQuotas."""

    max_concurrency: int = 0
    max_memory_mb: int = 0
    max_cpu_time_ms: int = 0
    max_network_requests: int = 0


class SafetyViolation(BaseModel):
    """Produced during validation. Never stored beyond the current turn."""

    type: Literal["allowlist", "quota", "sandbox", "idempotency"]
    message: str
    tool_name: str
    details: dict[str, Any] = Field(default_factory=dict)


class SafetyReport(BaseModel):
    violations: list[SafetyViolation] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


class DecisionRecord(BaseModel):
    """Append-only audit entry for one routing+planning+execution outcome."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    input: str
    patterns_matched: list[str] = Field(default_factory=list)
    router_candidates: list[RouterCandidate] = Field(default_factory=list)
    shadow_candidates: list[RouterCandidate] = Field(default_factory=list)
    chosen_tools: list[str] = Field(default_factory=list)
    args: dict[str, Any] = Field(default_factory=dict)
    outcome: Outcome
    latency_ms: float = 0.0
    error: str | None = None
    plan_root: str | None = None
    replay: bool = False
    original_decision_id: str | None = None
    original_outcome: Outcome | None = None


class PerformanceMetrics(BaseModel):
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    throughput_per_minute: float = 0.0


class ToolAccuracy(BaseModel):
    correct: int = 0
    total: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


class ConfusionMatrix(BaseModel):
    pattern_vs_classifier: dict[str, int] = Field(default_factory=dict)
    tool_accuracy: dict[str, ToolAccuracy] = Field(default_factory=dict)
    common_failures: list[tuple[str, int]] = Field(default_factory=list)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


class ReplayStats(BaseModel):
    total_replays: int = 0
    successful_replays: int = 0
    failed_replays: int = 0
    outcome_changes: int = 0


class ObservabilityReport(BaseModel):
    confusion_matrix: ConfusionMatrix
    recent_decisions: list[DecisionRecord]
    replay_stats: ReplayStats


class ReplayOutcome(BaseModel):
    """What a replay function reports back for one re-executed input."""

    outcome: Outcome
    latency_ms: float = 0.0
    error: str | None = None


class ReplayContext(BaseModel):
    decision_id: str
    replay_decision_id: str
    original_input: str
    original_outcome: Outcome
    replay_outcome: Outcome
    replay_timestamp: datetime = Field(default_factory=utcnow)

    @property
    def outcome_changed(self) -> bool:
        return self.original_outcome != self.replay_outcome


# ---------------------------------------------------------------------------
# Built-in tool input/output schemas
# ---------------------------------------------------------------------------


class ReadFileInput(BaseModel):
    file_path: str = Field(..., min_length=1)


class ReadFileOutput(BaseModel):
    content: str
    size: int

    def as_text(self) -> str:
        return self.content


class WriteFileInput(BaseModel):
    file_path: str = Field(..., min_length=1)
    content: str


class WriteFileOutput(BaseModel):
    success: bool
    size: int
    file_path: str

    def as_text(self) -> str:
        return f"Wrote {self.size} bytes to {self.file_path}."


class CodeSearchInput(BaseModel):
    pattern: str = Field(..., min_length=1)
    directory: str = "."
    file_glob: str = "*"
    max_results: int = Field(20, ge=1)


class WebSearchInput(BaseModel):
    query: str = Field(..., min_length=1)
    max_results: int = Field(4, ge=1)


class SearchHit(BaseModel):
    source: str = Field(..., description="File location or URL of the hit.")
    snippet: str
    title: str = ""


class SearchOutput(BaseModel):
    query: str
    hits: list[SearchHit] = Field(default_factory=list)

    def as_text(self) -> str:
        if not self.hits:
            return "No results found."
        return "\n".join(f"{h.source}: {h.snippet}" for h in self.hits)


class HttpRequestInput(BaseModel):
    url: str = Field(..., pattern=r"^https?://")
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    data: str | None = None


class HttpResponseOutput(BaseModel):
    status: int
    data: str

    def as_text(self) -> str:
        return self.data


class CommandInput(BaseModel):
    command: str = Field(..., min_length=1)
    working_directory: str | None = None


class CommandOutput(BaseModel):
    exit_code: int
    output: str
    error: str = ""

    def as_text(self) -> str:
        return self.output


# ---------------------------------------------------------------------------
# Turn state and result
# ---------------------------------------------------------------------------


class AgentState(BaseModel):
    """
    Typed context threaded through a turn.

    Planner data-dependency tags map onto the named fields below. Tags outside
    that vocabulary land in `artifacts`.
    """

    file_content: ReadFileOutput | None = None
    file_written: WriteFileOutput | None = None
    search_results: SearchOutput | None = None
    http_response: HttpResponseOutput | None = None
    command_output: CommandOutput | None = None
    artifacts: dict[str, Any] = Field(default_factory=dict)
    last_decision_id: str | None = None
    decision_history: list[str] = Field(default_factory=list)

    def get_tag(self, tag: str) -> Any:
        if tag in TAG_FIELDS:
            return getattr(self, tag)
        return self.artifacts.get(tag)

    def has_tag(self, tag: str) -> bool:
        return self.get_tag(tag) is not None

    def with_output(self, tags: frozenset[str] | set[str], value: Any) -> "AgentState":
        """Return a copy with `value` stored under every tag in `tags`."""
        update: dict[str, Any] = {}
        artifacts = dict(self.artifacts)
        for tag in sorted(tags):
            if tag in TAG_FIELDS:
                update[tag] = value
            else:
                artifacts[tag] = value
        update["artifacts"] = artifacts
        return self.model_copy(update=update)

    def with_decision(self, decision_id: str) -> "AgentState":
        return self.model_copy(
            update={
                "last_decision_id": decision_id,
                "decision_history": [*self.decision_history, decision_id],
            }
        )


TAG_FIELDS = frozenset(
    {"file_content", "file_written", "search_results", "http_response", "command_output"}
)


class ExecutionResult(BaseModel):
    """Outcome of one orchestrated turn. Always returned, success or not."""

    success: bool
    results: list[Any] = Field(default_factory=list)
    decision_id: str | None = None
    error: str | None = None
    execution_time_ms: float = 0.0
