# errors.py
# Exception hierarchy for the orchestration core.
#
# Planning and safety failures abort a turn before any tool runs. Execution
# failures split into retryable and terminal: anything deriving from
# NonRetryableError is never retried by the policy layer.

from typing import Any


class OrchestratorError(Exception):
    """Base for every error raised by the orchestration core."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

PLANNING_ERROR_KINDS = (
    "missing_args",
    "unsatisfied_precondition",
    "circular_dependency",
    "resource_exceeded",
    "no_operations",
)


class PlanningError(OrchestratorError):
    """Raised when an utterance cannot be turned into an executable plan."""

    def __init__(self, kind: str, message: str, step: Any = None) -> None:
        if kind not in PLANNING_ERROR_KINDS:
            raise ValueError(f"Unknown planning error kind: {kind!r}")
        super().__init__(message, {"kind": kind})
        self.kind = kind
        self.step = step

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------


class SafetyError(OrchestratorError):
    """Raised when pre-execution safety validation produced violations."""

    def __init__(self, violations: list) -> None:
        self.violations = list(violations)
        joined = "; ".join(v.message for v in self.violations) or "unknown violation"
        super().__init__(f"Safety validation failed: {joined}")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ToolExecutionError(OrchestratorError):
    """A tool failed while executing. Retryable unless subclassed as terminal."""

    def __init__(self, tool: str, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context)
        self.tool = tool


class NonRetryableError(ToolExecutionError):
    """Marker base: the policy layer propagates these immediately."""


class ToolValidationError(NonRetryableError):
    """Tool input or output failed schema validation."""


class ToolPermissionError(NonRetryableError):
    """The tool was denied access to a resource."""


class ApprovalRequiredError(NonRetryableError):
    """The approval callback declined a gated tool."""


class CircuitOpenError(NonRetryableError):
    """The tool's circuit breaker rejected the call."""


class SandboxViolationError(NonRetryableError):
    """An argument escaped the sandbox (blocked path, host, or network)."""


class QuotaExceededError(NonRetryableError):
    """A quota reservation was rejected at execution time."""


class IntegrityError(NonRetryableError):
    """A committed plan step no longer matches its Merkle leaf. Always fatal."""


class ToolTimeoutError(ToolExecutionError):
    """A single attempt exceeded the policy timeout."""


class TurnCancelledError(OrchestratorError):
    """The turn's cancellation token fired at a suspension point."""


class ToolNotFoundError(OrchestratorError):
    """A tool name is absent from the catalog."""


class ReplayError(OrchestratorError):
    """A replay could not be started."""
