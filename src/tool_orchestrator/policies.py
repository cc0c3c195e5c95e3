# policies.py
# Execution policies wrapped around tools: approval, sandbox, circuit breaker,
# per-attempt timeout, retry with backoff.
#
# Wrapping order, outermost first:
#   approval -> sandbox check -> retry loop -> circuit breaker -> timeout -> execute
#
# Approval and sandbox checks run once per call. Every attempt inside the retry
# loop passes through the breaker, so a timed-out attempt counts as a failure.

import asyncio
import dataclasses
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from tool_orchestrator.catalog import ExecutionContext, ToolDescriptor, maybe_await
from tool_orchestrator.config import Backoff, CircuitBreakerConfig, Policy, SandboxConfig
from tool_orchestrator.errors import (
    ApprovalRequiredError,
    CircuitOpenError,
    NonRetryableError,
    SandboxViolationError,
    ToolExecutionError,
    ToolTimeoutError,
    TurnCancelledError,
)
from tool_orchestrator.models import Risk
from tool_orchestrator.safety import SandboxGuard

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_BACKOFF: Backoff = "exponential"
DEFAULT_MAX_BACKOFF_MS = 10_000


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Three-state breaker for a single tool/policy pairing.

    closed     -> failure_threshold consecutive failures -> open
    open       -> recovery_timeout_ms elapsed            -> half_open
    half_open  -> success -> closed, failure -> open
    half_open admits at most half_open_max_calls trial calls.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _admit(self) -> None:
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed_ms = (self._clock() - self._opened_at) * 1000
                if elapsed_ms < self.config.recovery_timeout_ms:
                    raise CircuitOpenError(self.name, f"Circuit breaker is open for {self.name}")
                logger.info(f"[CircuitBreaker] {self.name}: open -> half_open")
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitOpenError(
                        self.name, f"Circuit breaker half-open call limit exceeded for {self.name}"
                    )
                self._half_open_calls += 1

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info(f"[CircuitBreaker] {self.name}: {self._state.value} -> closed")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                if self._state is not CircuitState.OPEN:
                    logger.warning(
                        f"[CircuitBreaker] {self.name}: {self._state.value} -> open "
                        f"after {self._failures} failure(s)"
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        self._admit()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failures": self._failures,
                "half_open_calls": self._half_open_calls,
            }


# ---------------------------------------------------------------------------
# Retry helpers
# ---------------------------------------------------------------------------

_NON_RETRYABLE_MARKERS = (
    "validation",
    "permission",
    "unauthorized",
    "forbidden",
    "circuit breaker",
    "approval required",
)


def calculate_backoff_delay(
    attempt: int,
    base_delay_ms: float,
    strategy: Backoff,
    max_delay_ms: float | None = None,
) -> float:
    """Delay before retry number `attempt` (1-based), in milliseconds."""
    if strategy == "linear":
        delay = base_delay_ms * attempt
    elif strategy == "exponential":
        delay = base_delay_ms * 2 ** (attempt - 1)
    else:
        delay = base_delay_ms
    if max_delay_ms is not None:
        delay = min(delay, max_delay_ms)
    return delay


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (NonRetryableError, TurnCancelledError, PermissionError, ValidationError)):
        return False
    if isinstance(exc, ToolExecutionError):
        return True
    message = str(exc).lower()
    return not any(marker in message for marker in _NON_RETRYABLE_MARKERS)


async def run_with_timeout(fn: Callable[[], Awaitable[Any]], timeout_ms: int, tool: str) -> Any:
    try:
        return await asyncio.wait_for(fn(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise ToolTimeoutError(tool, f"Operation timed out after {timeout_ms}ms") from None


# ---------------------------------------------------------------------------
# PolicyLayer
# ---------------------------------------------------------------------------


class PolicyLayer:
    """
    Applies Policy objects to tool descriptors.

    Owns one CircuitBreaker per (tool, policy) pairing so breaker state
    survives across turns and across repeated wrapping of the same tool.
    """

    def __init__(
        self,
        base_delay_ms: int = 1_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}

    def breaker_for(self, tool_name: str, policy: Policy) -> CircuitBreaker | None:
        if policy.circuit_breaker is None:
            return None
        key = (tool_name, policy.model_dump_json())
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(tool_name, policy.circuit_breaker, self._clock)
                self._breakers[key] = breaker
            return breaker

    def breaker_states(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}

    def with_policy(self, tool: ToolDescriptor, policy: Policy) -> ToolDescriptor:
        """Return a copy of `tool` whose execute() enforces `policy`."""
        breaker = self.breaker_for(tool.name, policy)
        guard = SandboxGuard(policy.sandbox) if policy.sandbox is not None else None
        inner = tool.execute
        timeout_ms = policy.timeout_ms or DEFAULT_TIMEOUT_MS
        max_attempts = (policy.retries or 0) + 1
        strategy = policy.backoff or DEFAULT_BACKOFF
        max_backoff_ms = (
            policy.max_backoff_ms if policy.max_backoff_ms is not None else DEFAULT_MAX_BACKOFF_MS
        )
        base_delay_ms = (
            policy.base_delay_ms if policy.base_delay_ms is not None else self.base_delay_ms
        )

        async def execute(payload: BaseModel, ctx: ExecutionContext) -> BaseModel:
            args = payload.model_dump()

            if policy.require_approval and not await maybe_await(ctx.approvals(tool.name, args)):
                raise ApprovalRequiredError(tool.name, f"Approval required for tool: {tool.name}")

            if guard is not None:
                violations = guard.check(tool, args)
                if violations:
                    raise SandboxViolationError(
                        tool.name,
                        f"Sandbox rejected {tool.name}: " + "; ".join(v.message for v in violations),
                    )
                ctx = dataclasses.replace(ctx, sandbox=policy.sandbox)

            async def attempt_once() -> BaseModel:
                return await run_with_timeout(lambda: inner(payload, ctx), timeout_ms, tool.name)

            async def attempts() -> BaseModel:
                for attempt in range(1, max_attempts + 1):
                    ctx.cancel.raise_if_cancelled()
                    try:
                        if breaker is not None:
                            return await breaker.call(attempt_once)
                        return await attempt_once()
                    except Exception as exc:
                        if not is_retryable(exc) or attempt == max_attempts:
                            raise
                        delay_ms = calculate_backoff_delay(
                            attempt, base_delay_ms, strategy, max_backoff_ms
                        )
                        logger.warning(
                            f"[PolicyLayer] {tool.name} attempt {attempt}/{max_attempts} failed: "
                            f"{exc}; retrying in {delay_ms:.0f}ms"
                        )
                        await ctx.cancel.sleep(delay_ms / 1000)
                raise AssertionError("unreachable")

            # An in-flight attempt is abandoned the moment the turn is cancelled.
            return await ctx.cancel.race(attempts())

        return dataclasses.replace(tool, execute=execute)


# ---------------------------------------------------------------------------
# Policy factories
# ---------------------------------------------------------------------------


def timeout_policy(timeout_ms: int) -> Policy:
    return Policy(timeout_ms=timeout_ms)


def retry_policy(
    retries: int, backoff: Backoff = "exponential", max_backoff_ms: int | None = None
) -> Policy:
    return Policy(retries=retries, backoff=backoff, max_backoff_ms=max_backoff_ms)


def approval_policy() -> Policy:
    return Policy(require_approval=True)


def circuit_breaker_policy(
    failure_threshold: int = 5, recovery_timeout_ms: int = 60_000, half_open_max_calls: int = 3
) -> Policy:
    return Policy(
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout_ms=recovery_timeout_ms,
            half_open_max_calls=half_open_max_calls,
        )
    )


def sandbox_policy(config: SandboxConfig) -> Policy:
    return Policy(sandbox=config)


def merge_policies(*policies: Policy) -> Policy:
    """Later policies override earlier ones field by field. Approval is sticky."""
    merged: dict[str, Any] = {}
    for policy in policies:
        for name, value in policy:
            if name == "require_approval":
                merged[name] = merged.get(name, False) or value
            elif value is not None:
                merged[name] = value
    return Policy(**merged)


def default_policy_for_risk(risk: Risk | str) -> Policy:
    risk = Risk(risk)
    if risk is Risk.LOW:
        return Policy(timeout_ms=5_000, retries=1, backoff="linear")
    if risk is Risk.MEDIUM:
        return Policy(timeout_ms=10_000, retries=2, backoff="exponential", max_backoff_ms=5_000)
    if risk is Risk.HIGH:
        return Policy(
            timeout_ms=30_000,
            retries=3,
            backoff="exponential",
            max_backoff_ms=10_000,
            require_approval=True,
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=3, recovery_timeout_ms=30_000, half_open_max_calls=2
            ),
        )
    return Policy(
        timeout_ms=60_000,
        retries=5,
        backoff="exponential",
        max_backoff_ms=30_000,
        require_approval=True,
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=2, recovery_timeout_ms=60_000, half_open_max_calls=1
        ),
        sandbox=SandboxConfig(max_memory_mb=100, max_cpu_time_ms=30_000, network_access=False),
    )
