# orchestrator.py
# Composes catalog, router, planner, safety, policies and observability into
# a single turn:
#
#   route -> plan -> validate -> safety -> commit -> execute steps -> record
#
# Every stage failure becomes a failed ExecutionResult. run_turn() never
# raises for a tool, planning or safety problem; the caller always receives
# (state, result) and exactly one decision record is written.

import asyncio
import dataclasses
import logging
import re
import threading
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from tool_orchestrator.catalog import (
    ApprovalCallback,
    CancellationToken,
    ExecutionContext,
    ToolCatalog,
    ToolDescriptor,
    deny_all,
)
from tool_orchestrator.classifier import Classifier, LLMClassifier
from tool_orchestrator.config import OrchestratorSettings, Policy, default_safety_config
from tool_orchestrator.errors import NonRetryableError, OrchestratorError, SafetyError
from tool_orchestrator.merkle import MerkleTree
from tool_orchestrator.models import (
    AgentState,
    ExecutionResult,
    ObservabilityReport,
    Plan,
    PlanStep,
    ReplayContext,
    ReplayOutcome,
    Risk,
    RouteResult,
)
from tool_orchestrator.observability import ObservabilityManager, ReplayFn
from tool_orchestrator.planner import Planner
from tool_orchestrator.policies import PolicyLayer, default_policy_for_risk
from tool_orchestrator.router import Router
from tool_orchestrator.safety import SafetyManager
from tool_orchestrator.tools import default_catalog

logger = logging.getLogger(__name__)

PolicyResolver = Callable[[Risk], Policy]


def _as_text(value: Any) -> str:
    as_text = getattr(value, "as_text", None)
    if callable(as_text):
        return as_text()
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return str(value)


def bind_references(args: dict[str, Any], tags: frozenset[str], state: AgentState) -> dict[str, Any]:
    """
    Substitute `$tag` and `{tag}` placeholders (or a bare tag as the whole
    value) with the textual form of that tag's current state value.
    """
    available = {tag: _as_text(state.get_tag(tag)) for tag in tags if state.has_tag(tag)}
    if not available:
        return args

    def bind(value: Any) -> Any:
        if not isinstance(value, str):
            return value
        if value.strip() in available:
            return available[value.strip()]
        for tag, text in available.items():
            value = re.sub(rf"\$\b{re.escape(tag)}\b|\{{{re.escape(tag)}\}}", lambda _: text, value)
        return value

    return {key: bind(value) for key, value in args.items()}


@dataclasses.dataclass
class _Turn:
    """Working record of one turn. Whatever was reached before a failure is kept."""

    state: AgentState
    route: RouteResult = dataclasses.field(default_factory=RouteResult)
    plan: Plan | None = None
    tree: MerkleTree | None = None
    results: list[Any] = dataclasses.field(default_factory=list)
    error: str | None = None

    @property
    def chosen_tools(self) -> list[str]:
        if self.plan is not None:
            return [s.tool for s in self.plan.steps]
        return []

    @property
    def args(self) -> dict[str, Any]:
        if self.plan is None:
            return {}
        return {f"{s.tool}_{s.order}": s.args for s in self.plan.steps}


class Orchestrator:
    """Runs one utterance through the full pipeline and records the decision."""

    def __init__(
        self,
        catalog: ToolCatalog,
        router: Router | None = None,
        planner: Planner | None = None,
        safety: SafetyManager | None = None,
        policies: PolicyLayer | None = None,
        observability: ObservabilityManager | None = None,
        approvals: ApprovalCallback = deny_all,
        policy_for: PolicyResolver = default_policy_for_risk,
        max_candidates: int = 2,
    ) -> None:
        self.catalog = catalog
        self.router = router or Router()
        self.planner = planner or Planner()
        self.safety = safety or SafetyManager(default_safety_config())
        self.policies = policies or PolicyLayer()
        self.observability = observability or ObservabilityManager()
        self.approvals = approvals
        self.policy_for = policy_for
        self.max_candidates = max_candidates
        self._wrapped: dict[str, ToolDescriptor] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Wiring helpers
    # ------------------------------------------------------------------

    def _context(self, state: AgentState, cancel: CancellationToken | None) -> ExecutionContext:
        return ExecutionContext(
            state=state,
            approvals=self.approvals,
            quotas=self.safety.config.quotas,
            cancel=cancel or CancellationToken(),
            sandbox=self.safety.sandbox.create_context(),
            quota_manager=self.safety.quotas,
        )

    def _with_policy(self, tool: ToolDescriptor) -> ToolDescriptor:
        """Policy-wrapped descriptor, built once per tool."""
        with self._lock:
            wrapped = self._wrapped.get(tool.name)
            if wrapped is None:
                wrapped = self.policies.with_policy(tool, self.policy_for(tool.risk))
                self._wrapped[tool.name] = wrapped
            return wrapped

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _select_tools(self, route: RouteResult) -> list[ToolDescriptor]:
        tools = []
        for candidate in route.candidates[: self.max_candidates]:
            tool = self.catalog.find(candidate.tool)
            if tool is None:
                logger.warning(f"[Orchestrator] Router suggested unknown tool {candidate.tool!r}")
                continue
            tools.append(tool)
        if not tools:
            raise OrchestratorError("No valid tools found for the given input")
        return tools

    async def _validate_safety(self, plan: Plan, ctx: ExecutionContext) -> None:
        reports = await asyncio.gather(
            *(self.safety.validate(step.descriptor, step.args, ctx) for step in plan.steps)
        )
        violations = [v for report in reports for v in report.violations]
        if violations:
            raise SafetyError(violations)

    async def _execute_step(self, step: PlanStep, ctx: ExecutionContext) -> Any:
        tool: ToolDescriptor = step.descriptor
        wrapped = self._with_policy(tool)
        args = bind_references(step.args, step.consumes, ctx.state)
        if step.consumes and args != step.args:
            # Substituted values come from earlier outputs and were never vetted.
            report = await self.safety.validate(tool, args, ctx)
            if report.violations:
                raise SafetyError(report.violations)

        output = await self.safety.guarded(tool, args, ctx, lambda: wrapped.run(args, ctx))

        for condition in tool.postconditions:
            if not condition.check(ctx.state, output):
                raise NonRetryableError(
                    tool.name,
                    f"Postcondition {condition.name} failed for {tool.name}: {condition.message}",
                )
        return output

    async def _execute(self, state: AgentState, message: str, cancel: CancellationToken | None) -> _Turn:
        turn = _Turn(state=state)
        ctx = self._context(state, cancel)
        try:
            ctx.cancel.raise_if_cancelled()
            turn.route = await asyncio.to_thread(self.router.route, message)
            tools = self._select_tools(turn.route)

            turn.plan = self.planner.plan(message, tools)
            await self.planner.validate(turn.plan, ctx)
            await self._validate_safety(turn.plan, ctx)
            turn.tree = MerkleTree.commit(turn.plan)

            for step in turn.plan.steps:
                ctx.cancel.raise_if_cancelled()
                turn.tree.verify_step(step)
                output = await self._execute_step(step, ctx)
                turn.results.append(output)
                turn.state = turn.state.with_output(step.provides, output)
                ctx = dataclasses.replace(ctx, state=turn.state)
            ctx.cancel.raise_if_cancelled()
        except Exception as exc:
            turn.error = str(exc)
            logger.warning(f"[Orchestrator] Turn failed: {turn.error}")
        return turn

    async def run_turn(
        self, state: AgentState, message: str, cancel: CancellationToken | None = None
    ) -> tuple[AgentState, ExecutionResult]:
        start = time.perf_counter()
        turn = await self._execute(state, message, cancel)
        latency_ms = (time.perf_counter() - start) * 1000

        decision_id = self.observability.record_decision(
            input=message,
            patterns_matched=turn.route.patterns_matched,
            router_candidates=turn.route.candidates,
            shadow_candidates=turn.route.shadow,
            chosen_tools=turn.chosen_tools,
            args=turn.args,
            outcome="fail" if turn.error else "ok",
            latency_ms=latency_ms,
            error=turn.error,
            plan_root=turn.tree.root if turn.tree else None,
        )
        logger.info(
            f"[Orchestrator] {decision_id}: {'fail' if turn.error else 'ok'} "
            f"tools={turn.chosen_tools} in {latency_ms:.1f}ms"
        )

        result = ExecutionResult(
            success=turn.error is None,
            results=turn.results,
            decision_id=decision_id,
            error=turn.error,
            execution_time_ms=latency_ms,
        )
        return turn.state.with_decision(decision_id), result

    # ------------------------------------------------------------------
    # Introspection and replay
    # ------------------------------------------------------------------

    def get_observability_report(self, recent: int = 10) -> ObservabilityReport:
        return self.observability.get_report(recent)

    def get_safety_status(self) -> dict[str, Any]:
        return {**self.safety.status(), "circuit_breakers": self.policies.breaker_states()}

    async def _replay_fn(self, message: str) -> ReplayOutcome:
        start = time.perf_counter()
        turn = await self._execute(AgentState(), message, None)
        return ReplayOutcome(
            outcome="fail" if turn.error else "ok",
            latency_ms=(time.perf_counter() - start) * 1000,
            error=turn.error,
        )

    async def replay(self, decision_id: str, execute: ReplayFn | None = None) -> ReplayContext:
        """Re-run a recorded decision. Defaults to re-executing it against a fresh state."""
        return await self.observability.replay(decision_id, execute or self._replay_fn)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_default_orchestrator(
    settings: OrchestratorSettings | None = None,
    approvals: ApprovalCallback = deny_all,
    catalog: ToolCatalog | None = None,
    classifier: Classifier | None = None,
) -> Orchestrator:
    settings = settings or OrchestratorSettings()
    catalog = catalog or default_catalog()

    if classifier is None and settings.classifier_model and settings.openrouter_api_key:
        classifier = LLMClassifier(
            model=settings.classifier_model,
            tools={tool.name: tool.description for tool in catalog},
            api_key=settings.openrouter_api_key,
        )

    return Orchestrator(
        catalog=catalog,
        router=Router(classifier=classifier, shadow=not isinstance(classifier, LLMClassifier)),
        safety=SafetyManager(settings.safety),
        policies=PolicyLayer(base_delay_ms=settings.retry_base_delay_ms),
        observability=ObservabilityManager(settings.max_decisions),
        approvals=approvals,
    )
