# planner.py
# Turns an utterance plus a candidate tool set into an ordered, budgeted Plan.
#
# Planning is pure: the same utterance and tool list always produce the same
# plan. validate() is the only part that touches the outside world, through
# each tool's preconditions.

import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any

from tool_orchestrator.catalog import ExecutionContext, ToolDescriptor
from tool_orchestrator.errors import PlanningError
from tool_orchestrator.grammar import split_clauses
from tool_orchestrator.models import Plan, PlanStep, Risk

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependency inference
# ---------------------------------------------------------------------------


def _string_values(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _string_values(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _string_values(item)


def infer_consumes(args: dict[str, Any], vocabulary: Iterable[str]) -> frozenset[str]:
    """
    Tags from `vocabulary` referenced by an argument value.

    A reference is the tag as a whole word, or as a `$tag` / `{tag}`
    placeholder. Prose that merely mentions the data ("the file contents")
    is not detected, so tools that depend on earlier output should declare
    `consumes` explicitly.
    """
    texts = list(_string_values(args))
    found = set()
    for tag in vocabulary:
        ref = re.compile(rf"(?:\$|\{{)?\b{re.escape(tag)}\b\}}?")
        if any(ref.search(text) for text in texts):
            found.add(tag)
    return frozenset(found)


def resolve_dependencies(steps: Sequence[PlanStep]) -> list[PlanStep]:
    """
    Order steps so every consumed tag is provided by an earlier step.

    Repeated forward passes move every step whose dependencies are met, keeping
    clause order among independent steps.
    """
    all_provided = frozenset().union(*(s.provides for s in steps))
    for step in steps:
        missing = step.consumes - all_provided
        if missing:
            raise PlanningError(
                "missing_args",
                f"No step provides {', '.join(sorted(missing))} required by {step.tool}",
                step,
            )

    resolved: list[PlanStep] = []
    provided: set[str] = set()
    remaining = list(steps)
    while remaining:
        ready = [s for s in remaining if s.consumes <= provided]
        if not ready:
            names = ", ".join(s.tool for s in remaining)
            raise PlanningError(
                "circular_dependency",
                f"Circular dependency detected among: {names}",
                remaining[0],
            )
        for step in ready:
            resolved.append(step)
            provided |= step.provides
        ready_ids = {id(s) for s in ready}
        remaining = [s for s in remaining if id(s) not in ready_ids]

    return [s.model_copy(update={"order": i}) for i, s in enumerate(resolved)]


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def calculate_budgets(steps: Sequence[PlanStep]) -> tuple[int, int]:
    time_ms = sum(s.descriptor.time_budget_ms for s in steps)
    memory_mb = sum(s.descriptor.memory_budget_mb for s in steps)
    return time_ms, memory_mb


def determine_risk_level(steps: Sequence[PlanStep]) -> Risk:
    return max((s.risk for s in steps), key=lambda r: r.rank, default=Risk.LOW)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class Planner:
    """Clause-by-clause planner over the router's candidate tools."""

    def plan(self, utterance: str, available_tools: Sequence[ToolDescriptor]) -> Plan:
        steps: list[PlanStep] = []
        for index, clause in enumerate(split_clauses(utterance)):
            step = self._plan_clause(clause, index, available_tools)
            if step is None:
                logger.debug(f"[Planner] No tool grammar matched clause {clause!r}")
                continue
            steps.append(step)

        if not steps:
            raise PlanningError("no_operations", "No valid operations found in utterance")

        ordered = resolve_dependencies(steps)
        time_ms, memory_mb = calculate_budgets(ordered)
        plan = Plan(
            steps=ordered,
            total_time_budget_ms=time_ms,
            total_memory_budget_mb=memory_mb,
            risk_level=determine_risk_level(ordered),
        )
        logger.info(f"[Planner] {plan.summary()}")
        return plan

    def _plan_clause(
        self, clause: str, index: int, available_tools: Sequence[ToolDescriptor]
    ) -> PlanStep | None:
        for tool in available_tools:
            args = tool.parse_args(clause)
            if args is None:
                continue
            vocabulary = set().union(
                *(other.provides for other in available_tools if other.name != tool.name)
            ) - tool.provides
            return PlanStep(
                tool=tool.name,
                args=args,
                provides=tool.provides,
                consumes=tool.consumes | infer_consumes(args, vocabulary),
                order=index,
                risk=tool.risk,
                clause=clause,
                descriptor=tool,
            )
        return None

    async def validate(self, plan: Plan, ctx: ExecutionContext) -> None:
        """Check aggregate budgets against quotas, then every precondition in step order."""
        quotas = ctx.quotas
        if plan.total_time_budget_ms > quotas.max_cpu_time_ms:
            raise PlanningError(
                "resource_exceeded",
                f"Plan time budget {plan.total_time_budget_ms}ms exceeds "
                f"quota {quotas.max_cpu_time_ms}ms",
            )
        if plan.total_memory_budget_mb > quotas.max_memory_mb:
            raise PlanningError(
                "resource_exceeded",
                f"Plan memory budget {plan.total_memory_budget_mb}MB exceeds "
                f"quota {quotas.max_memory_mb}MB",
            )

        for step in plan.steps:
            for condition in step.descriptor.preconditions:
                if not await condition.holds(step.args, ctx):
                    raise PlanningError(
                        "unsatisfied_precondition",
                        f"Precondition {condition.name} failed for {step.tool}: {condition.message}",
                        step,
                    )
