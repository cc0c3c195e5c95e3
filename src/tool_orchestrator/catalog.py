# catalog.py
# Tool descriptors and the static registry that owns them.
#
# A ToolDescriptor is immutable once registered. The policy layer never
# mutates one; it derives a wrapped copy with dataclasses.replace().

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from tool_orchestrator.errors import ToolNotFoundError, ToolValidationError, TurnCancelledError
from tool_orchestrator.models import AgentState, Capability, ResourceQuotas, Risk

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[str, dict[str, Any]], bool | Awaitable[bool]]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def deny_all(tool_name: str, args: dict[str, Any]) -> bool:
    """Default approval callback: nothing gated is ever approved."""
    return False


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


class CancellationToken:
    """Single cancellation signal threaded through one turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "Turn cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(self.reason or "Turn cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early (and raising) if the token fires."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def race(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable`, abandoning it as soon as the token fires."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled() and self.cancelled:
            raise TurnCancelledError(self.reason or "Turn cancelled")
        return task.result()


@dataclass
class ExecutionContext:
    state: AgentState
    approvals: ApprovalCallback = deny_all
    quotas: ResourceQuotas = field(default_factory=ResourceQuotas)
    cancel: CancellationToken = field(default_factory=CancellationToken)
    sandbox: Any = None
    quota_manager: Any = None


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Precondition:
    name: str
    check: Callable[[dict[str, Any], ExecutionContext], bool | Awaitable[bool]]
    message: str

    async def holds(self, args: dict[str, Any], ctx: ExecutionContext) -> bool:
        return bool(await maybe_await(self.check(args, ctx)))


@dataclass(frozen=True)
class Postcondition:
    name: str
    check: Callable[[AgentState, Any], bool]
    message: str


def file_exists(arg: str = "file_path") -> Precondition:
    def check(args: dict[str, Any], ctx: ExecutionContext) -> bool:
        path = args.get(arg)
        return bool(path) and Path(path).expanduser().is_file()

    return Precondition("file_exists", check, "File must exist")


def directory_writable(arg: str = "file_path") -> Precondition:
    def check(args: dict[str, Any], ctx: ExecutionContext) -> bool:
        path = args.get(arg)
        if not path:
            return False
        directory = Path(path).expanduser().resolve().parent
        # The directory may be created on write; walk up to the first existing ancestor.
        while not directory.exists() and directory != directory.parent:
            directory = directory.parent
        return os.access(directory, os.W_OK)

    return Precondition("directory_writable", check, "Directory must be writable")


def network_available() -> Precondition:
    def check(args: dict[str, Any], ctx: ExecutionContext) -> bool:
        sandbox = ctx.sandbox
        if sandbox is not None and not getattr(sandbox, "network_access", True):
            return False
        return ctx.quotas.max_network_requests > 0

    return Precondition("network_available", check, "Network must be available")


def within_quota(resource: str, amount: int = 1) -> Precondition:
    def check(args: dict[str, Any], ctx: ExecutionContext) -> bool:
        if ctx.quota_manager is None:
            return amount <= getattr(ctx.quotas, resource)
        return ctx.quota_manager.check(resource, amount)

    return Precondition(f"within_quota_{resource}", check, f"Must be within {resource} quota")


def output_not_empty() -> Postcondition:
    def check(state: AgentState, output: Any) -> bool:
        if output is None:
            return False
        if isinstance(output, (str, list, dict, tuple)):
            return len(output) > 0
        if callable(getattr(output, "as_text", None)):
            return bool(output.as_text().strip())
        if isinstance(output, BaseModel):
            return any(v not in (None, "", [], {}) for v in output.model_dump().values())
        return True

    return Postcondition("output_not_empty", check, "Output must not be empty")


def output_valid(predicate: Callable[[Any], bool]) -> Postcondition:
    return Postcondition(
        "output_valid", lambda state, output: bool(predicate(output)), "Output must be valid"
    )


# ---------------------------------------------------------------------------
# ToolDescriptor
# ---------------------------------------------------------------------------

ExecuteFn = Callable[[BaseModel, ExecutionContext], Awaitable[BaseModel]]
ArgParser = Callable[[str], dict[str, Any] | None]


@dataclass(frozen=True)
class ToolDescriptor:
    """A named, schema-validated capability with declared risk and cost."""

    name: str
    input_schema: type[BaseModel]
    output_schema: type[BaseModel]
    execute: ExecuteFn
    capabilities: frozenset[Capability] = frozenset()
    risk: Risk = Risk.LOW
    time_budget_ms: int = 5_000
    memory_budget_mb: int = 10
    idempotency_key: Callable[[dict[str, Any]], str] | None = None
    idempotent: bool = False
    preconditions: tuple[Precondition, ...] = ()
    postconditions: tuple[Postcondition, ...] = ()
    provides: frozenset[str] = frozenset()
    consumes: frozenset[str] = frozenset()
    arg_parser: ArgParser | None = None
    description: str = ""

    @property
    def caches_results(self) -> bool:
        return self.idempotent or self.idempotency_key is not None

    def has_capability(self, capability: Capability | str) -> bool:
        return Capability(capability) in self.capabilities

    def parse_args(self, clause: str) -> dict[str, Any] | None:
        if self.arg_parser is None:
            return None
        return self.arg_parser(clause)

    def validate_input(self, args: dict[str, Any]) -> BaseModel:
        try:
            return self.input_schema.model_validate(args)
        except ValidationError as exc:
            raise ToolValidationError(
                self.name, f"Input validation failed for {self.name}: {exc}"
            ) from exc

    def validate_output(self, output: Any) -> BaseModel:
        if isinstance(output, self.output_schema):
            return output
        try:
            return self.output_schema.model_validate(output)
        except ValidationError as exc:
            raise ToolValidationError(
                self.name, f"Output validation failed for {self.name}: {exc}"
            ) from exc

    async def run(self, args: dict[str, Any], ctx: ExecutionContext) -> BaseModel:
        """Validate input, execute, validate output."""
        ctx.cancel.raise_if_cancelled()
        payload = self.validate_input(args)
        output = await self.execute(payload, ctx)
        return self.validate_output(output)


# ---------------------------------------------------------------------------
# ToolCatalog
# ---------------------------------------------------------------------------


class ToolCatalog:
    """Static registry of tool descriptors, in registration order."""

    def __init__(self, tools: list[ToolDescriptor] | None = None) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDescriptor) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name!r} is already registered.")
        self._tools[tool.name] = tool
        logger.debug(f"[ToolCatalog] Registered {tool.name} (risk={tool.risk.value})")

    def get(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(f"Tool {name!r} is not in the catalog.") from None

    def find(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def by_capability(self, capability: Capability | str) -> list[ToolDescriptor]:
        return [t for t in self._tools.values() if t.has_capability(capability)]

    def by_risk(self, risk: Risk | str) -> list[ToolDescriptor]:
        return [t for t in self._tools.values() if t.risk == Risk(risk)]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
