# safety.py
# Pre-execution safety checks and the shared guards a turn executes under.
#
#   AllowlistChecker      structural allowlists (paths, hosts, commands, capabilities)
#   IdempotencyCache      TTL cache of results for idempotent tools
#   ResourceQuotaManager  concurrency / memory / cpu / network counters
#   SandboxGuard          blocked and allowed path prefixes, network gate
#
# SafetyManager composes the four. Cache, counters and locks live for the
# process lifetime and are shared across turns.

import asyncio
import hashlib
import logging
import posixpath
import threading
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
from urllib.parse import urlparse

from tool_orchestrator.catalog import ExecutionContext, ToolDescriptor
from tool_orchestrator.config import AllowlistConfig, IdempotencyConfig, SafetyConfig, SandboxConfig
from tool_orchestrator.errors import QuotaExceededError
from tool_orchestrator.merkle import canonical_json
from tool_orchestrator.models import (
    Capability,
    ResourceQuotas,
    ResourceUsage,
    SafetyReport,
    SafetyViolation,
)

logger = logging.getLogger(__name__)

PATH_ARGS = ("file_path", "path", "directory", "working_directory")
NETWORK_CAPABILITIES = frozenset({Capability.NET_HTTP, Capability.NET_WEBSOCKET})


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------


def normalize_path(path: str) -> str:
    """
    Collapse `.` and `..` segments and give relative paths a `./` prefix.

    Paths that climb out of the working directory keep their leading `..`,
    so they never match a `./*` pattern.
    """
    if path.startswith("~"):
        return path
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized.startswith("/") or normalized.startswith(".."):
        return normalized
    if normalized == ".":
        return "./"
    return "./" + normalized


def match_path(path: str, pattern: str) -> bool:
    if pattern.endswith("*"):
        return path.startswith(pattern[:-1])
    return path == pattern or path.startswith(pattern.rstrip("/") + "/")


def match_host(host: str, pattern: str) -> bool:
    if pattern.startswith("*."):
        return host.endswith(pattern[1:])
    return host == pattern


def _path_args(args: dict[str, Any]) -> list[tuple[str, str]]:
    return [(k, args[k]) for k in PATH_ARGS if isinstance(args.get(k), str) and args[k]]


# ---------------------------------------------------------------------------
# AllowlistChecker
# ---------------------------------------------------------------------------


class AllowlistChecker:
    def __init__(self, config: AllowlistConfig) -> None:
        self.config = config

    def check_file_path(self, path: str) -> bool:
        if self.config.file_paths is None:
            return True
        normalized = normalize_path(path)
        return any(match_path(normalized, allowed) for allowed in self.config.file_paths)

    def check_network_host(self, host: str) -> bool:
        if self.config.network_hosts is None:
            return True
        return any(match_host(host, allowed) for allowed in self.config.network_hosts)

    def check_command(self, command: str) -> bool:
        if self.config.commands is None:
            return True
        parts = command.strip().split()
        return bool(parts) and parts[0] in self.config.commands

    def check_capability(self, capability: str) -> bool:
        if self.config.capabilities is None:
            return True
        return capability in self.config.capabilities

    def validate_tool(self, tool: ToolDescriptor, args: dict[str, Any]) -> list[SafetyViolation]:
        violations: list[SafetyViolation] = []

        def violation(message: str, **details: Any) -> None:
            violations.append(
                SafetyViolation(type="allowlist", message=message, tool_name=tool.name, details=details)
            )

        for cap in sorted(c.value for c in tool.capabilities):
            if not self.check_capability(cap):
                violation(f"Capability '{cap}' not allowed", capability=cap)

        for key, path in _path_args(args):
            if not self.check_file_path(path):
                violation(f"File path '{path}' not allowed", **{key: path})

        url = args.get("url")
        if isinstance(url, str) and url:
            host = urlparse(url).hostname
            if not host:
                violation(f"Invalid URL '{url}'", url=url)
            elif not self.check_network_host(host):
                violation(f"Network host '{host}' not allowed", host=host, url=url)

        command = args.get("command")
        if isinstance(command, str) and not self.check_command(command):
            violation(f"Command '{command}' not allowed", command=command)

        return violations


# ---------------------------------------------------------------------------
# IdempotencyCache
# ---------------------------------------------------------------------------


class IdempotencyCache:
    """Result cache keyed by tool + arguments. Expired entries are evicted on read."""

    def __init__(self, config: IdempotencyConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Any, float]] = {}

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def key_for(self, tool: ToolDescriptor, args: dict[str, Any]) -> str:
        if tool.idempotency_key is not None:
            return tool.idempotency_key(args)
        digest = hashlib.sha256(canonical_json(args).encode("utf-8")).hexdigest()
        return f"{tool.name}:{digest}"

    def _expired(self, stored_at: float, now: float) -> bool:
        ttl = self.config.ttl_ms
        return ttl is not None and (now - stored_at) * 1000 > ttl

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._expired(stored_at, self._clock()):
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (value, self._clock())

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (_, stored_at) in self._entries.items() if self._expired(stored_at, now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# ResourceQuotaManager
# ---------------------------------------------------------------------------

QUOTA_RESOURCES = ("max_concurrency", "max_memory_mb", "max_cpu_time_ms", "max_network_requests")


class ResourceQuotaManager:
    """
    Counters bounded by ResourceQuotas.

    reserve() checks and increments under one lock acquisition, and a rejected
    reservation leaves every counter untouched.
    """

    def __init__(self, quotas: ResourceQuotas) -> None:
        self.quotas = quotas
        self._lock = threading.Lock()
        self._usage = dict.fromkeys(QUOTA_RESOURCES, 0)

    def _fits(self, resource: str, amount: int) -> bool:
        return self._usage[resource] + amount <= getattr(self.quotas, resource)

    def check(self, resource: str, amount: int) -> bool:
        with self._lock:
            return self._fits(resource, amount)

    def reserve(self, resource: str, amount: int) -> bool:
        return self.reserve_many({resource: amount}) is None

    def reserve_many(self, amounts: dict[str, int]) -> str | None:
        """Reserve all or nothing. Returns the first resource that did not fit, else None."""
        with self._lock:
            for resource, amount in amounts.items():
                if not self._fits(resource, amount):
                    return resource
            for resource, amount in amounts.items():
                self._usage[resource] += amount
        return None

    def release(self, resource: str, amount: int) -> None:
        with self._lock:
            self._usage[resource] = max(0, self._usage[resource] - amount)

    def release_many(self, amounts: dict[str, int]) -> None:
        for resource, amount in amounts.items():
            self.release(resource, amount)

    def usage(self) -> ResourceUsage:
        with self._lock:
            return ResourceUsage(**self._usage)

    def available(self, resource: str) -> int:
        with self._lock:
            return getattr(self.quotas, resource) - self._usage[resource]

    def reset(self) -> None:
        with self._lock:
            self._usage = dict.fromkeys(QUOTA_RESOURCES, 0)

    @staticmethod
    def demand(tool: ToolDescriptor) -> dict[str, int]:
        amounts = {
            "max_concurrency": 1,
            "max_memory_mb": tool.memory_budget_mb,
            "max_cpu_time_ms": tool.time_budget_ms,
        }
        if tool.capabilities & NETWORK_CAPABILITIES:
            amounts["max_network_requests"] = 1
        return amounts

    @asynccontextmanager
    async def reservation(self, tool: ToolDescriptor) -> AsyncIterator[dict[str, int]]:
        amounts = self.demand(tool)
        rejected = self.reserve_many(amounts)
        if rejected is not None:
            raise QuotaExceededError(
                tool.name,
                f"Quota exceeded for {rejected} while starting {tool.name}",
                {"resource": rejected, "requested": amounts[rejected]},
            )
        try:
            yield amounts
        finally:
            self.release_many(amounts)


# ---------------------------------------------------------------------------
# SandboxGuard
# ---------------------------------------------------------------------------


class SandboxGuard:
    def __init__(self, config: SandboxConfig) -> None:
        self.config = config

    @property
    def network_access(self) -> bool:
        return self.config.network_access

    def validate_path(self, path: str) -> bool:
        """Blocked prefixes win over allowed ones."""
        normalized = normalize_path(path)
        for blocked in self.config.blocked_paths:
            if match_path(normalized, blocked) or match_path(path, blocked):
                return False
        if self.config.allowed_paths is None:
            return True
        return any(match_path(normalized, allowed) for allowed in self.config.allowed_paths)

    def validate_host(self, host: str) -> bool:
        if not self.config.network_access:
            return False
        if self.config.allowed_hosts is None:
            return True
        return any(match_host(host, allowed) for allowed in self.config.allowed_hosts)

    def check(self, tool: ToolDescriptor, args: dict[str, Any]) -> list[SafetyViolation]:
        violations: list[SafetyViolation] = []

        def violation(message: str, **details: Any) -> None:
            violations.append(
                SafetyViolation(type="sandbox", message=message, tool_name=tool.name, details=details)
            )

        for key, path in _path_args(args):
            if not self.validate_path(path):
                violation(f"Path '{path}' is outside the sandbox", **{key: path})

        if tool.capabilities & NETWORK_CAPABILITIES and not self.config.network_access:
            violation(f"Network access is disabled for {tool.name}")
        else:
            url = args.get("url")
            host = urlparse(url).hostname if isinstance(url, str) else None
            if host and not self.validate_host(host):
                violation(f"Host '{host}' is not allowed in the sandbox", host=host)

        return violations

    def create_context(self) -> SandboxConfig:
        return self.config.model_copy(deep=True)


# ---------------------------------------------------------------------------
# SafetyManager
# ---------------------------------------------------------------------------


class SafetyManager:
    def __init__(self, config: SafetyConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.allowlist = AllowlistChecker(config.allowlists)
        self.idempotency = IdempotencyCache(config.idempotency, clock)
        self.quotas = ResourceQuotaManager(config.quotas)
        self.sandbox = SandboxGuard(config.sandbox)

    async def _check_allowlist(self, tool: ToolDescriptor, args: dict[str, Any]) -> list[SafetyViolation]:
        return self.allowlist.validate_tool(tool, args)

    async def _check_quota(self, tool: ToolDescriptor, args: dict[str, Any]) -> list[SafetyViolation]:
        violations = []
        for resource, amount in ResourceQuotaManager.demand(tool).items():
            if not self.quotas.check(resource, amount):
                violations.append(
                    SafetyViolation(
                        type="quota",
                        message=f"Quota {resource} exceeded",
                        tool_name=tool.name,
                        details={"quota": resource, "requested": amount},
                    )
                )
        return violations

    async def _check_sandbox(self, tool: ToolDescriptor, args: dict[str, Any]) -> list[SafetyViolation]:
        return self.sandbox.check(tool, args)

    async def _check_idempotency(self, tool: ToolDescriptor, args: dict[str, Any]) -> list[SafetyViolation]:
        if not (tool.caches_results and self.idempotency.enabled):
            return []
        try:
            self.idempotency.key_for(tool, args)
        except Exception as exc:
            return [
                SafetyViolation(
                    type="idempotency",
                    message=f"Cannot derive idempotency key: {exc}",
                    tool_name=tool.name,
                )
            ]
        return []

    async def validate(
        self, tool: ToolDescriptor, args: dict[str, Any], ctx: ExecutionContext | None = None
    ) -> SafetyReport:
        """Run every check concurrently and merge their violations."""
        results = await asyncio.gather(
            self._check_allowlist(tool, args),
            self._check_quota(tool, args),
            self._check_sandbox(tool, args),
            self._check_idempotency(tool, args),
        )
        report = SafetyReport(violations=[v for batch in results for v in batch])
        if not report.valid:
            logger.warning(
                f"[SafetyManager] {tool.name}: {len(report.violations)} violation(s): "
                + "; ".join(v.message for v in report.violations)
            )
        return report

    async def guarded(
        self,
        tool: ToolDescriptor,
        args: dict[str, Any],
        ctx: ExecutionContext,
        run: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Serve a live cached result, or reserve quota, run, and cache on success."""
        key = None
        if tool.caches_results and self.idempotency.enabled:
            key = self.idempotency.key_for(tool, args)
            cached = self.idempotency.get(key)
            if cached is not None:
                logger.info(f"[SafetyManager] {tool.name}: idempotency cache hit")
                return cached

        async with self.quotas.reservation(tool):
            result = await run()

        if key is not None:
            self.idempotency.put(key, result)
        return result

    def status(self) -> dict[str, Any]:
        return {
            "usage": self.quotas.usage().model_dump(),
            "available": {r: self.quotas.available(r) for r in QUOTA_RESOURCES},
            "idempotency_cache_size": len(self.idempotency),
        }
