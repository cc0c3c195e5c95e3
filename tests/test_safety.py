import dataclasses

import pytest

from tool_orchestrator.catalog import ExecutionContext
from tool_orchestrator.config import (
    AllowlistConfig,
    IdempotencyConfig,
    SafetyConfig,
    SandboxConfig,
    default_safety_config,
)
from tool_orchestrator.errors import QuotaExceededError
from tool_orchestrator.models import AgentState, ResourceQuotas
from tool_orchestrator.safety import (
    AllowlistChecker,
    IdempotencyCache,
    ResourceQuotaManager,
    SafetyManager,
    SandboxGuard,
    normalize_path,
)
from tool_orchestrator.tools import EXECUTE_COMMAND, HTTP_REQUEST, READ_FILE, WRITE_FILE


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("config.json", "./config.json"),
        ("./a/../b.txt", "./b.txt"),
        ("../secret", "../secret"),
        ("/tmp//x", "/tmp/x"),
        ("~/notes", "~/notes"),
        (".", "./"),
    ],
)
def test_normalize_path(raw, expected):
    assert normalize_path(raw) == expected

# ---------------------------------------------------------------------------
# AllowlistChecker
# ---------------------------------------------------------------------------

def _allowlist():
    return AllowlistChecker(default_safety_config().allowlists)

def test_allowlist_paths():
    checker = _allowlist()
    assert checker.check_file_path("config.json") is True
    assert checker.check_file_path("/tmp/out.txt") is True
    assert checker.check_file_path("/etc/passwd") is False
    assert checker.check_file_path("../outside.txt") is False

def test_allowlist_hosts_and_commands():
    checker = _allowlist()
    assert checker.check_network_host("api.github.com") is True
    assert checker.check_network_host("html.duckduckgo.com") is True
    assert checker.check_network_host("example.com") is False
    assert checker.check_command("ls -la") is True
    assert checker.check_command("rm -rf /") is False
    assert checker.check_command("   ") is False

def test_allowlist_none_means_unrestricted():
    checker = AllowlistChecker(AllowlistConfig())
    assert checker.validate_tool(EXECUTE_COMMAND, {"command": "rm -rf /"}) == []

def test_allowlist_validate_tool_messages():
    checker = _allowlist()

    violations = checker.validate_tool(EXECUTE_COMMAND, {"command": "rm x"})
    assert [v.message for v in violations] == [
        "Capability 'shell.exec' not allowed",
        "Command 'rm x' not allowed",
    ]
    assert all(v.type == "allowlist" for v in violations)

    violations = checker.validate_tool(HTTP_REQUEST, {"url": "https://evil.example/x"})
    assert [v.message for v in violations] == ["Network host 'evil.example' not allowed"]

# ---------------------------------------------------------------------------
# IdempotencyCache
# ---------------------------------------------------------------------------

def test_cache_key_is_stable_and_order_independent():
    cache = IdempotencyCache(IdempotencyConfig())
    first = cache.key_for(READ_FILE, {"file_path": "a.txt", "x": 1})
    second = cache.key_for(READ_FILE, {"x": 1, "file_path": "a.txt"})

    assert first == second
    assert first.startswith("read_file:")
    assert cache.key_for(READ_FILE, {"file_path": "b.txt"}) != first

def test_cache_uses_tool_key_function():
    key = IdempotencyCache(IdempotencyConfig()).key_for(
        WRITE_FILE, {"file_path": "a.txt", "content": "hi"}
    )
    assert key.startswith("write_file:a.txt:")

def test_cache_entries_expire():
    clock = FakeClock()
    cache = IdempotencyCache(IdempotencyConfig(ttl_ms=1_000), clock)
    cache.put("k", "v")

    clock.advance(0.5)
    assert cache.get("k") == "v"

    clock.advance(0.6)
    assert cache.get("k") is None
    assert len(cache) == 0

def test_cache_clear_expired():
    clock = FakeClock()
    cache = IdempotencyCache(IdempotencyConfig(ttl_ms=1_000), clock)
    cache.put("old", 1)
    clock.advance(2)
    cache.put("new", 2)

    assert cache.clear_expired() == 1
    assert len(cache) == 1

def test_cache_without_ttl_never_expires():
    clock = FakeClock()
    cache = IdempotencyCache(IdempotencyConfig(ttl_ms=None), clock)
    cache.put("k", "v")
    clock.advance(10_000)
    assert cache.get("k") == "v"

def test_disabled_cache_stores_nothing():
    cache = IdempotencyCache(IdempotencyConfig(enabled=False))
    cache.put("k", "v")
    assert cache.get("k") is None
    assert len(cache) == 0

# ---------------------------------------------------------------------------
# ResourceQuotaManager
# ---------------------------------------------------------------------------

def test_reserve_and_release():
    quotas = ResourceQuotaManager(ResourceQuotas(max_concurrency=2))

    assert quotas.reserve("max_concurrency", 2) is True
    assert quotas.reserve("max_concurrency", 1) is False
    assert quotas.usage().max_concurrency == 2

    quotas.release("max_concurrency", 5)
    assert quotas.usage().max_concurrency == 0
    assert quotas.available("max_concurrency") == 2

def test_reserve_many_is_all_or_nothing():
    quotas = ResourceQuotaManager(ResourceQuotas(max_concurrency=5, max_memory_mb=10))

    rejected = quotas.reserve_many({"max_concurrency": 1, "max_memory_mb": 11})

    assert rejected == "max_memory_mb"
    assert quotas.usage().max_concurrency == 0

def test_demand_adds_network_for_network_tools():
    assert "max_network_requests" not in ResourceQuotaManager.demand(READ_FILE)
    assert ResourceQuotaManager.demand(HTTP_REQUEST)["max_network_requests"] == 1

@pytest.mark.asyncio
async def test_reservation_releases_on_exit_and_error():
    quotas = ResourceQuotaManager(ResourceQuotas())

    async with quotas.reservation(READ_FILE) as amounts:
        assert amounts["max_memory_mb"] == 10
        assert quotas.usage().max_concurrency == 1
    assert quotas.usage().max_concurrency == 0

    with pytest.raises(RuntimeError):
        async with quotas.reservation(READ_FILE):
            raise RuntimeError("boom")
    assert quotas.usage().model_dump() == dict.fromkeys(quotas.usage().model_dump(), 0)

@pytest.mark.asyncio
async def test_reservation_rejected_when_exhausted():
    quotas = ResourceQuotaManager(ResourceQuotas(max_network_requests=0))

    with pytest.raises(QuotaExceededError, match="Quota exceeded for max_network_requests"):
        async with quotas.reservation(HTTP_REQUEST):
            pass
    assert quotas.usage().max_concurrency == 0

# ---------------------------------------------------------------------------
# SandboxGuard
# ---------------------------------------------------------------------------

def test_blocked_paths_win_over_allowed():
    guard = SandboxGuard(SandboxConfig(allowed_paths=["/etc/*"], blocked_paths=["/etc"]))
    assert guard.validate_path("/etc/hosts") is False

def test_sandbox_default_config_paths():
    guard = SandboxGuard(default_safety_config().sandbox)
    assert guard.validate_path("notes/a.txt") is True
    assert guard.validate_path("/tmp/a.txt") is True
    assert guard.validate_path("~/.ssh/id_rsa") is False
    assert guard.validate_path("/usr/bin/env") is False

def test_sandbox_host_rules():
    guard = SandboxGuard(SandboxConfig(allowed_hosts=["*.github.com"]))
    assert guard.validate_host("api.github.com") is True
    assert guard.validate_host("example.com") is False
    assert SandboxGuard(SandboxConfig(network_access=False)).validate_host("api.github.com") is False

def test_sandbox_create_context_is_a_copy():
    config = SandboxConfig(blocked_paths=["/etc"])
    context = SandboxGuard(config).create_context()
    context.blocked_paths.append("/usr")
    assert config.blocked_paths == ["/etc"]

# ---------------------------------------------------------------------------
# SafetyManager
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_validate_passes_for_allowed_read():
    report = await SafetyManager(default_safety_config()).validate(
        READ_FILE, {"file_path": "config.json"}
    )
    assert report.valid
    assert report.violations == []

@pytest.mark.asyncio
async def test_validate_collects_every_violation_type():
    config = default_safety_config().model_copy(
        update={"quotas": ResourceQuotas(max_memory_mb=1)}
    )
    report = await SafetyManager(config).validate(READ_FILE, {"file_path": "/etc/passwd"})

    assert not report.valid
    assert {v.type for v in report.violations} == {"allowlist", "quota", "sandbox"}
    assert "Quota max_memory_mb exceeded" in [v.message for v in report.violations]

@pytest.mark.asyncio
async def test_validate_reports_unkeyable_arguments():
    def broken_key(args):
        raise KeyError("file_path")

    tool = dataclasses.replace(WRITE_FILE, idempotency_key=broken_key)
    report = await SafetyManager(SafetyConfig()).validate(tool, {})

    assert [v.type for v in report.violations] == ["idempotency"]
    assert report.violations[0].message.startswith("Cannot derive idempotency key")

@pytest.mark.asyncio
async def test_guarded_serves_cached_result_within_ttl():
    clock = FakeClock()
    manager = SafetyManager(SafetyConfig(idempotency=IdempotencyConfig(ttl_ms=1_000)), clock)
    ctx = ExecutionContext(state=AgentState())
    runs = []

    async def run():
        runs.append(1)
        return f"result {len(runs)}"

    args = {"file_path": "a.txt"}
    assert await manager.guarded(READ_FILE, args, ctx, run) == "result 1"
    assert await manager.guarded(READ_FILE, args, ctx, run) == "result 1"
    assert len(runs) == 1

    clock.advance(2)
    assert await manager.guarded(READ_FILE, args, ctx, run) == "result 2"

@pytest.mark.asyncio
async def test_guarded_does_not_cache_plain_tools_or_failures():
    manager = SafetyManager(SafetyConfig())
    ctx = ExecutionContext(state=AgentState())
    runs = []

    async def run():
        runs.append(1)
        return "ok"

    await manager.guarded(EXECUTE_COMMAND, {"command": "ls"}, ctx, run)
    await manager.guarded(EXECUTE_COMMAND, {"command": "ls"}, ctx, run)
    assert len(runs) == 2

    async def fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await manager.guarded(READ_FILE, {"file_path": "a.txt"}, ctx, fail)
    assert len(manager.idempotency) == 0
    assert manager.status()["usage"]["max_concurrency"] == 0

def test_status_shape():
    status = SafetyManager(default_safety_config()).status()
    assert status["available"]["max_concurrency"] == 5
    assert status["idempotency_cache_size"] == 0
    assert set(status["usage"]) == set(status["available"])
