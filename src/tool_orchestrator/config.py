# config.py
# Configuration contracts and environment loading.
#
# Quotas, allowlists, sandbox bounds and execution policies are plain pydantic
# models. OrchestratorSettings.from_env() is the only place the process
# environment is read.

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from tool_orchestrator.models import ResourceQuotas

ENV_PREFIX = "TOOL_ORCH_"

Backoff = Literal["none", "linear", "exponential"]


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------


class AllowlistConfig(BaseModel):
    """Structural allowlists. None means unrestricted for that dimension."""

    file_paths: list[str] | None = None
    network_hosts: list[str] | None = None
    commands: list[str] | None = None
    capabilities: list[str] | None = None


class IdempotencyConfig(BaseModel):
    enabled: bool = True
    ttl_ms: int | None = Field(300_000, ge=0, description="None disables expiry.")


class SandboxConfig(BaseModel):
    """Path and network bounds for sandboxed execution."""

    working_directory: str | None = None
    allowed_paths: list[str] | None = None
    blocked_paths: list[str] = Field(default_factory=list)
    max_memory_mb: int | None = None
    max_cpu_time_ms: int | None = None
    network_access: bool = True
    allowed_hosts: list[str] | None = None


class SafetyConfig(BaseModel):
    allowlists: AllowlistConfig = Field(default_factory=AllowlistConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    quotas: ResourceQuotas = Field(default_factory=ResourceQuotas)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)


def default_safety_config() -> SafetyConfig:
    return SafetyConfig(
        allowlists=AllowlistConfig(
            file_paths=["./*", "/tmp/*"],
            network_hosts=["api.github.com", "*.openai.com", "*.duckduckgo.com"],
            commands=["ls", "cat", "grep", "find", "echo"],
            capabilities=["fs.read", "fs.write", "net.http"],
        ),
        idempotency=IdempotencyConfig(enabled=True, ttl_ms=300_000),
        quotas=ResourceQuotas(
            max_concurrency=5,
            max_memory_mb=100,
            max_cpu_time_ms=60_000,
            max_network_requests=10,
        ),
        sandbox=SandboxConfig(
            working_directory=".",
            allowed_paths=["./*", "/tmp/*"],
            blocked_paths=["/etc", "/usr", "/bin", "/sbin", "/root", "~"],
            max_memory_mb=50,
            max_cpu_time_ms=30_000,
            network_access=True,
        ),
    )


def strict_safety_config() -> SafetyConfig:
    return SafetyConfig(
        allowlists=AllowlistConfig(
            file_paths=["/tmp/tool-orchestrator/*"],
            network_hosts=[],
            commands=["echo"],
            capabilities=["fs.read"],
        ),
        idempotency=IdempotencyConfig(enabled=True, ttl_ms=60_000),
        quotas=ResourceQuotas(
            max_concurrency=1,
            max_memory_mb=10,
            max_cpu_time_ms=5_000,
            max_network_requests=0,
        ),
        sandbox=SandboxConfig(
            working_directory="/tmp/tool-orchestrator",
            allowed_paths=["/tmp/tool-orchestrator/*"],
            blocked_paths=["/etc", "/usr", "/bin", "/sbin", "/root"],
            max_memory_mb=10,
            max_cpu_time_ms=5_000,
            network_access=False,
        ),
    )


# ---------------------------------------------------------------------------
# Execution policy
# ---------------------------------------------------------------------------


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(5, ge=1)
    recovery_timeout_ms: int = Field(60_000, ge=0)
    half_open_max_calls: int = Field(3, ge=1)


class Policy(BaseModel):
    """Execution policy applied around a tool by the policy layer."""

    model_config = ConfigDict(frozen=True)

    timeout_ms: int | None = Field(None, gt=0)
    retries: int | None = Field(None, ge=0)
    backoff: Backoff | None = None
    max_backoff_ms: int | None = Field(None, ge=0)
    base_delay_ms: int | None = Field(None, ge=0)
    require_approval: bool = False
    circuit_breaker: CircuitBreakerConfig | None = None
    sandbox: SandboxConfig | None = None


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------


class OrchestratorSettings(BaseModel):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    max_decisions: int = Field(10_000, ge=1)
    retry_base_delay_ms: int = Field(1_000, ge=0)
    classifier_model: str | None = None
    openrouter_api_key: str | None = Field(None, repr=False)
    safety: SafetyConfig = Field(default_factory=default_safety_config)

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """Build settings from the environment (and a .env file, if present)."""
        load_dotenv()
        env = os.environ
        safety = default_safety_config()

        quota_overrides = {
            "max_concurrency": env.get(f"{ENV_PREFIX}MAX_CONCURRENCY"),
            "max_memory_mb": env.get(f"{ENV_PREFIX}MAX_MEMORY_MB"),
            "max_cpu_time_ms": env.get(f"{ENV_PREFIX}MAX_CPU_TIME_MS"),
            "max_network_requests": env.get(f"{ENV_PREFIX}MAX_NETWORK_REQUESTS"),
        }
        quotas = safety.quotas.model_dump()
        quotas.update({k: v for k, v in quota_overrides.items() if v is not None})

        idempotency = safety.idempotency.model_dump()
        ttl = env.get(f"{ENV_PREFIX}IDEMPOTENCY_TTL_MS")
        if ttl is not None:
            idempotency["ttl_ms"] = ttl

        safety = safety.model_copy(
            update={
                "quotas": ResourceQuotas.model_validate(quotas),
                "idempotency": IdempotencyConfig.model_validate(idempotency),
            }
        )

        fields = {
            "log_level": env.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper(),
            "max_decisions": env.get(f"{ENV_PREFIX}MAX_DECISIONS", 10_000),
            "retry_base_delay_ms": env.get(f"{ENV_PREFIX}RETRY_BASE_DELAY_MS", 1_000),
            "classifier_model": env.get(f"{ENV_PREFIX}CLASSIFIER_MODEL") or None,
            "openrouter_api_key": env.get("OPENROUTER_API_KEY") or None,
            "safety": safety,
        }
        return cls.model_validate(fields)
