# display.py
# All terminal output for the orchestrator demo.
#
# This module owns presentation entirely. The core modules never format
# strings for humans; they log, and run.py calls named functions here.
#
# Colour language:
#   cyan    incoming requests
#   yellow  safety status
#   green   success
#   red     failures and halts
#   magenta observability

import logging
from typing import Any

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tool_orchestrator.models import ExecutionResult, ObservabilityReport

console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Route the package's loggers through rich."""
    handler = RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger = logging.getLogger("tool_orchestrator")
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _text_of(output: Any) -> str:
    as_text = getattr(output, "as_text", None)
    return as_text() if callable(as_text) else str(output)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


def banner(tools: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Tool Orchestrator[/bold cyan]\n"
            "[dim]Route → Plan → Safety → Policy → Execute → Record[/dim]\n\n"
            f"[dim]Tools :[/dim] [white]{', '.join(tools)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{prompt}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


def turn_result(result: ExecutionResult) -> None:
    console.print()
    if not result.success:
        halt(result.error or "Turn failed")
        console.print(f"[dim]  decision {result.decision_id}[/dim]")
        return

    body = "\n\n".join(_mono(_text_of(r), 400) for r in result.results) or "[dim](no output)[/dim]"
    console.print(
        Panel(
            f"[white]{body}[/white]",
            title=_label("RESULT", "green"),
            subtitle=f"[dim]{result.decision_id} · {result.execution_time_ms:.1f}ms[/dim]",
            border_style="green",
            padding=(1, 2),
        )
    )


def halt(reason: str) -> None:
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Safety and observability
# ---------------------------------------------------------------------------


def safety_status(status: dict[str, Any]) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold yellow", padding=(0, 1))
    table.add_column("Resource", style="yellow")
    table.add_column("In use", justify="right")
    table.add_column("Available", justify="right")
    for resource, used in status["usage"].items():
        table.add_row(resource, str(used), str(status["available"][resource]))

    breakers = status.get("circuit_breakers", {})
    breaker_lines = ", ".join(f"{name}: {snap['state']}" for name, snap in breakers.items()) or "none"
    console.print(
        Panel(
            table,
            title=_label("SAFETY STATUS", "yellow"),
            subtitle=(
                f"[dim]cache entries: {status['idempotency_cache_size']} · "
                f"breakers: {breaker_lines}[/dim]"
            ),
            border_style="yellow",
            padding=(0, 1),
        )
    )


def observability_report(report: ObservabilityReport) -> None:
    console.print()
    console.print(Rule("[magenta]OBSERVABILITY[/magenta]", style="magenta"))
    matrix = report.confusion_matrix
    perf = matrix.performance

    routing = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    routing.add_column("Routing", style="magenta")
    routing.add_column("Count", justify="right")
    for category, count in sorted(matrix.pattern_vs_classifier.items()):
        routing.add_row(category, str(count))
    console.print(routing)

    accuracy = Table(box=box.SIMPLE, show_header=True, header_style="bold magenta", padding=(0, 1))
    accuracy.add_column("Tool", style="bold white")
    accuracy.add_column("OK / Total", justify="right")
    accuracy.add_column("Accuracy", justify="right")
    for tool, stats in sorted(matrix.tool_accuracy.items()):
        accuracy.add_row(tool, f"{stats.correct}/{stats.total}", f"{stats.accuracy:.0%}")
    console.print(accuracy)

    failures = ", ".join(f"{cat} ×{n}" for cat, n in matrix.common_failures) or "none"
    console.print(
        f"  [magenta]Latency[/magenta]  avg {perf.avg_latency_ms:.1f}ms · "
        f"p95 {perf.p95_latency_ms:.1f}ms · p99 {perf.p99_latency_ms:.1f}ms"
    )
    console.print(
        f"  [magenta]Outcome[/magenta]  success {perf.success_rate:.0%} · "
        f"errors {perf.error_rate:.0%} · {perf.throughput_per_minute:.1f}/min"
    )
    console.print(f"  [magenta]Failures[/magenta] {failures}")
    stats = report.replay_stats
    console.print(
        f"  [magenta]Replays[/magenta]  {stats.total_replays} "
        f"({stats.successful_replays} ok, {stats.failed_replays} failed, "
        f"{stats.outcome_changes} changed)"
    )
    console.print()
