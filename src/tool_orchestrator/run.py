# run.py
# Entry point. Config and wiring only, no logic lives here.
#
# Set TOOL_ORCH_CLASSIFIER_MODEL and OPENROUTER_API_KEY to let an
# OpenRouter-hosted model classify prompts that no pattern rule covers.
# https://openrouter.ai/models

import asyncio

from tool_orchestrator import display
from tool_orchestrator.config import OrchestratorSettings
from tool_orchestrator.models import AgentState
from tool_orchestrator.orchestrator import build_default_orchestrator

PROMPTS = [
    # Two independent low-risk steps: read, then search the working tree.
    "read pyproject.toml and search for dependencies",

    # No pattern rule fires; the linear classifier picks code_search.
    "find all TODO",

    # High-risk write. The demo denies every approval, so this halts.
    "write 'orchestrator demo' to ./notes/demo.txt",

    # Path outside the allowlist, rejected before anything runs.
    "read /etc/ld.so.conf",
]


async def _run(prompts: list[str]) -> None:
    settings = OrchestratorSettings.from_env()
    display.setup_logging(settings.log_level)
    orchestrator = build_default_orchestrator(settings)
    display.banner(orchestrator.catalog.names())

    state = AgentState()
    for prompt in prompts:
        display.prompt_received(prompt)
        state, result = await orchestrator.run_turn(state, prompt)
        display.turn_result(result)

    display.safety_status(orchestrator.get_safety_status())
    display.observability_report(orchestrator.get_observability_report())


def main() -> None:
    asyncio.run(_run(PROMPTS))


if __name__ == "__main__":
    main()
