# tools.py
# Built-in tool implementations and the default catalog.
# The orchestrator reaches these only through default_catalog(); nothing else
# calls the _exec_* functions directly.

import asyncio
import hashlib
import logging
import os
import re
from pathlib import Path

from tool_orchestrator import grammar
from tool_orchestrator.catalog import (
    ExecutionContext,
    ToolCatalog,
    ToolDescriptor,
    directory_writable,
    file_exists,
    network_available,
    output_not_empty,
    within_quota,
)
from tool_orchestrator.errors import NonRetryableError, ToolExecutionError, ToolPermissionError
from tool_orchestrator.models import (
    Capability,
    CodeSearchInput,
    CommandInput,
    CommandOutput,
    HttpRequestInput,
    HttpResponseOutput,
    ReadFileInput,
    ReadFileOutput,
    Risk,
    SearchHit,
    SearchOutput,
    WebSearchInput,
    WriteFileInput,
    WriteFileOutput,
)

logger = logging.getLogger(__name__)

MAX_SEARCH_FILE_BYTES = 1_000_000
MAX_RESPONSE_CHARS = 100_000
SKIP_DIRS = frozenset({".git", ".hg", ".svn", "__pycache__", "node_modules", ".venv", "venv", ".tox"})


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


def _raise_os_error(tool: str, path: str, exc: OSError) -> None:
    if isinstance(exc, PermissionError):
        raise ToolPermissionError(tool, f"Permission denied: {path}") from exc
    if isinstance(exc, (FileNotFoundError, IsADirectoryError, NotADirectoryError)):
        raise NonRetryableError(tool, f"{exc.strerror or 'Invalid path'}: {path}") from exc
    raise ToolExecutionError(tool, f"I/O error on {path}: {exc}") from exc


async def _exec_read_file(payload: ReadFileInput, ctx: ExecutionContext) -> ReadFileOutput:
    path = Path(payload.file_path).expanduser()
    try:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
    except OSError as exc:
        _raise_os_error("read_file", payload.file_path, exc)
    return ReadFileOutput(content=content, size=len(content.encode("utf-8")))


async def _exec_write_file(payload: WriteFileInput, ctx: ExecutionContext) -> WriteFileOutput:
    path = Path(payload.file_path).expanduser()

    def write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(payload.content, encoding="utf-8")

    try:
        await asyncio.to_thread(write)
    except OSError as exc:
        _raise_os_error("write_file", payload.file_path, exc)
    return WriteFileOutput(
        success=True,
        size=len(payload.content.encode("utf-8")),
        file_path=payload.file_path,
    )


def _write_file_key(args: dict) -> str:
    digest = hashlib.sha256(str(args.get("content", "")).encode("utf-8")).hexdigest()[:16]
    return f"write_file:{args['file_path']}:{digest}"


def _compile_search_pattern(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(pattern), re.IGNORECASE)


def _search_files(payload: CodeSearchInput) -> list[SearchHit]:
    root = Path(payload.directory).expanduser()
    if not root.is_dir():
        raise NonRetryableError("code_search", f"Not a directory: {payload.directory}")
    regex = _compile_search_pattern(payload.pattern)
    hits: list[SearchHit] = []

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if not path.match(payload.file_glob):
                continue
            try:
                if path.stat().st_size > MAX_SEARCH_FILE_BYTES:
                    continue
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for lineno, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    hits.append(SearchHit(source=f"{path}:{lineno}", snippet=line.strip()[:200]))
                    if len(hits) >= payload.max_results:
                        return hits
    return hits


async def _exec_code_search(payload: CodeSearchInput, ctx: ExecutionContext) -> SearchOutput:
    hits = await asyncio.to_thread(_search_files, payload)
    logger.debug(f"[code_search] {len(hits)} hit(s) for {payload.pattern!r} in {payload.directory}")
    return SearchOutput(query=payload.pattern, hits=hits)


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


async def _exec_web_search(payload: WebSearchInput, ctx: ExecutionContext) -> SearchOutput:
    from ddgs import DDGS

    def search() -> list[dict]:
        # Coerce the generator to a list so the request actually runs.
        return list(DDGS().text(payload.query, max_results=payload.max_results))

    try:
        results = await asyncio.to_thread(search)
    except Exception as exc:
        raise ToolExecutionError("web_search", f"Search failed (network): {exc}") from exc

    hits = [
        SearchHit(
            source=r.get("href", ""),
            snippet=r.get("body", ""),
            title=r.get("title", "No Title"),
        )
        for r in results
    ]
    return SearchOutput(query=payload.query, hits=hits)


async def _exec_http_request(payload: HttpRequestInput, ctx: ExecutionContext) -> HttpResponseOutput:
    import httpx

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.request(payload.method, payload.url, content=payload.data)
    except httpx.HTTPError as exc:
        raise ToolExecutionError("http_request", f"Network error calling {payload.url}: {exc}") from exc

    if response.status_code in (401, 403):
        raise ToolPermissionError(
            "http_request", f"{payload.method} {payload.url} forbidden ({response.status_code})"
        )
    if response.status_code >= 500:
        raise ToolExecutionError(
            "http_request", f"{payload.method} {payload.url} → {response.status_code}"
        )
    return HttpResponseOutput(status=response.status_code, data=response.text[:MAX_RESPONSE_CHARS])


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


async def _exec_command(payload: CommandInput, ctx: ExecutionContext) -> CommandOutput:
    cwd = payload.working_directory
    if cwd is None and ctx.sandbox is not None:
        cwd = getattr(ctx.sandbox, "working_directory", None)

    proc = await asyncio.create_subprocess_shell(
        payload.command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    return CommandOutput(
        exit_code=proc.returncode,
        output=stdout.decode("utf-8", errors="replace"),
        error=stderr.decode("utf-8", errors="replace"),
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

READ_FILE = ToolDescriptor(
    name="read_file",
    description="Read a text file from disk.",
    input_schema=ReadFileInput,
    output_schema=ReadFileOutput,
    execute=_exec_read_file,
    capabilities=frozenset({Capability.FS_READ}),
    risk=Risk.LOW,
    time_budget_ms=5_000,
    memory_budget_mb=10,
    idempotent=True,
    preconditions=(file_exists("file_path"),),
    postconditions=(output_not_empty(),),
    provides=frozenset({"file_content"}),
    arg_parser=grammar.read_file_args,
)

WRITE_FILE = ToolDescriptor(
    name="write_file",
    description="Write text content to a file, creating parent directories.",
    input_schema=WriteFileInput,
    output_schema=WriteFileOutput,
    execute=_exec_write_file,
    capabilities=frozenset({Capability.FS_WRITE}),
    risk=Risk.HIGH,
    time_budget_ms=10_000,
    memory_budget_mb=10,
    idempotency_key=_write_file_key,
    preconditions=(directory_writable("file_path"),),
    provides=frozenset({"file_written"}),
    arg_parser=grammar.write_file_args,
)

CODE_SEARCH = ToolDescriptor(
    name="code_search",
    description="Search source files under a directory for a pattern.",
    input_schema=CodeSearchInput,
    output_schema=SearchOutput,
    execute=_exec_code_search,
    capabilities=frozenset({Capability.FS_READ}),
    risk=Risk.LOW,
    time_budget_ms=10_000,
    memory_budget_mb=20,
    idempotent=True,
    provides=frozenset({"search_results"}),
    arg_parser=grammar.code_search_args,
)

WEB_SEARCH = ToolDescriptor(
    name="web_search",
    description="Search the web via DuckDuckGo.",
    input_schema=WebSearchInput,
    output_schema=SearchOutput,
    execute=_exec_web_search,
    capabilities=frozenset({Capability.NET_HTTP}),
    risk=Risk.MEDIUM,
    time_budget_ms=15_000,
    memory_budget_mb=10,
    idempotent=True,
    provides=frozenset({"search_results"}),
    arg_parser=grammar.web_search_args,
)

HTTP_REQUEST = ToolDescriptor(
    name="http_request",
    description="Make an HTTP request to a URL.",
    input_schema=HttpRequestInput,
    output_schema=HttpResponseOutput,
    execute=_exec_http_request,
    capabilities=frozenset({Capability.NET_HTTP}),
    risk=Risk.MEDIUM,
    time_budget_ms=30_000,
    memory_budget_mb=10,
    preconditions=(network_available(),),
    provides=frozenset({"http_response"}),
    arg_parser=grammar.http_request_args,
)

EXECUTE_COMMAND = ToolDescriptor(
    name="execute_command",
    description="Run a shell command.",
    input_schema=CommandInput,
    output_schema=CommandOutput,
    execute=_exec_command,
    capabilities=frozenset({Capability.SHELL_EXEC}),
    risk=Risk.HIGH,
    time_budget_ms=60_000,
    memory_budget_mb=50,
    preconditions=(within_quota("max_concurrency"),),
    provides=frozenset({"command_output"}),
    arg_parser=grammar.command_args,
)

BUILTIN_TOOLS: tuple[ToolDescriptor, ...] = (
    READ_FILE,
    WRITE_FILE,
    CODE_SEARCH,
    WEB_SEARCH,
    HTTP_REQUEST,
    EXECUTE_COMMAND,
)


def default_catalog() -> ToolCatalog:
    return ToolCatalog(list(BUILTIN_TOOLS))
