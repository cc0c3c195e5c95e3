# grammar.py
# Argument-extraction grammars used by the planner.
#
# Each tool grammar takes one clause of an utterance and returns either an
# argument dict or None. None means "this clause is not for this tool" and the
# planner moves on to the next tool.

import re
from collections.abc import Callable
from typing import Any

Parser = Callable[[str], Any]


# ---------------------------------------------------------------------------
# Primitive parsers
# ---------------------------------------------------------------------------

_QUOTED_RE = re.compile(r"""^(?:'([^']*)'|"([^"]*)")""")
_PATH_TOKEN_RE = re.compile(r"""^(~?[\w.\-/\\]*[/.][\w.\-/\\]*)""")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?")
_WORD_RE = re.compile(r"^\w+")


def quoted(s: str) -> str | None:
    """Leading single- or double-quoted string, without the quotes."""
    match = _QUOTED_RE.match(s.strip())
    if not match:
        return None
    return match.group(1) if match.group(1) is not None else match.group(2)


def file_path(s: str) -> str | None:
    """Quoted path, or an unquoted token that looks like a path (has / or .ext)."""
    value = quoted(s)
    if value:
        return value
    match = _PATH_TOKEN_RE.match(s.strip())
    if not match:
        return None
    token = match.group(1).rstrip(".,;:!?")
    if token in ("", ".", ".."):
        return None
    return token


def number(s: str) -> float | None:
    match = _NUMBER_RE.match(s.strip())
    return float(match.group(0)) if match else None


def boolean(s: str) -> bool | None:
    value = s.strip().lower()
    if value in ("true", "yes", "1"):
        return True
    if value in ("false", "no", "0"):
        return False
    return None


def word(s: str) -> str | None:
    match = _WORD_RE.match(s.strip())
    return match.group(0) if match else None


def literal(text: str, case_sensitive: bool = False) -> Parser:
    def parse(s: str) -> str | None:
        head = s.strip()
        if case_sensitive:
            return text if head.startswith(text) else None
        return text if head.lower().startswith(text.lower()) else None

    return parse


def first_of(*parsers: Parser) -> Parser:
    def parse(s: str) -> Any:
        for parser in parsers:
            result = parser(s)
            if result is not None:
                return result
        return None

    return parse


def _unquote(value: str) -> str:
    value = value.strip()
    inner = quoted(value)
    if inner is not None and len(inner) + 2 == len(value):
        return inner
    return value


# ---------------------------------------------------------------------------
# Clause splitting
# ---------------------------------------------------------------------------

_CLAUSE_SEPARATOR_RE = re.compile(
    r"\s*;\s*|\s*,?\s+(?:and\s+then|after\s+that|and|then)\s+", re.IGNORECASE
)


def split_clauses(utterance: str) -> list[str]:
    """Split on `and`, `then`, `;` and `after that`. Empty clauses are dropped."""
    parts = _CLAUSE_SEPARATOR_RE.split(utterance.strip())
    clauses = []
    for part in parts:
        part = part.strip().strip(",.!").strip()
        if part:
            clauses.append(part)
    return clauses


# ---------------------------------------------------------------------------
# Tool grammars
# ---------------------------------------------------------------------------

_READ_RE = re.compile(
    r"\b(?:read|view|show|display|open|load|cat|print)\s+"
    r"(?:me\s+)?(?:the\s+)?(?:contents?\s+of\s+)?(?:the\s+)?(?:file\s+)?(?P<rest>.+)$",
    re.IGNORECASE,
)


def read_file_args(clause: str) -> dict[str, Any] | None:
    match = _READ_RE.search(clause)
    if not match:
        return None
    path = file_path(match.group("rest"))
    if not path:
        return None
    return {"file_path": path}


_WRITE_WITH_CONTENT_RE = re.compile(
    r"\b(?:write|create|save|update|edit)\s+(?:to\s+)?(?:the\s+)?(?:file\s+)?(?P<rest>.+?)\s+"
    r"(?:with\s+content|content\s+is|saying|containing)\s+(?P<content>.+)$",
    re.IGNORECASE,
)
_WRITE_TO_RE = re.compile(
    r"\b(?:write|save|store|put)\s+(?P<content>.+?)\s+(?:to|into|in)\s+"
    r"(?:the\s+)?(?:file\s+)?(?P<rest>\S+)\s*$",
    re.IGNORECASE,
)


def write_file_args(clause: str) -> dict[str, Any] | None:
    for regex in (_WRITE_WITH_CONTENT_RE, _WRITE_TO_RE):
        match = regex.search(clause)
        if not match:
            continue
        path = file_path(match.group("rest"))
        if not path:
            continue
        return {"file_path": path, "content": _unquote(match.group("content"))}
    return None


_WEB_HINT_RE = re.compile(r"\b(?:web|online|internet|google|bing|duckduckgo)\b", re.IGNORECASE)
_LIMIT_RE = re.compile(r"\s*\b(?:limit|max|top)\s+(\d+)\b", re.IGNORECASE)
_CODE_SEARCH_RE = re.compile(
    r"\b(?:search|find|grep|look\s+for|locate)\s+(?:for\s+)?(?:all\s+)?(?:the\s+)?(?:code\s+for\s+)?"
    r"(?P<pattern>.+?)"
    r"(?:\s+in\s+(?:directory\s+|dir\s+|folder\s+)?(?P<directory>\.{0,2}/[\w./\-]*|[\w.\-]+/[\w./\-]*))?"
    r"\s*$",
    re.IGNORECASE,
)


def code_search_args(clause: str) -> dict[str, Any] | None:
    if _WEB_HINT_RE.search(clause):
        return None
    text = clause
    args: dict[str, Any] = {}
    limit = _LIMIT_RE.search(text)
    if limit:
        args["max_results"] = int(limit.group(1))
        text = (text[: limit.start()] + text[limit.end():]).strip()
    match = _CODE_SEARCH_RE.search(text)
    if not match:
        return None
    pattern = _unquote(match.group("pattern"))
    if not pattern:
        return None
    args["pattern"] = pattern
    if match.group("directory"):
        args["directory"] = match.group("directory")
    return args


_WEB_SEARCH_RE = re.compile(
    r"\b(?:search\s+(?:the\s+)?(?:web|internet|online)|web\s+search|google|bing|duckduckgo"
    r"|look\s+up\s+online)\s*(?:for\s+)?(?P<query>.+)$",
    re.IGNORECASE,
)


def web_search_args(clause: str) -> dict[str, Any] | None:
    text = clause
    args: dict[str, Any] = {}
    limit = _LIMIT_RE.search(text)
    if limit:
        args["max_results"] = int(limit.group(1))
        text = (text[: limit.start()] + text[limit.end():]).strip()
    match = _WEB_SEARCH_RE.search(text)
    if not match:
        return None
    query = _unquote(match.group("query"))
    if not query:
        return None
    args["query"] = query
    return args


_URL_RE = re.compile(r"""(https?://[^\s"'<>]+)""")
_METHOD_RE = re.compile(r"\b(get|post|put|delete|patch)\b", re.IGNORECASE)
_DATA_RE = re.compile(r"(?:with\s+data|data\s+is|body\s+is)\s+(.+)$", re.IGNORECASE)


def http_request_args(clause: str) -> dict[str, Any] | None:
    url_match = _URL_RE.search(clause)
    if not url_match:
        return None
    url = url_match.group(1).rstrip(".,;:!?)")
    method_match = _METHOD_RE.search(clause[: url_match.start()]) or _METHOD_RE.search(clause)
    args: dict[str, Any] = {
        "url": url,
        "method": method_match.group(1).upper() if method_match else "GET",
    }
    data_match = _DATA_RE.search(clause[url_match.end():])
    if data_match:
        args["data"] = _unquote(data_match.group(1))
    return args


_COMMAND_RE = re.compile(
    r"\b(?:run|execute|launch)\s+(?:the\s+)?(?:shell\s+)?(?:command\s+)?(?P<command>.+)$",
    re.IGNORECASE,
)
_WORKDIR_RE = re.compile(r"\s+(?:in|from)\s+(?:directory\s+)?(?P<dir>[~./][^\s]*)\s*$", re.IGNORECASE)


def command_args(clause: str) -> dict[str, Any] | None:
    match = _COMMAND_RE.search(clause)
    if not match:
        return None
    command = match.group("command").strip()
    args: dict[str, Any] = {}
    workdir = _WORKDIR_RE.search(command)
    if workdir:
        args["working_directory"] = workdir.group("dir")
        command = command[: workdir.start()].strip()
    command = _unquote(command)
    if not command:
        return None
    args["command"] = command
    return args


ARG_GRAMMARS: dict[str, Callable[[str], dict[str, Any] | None]] = {
    "read_file": read_file_args,
    "write_file": write_file_args,
    "code_search": code_search_args,
    "web_search": web_search_args,
    "http_request": http_request_args,
    "execute_command": command_args,
}
