# router.py
# Maps an utterance to ranked tool candidates.
#
# Pattern rules run first, in order. When at least one fires, its tools are the
# answer and the classifier's opinion is kept only as a shadow for confusion
# analysis. Otherwise the injected classifier decides.

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from tool_orchestrator.classifier import Classifier, LinearClassifier
from tool_orchestrator.models import RouteResult, RouterCandidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternRule:
    name: str
    pattern: re.Pattern
    tool: str
    # Rule strength metadata. Matched candidates always score 1.0.
    confidence: float = 0.9

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def rule(name: str, pattern: str, tool: str, confidence: float = 0.9) -> PatternRule:
    """Build a case-insensitive PatternRule."""
    return PatternRule(name, re.compile(pattern, re.IGNORECASE), tool, confidence)


_WEB_TERMS = r"(?:web|online|internet)"

DEFAULT_RULES: tuple[PatternRule, ...] = (
    rule(
        "read_file:verb_path",
        r"\b(?:read|view|show|display|open|cat)\s+(?:me\s+)?(?:the\s+)?(?:file\s+)?['\"]?[\w./~\-]*\.\w+",
        "read_file",
    ),
    rule("read_file:contents_of", r"\bcontents?\s+of\s+(?:the\s+)?(?:file\s+)?\S+", "read_file"),
    rule(
        "write_file:verb_file",
        r"\b(?:write|create|save)\s+(?:to\s+)?(?:a\s+|the\s+)?(?:new\s+)?file\b",
        "write_file",
    ),
    rule("write_file:write_to_path", r"\b(?:write|save)\b.+\b(?:to|into)\s+['\"]?[\w./~\-]*\.\w+", "write_file"),
    rule(
        "web_search:web_terms",
        rf"\b(?:search|look\s+up|find)\b.*\b{_WEB_TERMS}\b|\b(?:google|bing|duckduckgo)\b",
        "web_search",
    ),
    rule(
        "code_search:search_verb",
        r"\b(?:search\s+for|look\s+for|grep|find\s+(?:all\s+)?(?:usages?|references|occurrences|definitions?)\b)",
        "code_search",
    ),
    rule("http_request:url", r"https?://", "http_request"),
    rule(
        "execute_command:run_verb",
        r"\b(?:run|execute)\s+(?:the\s+)?(?:shell\s+)?command\b",
        "execute_command",
    ),
)


class Router:
    """Pattern-first router with a pluggable classifier fallback."""

    def __init__(
        self,
        rules: Iterable[PatternRule] = DEFAULT_RULES,
        classifier: Classifier | None = None,
        extra_rules: Iterable[PatternRule] = (),
        shadow: bool = True,
    ) -> None:
        self._rules: tuple[PatternRule, ...] = (*rules, *extra_rules)
        self._classifier = classifier if classifier is not None else LinearClassifier()
        self._shadow = shadow

    @property
    def rules(self) -> tuple[PatternRule, ...]:
        return self._rules

    def add_rule(self, new_rule: PatternRule) -> None:
        self._rules = (*self._rules, new_rule)

    def route(self, text: str) -> RouteResult:
        matched = [r for r in self._rules if r.matches(text)]

        if not matched:
            candidates = self._classifier.classify(text)
            logger.debug(f"[Router] No pattern matched; classifier chose {[c.tool for c in candidates]}")
            return RouteResult(candidates=candidates)

        candidates: list[RouterCandidate] = []
        seen: set[str] = set()
        for r in matched:
            if r.tool in seen:
                continue
            seen.add(r.tool)
            candidates.append(RouterCandidate(tool=r.tool, score=1.0, reason="pattern"))

        shadow = self._classifier.classify(text) if self._shadow else []
        logger.debug(
            f"[Router] Patterns {[r.name for r in matched]} chose {[c.tool for c in candidates]}"
        )
        return RouteResult(
            candidates=candidates,
            patterns_matched=[r.name for r in matched],
            shadow=shadow,
        )


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------


def validate_route(result: RouteResult) -> bool:
    """A usable route has candidates, unique tools, and pattern reasons only when a pattern fired."""
    if not result.candidates:
        return False
    tools = result.tools
    if len(tools) != len(set(tools)):
        return False
    has_pattern = any(c.reason == "pattern" for c in result.candidates)
    return has_pattern == bool(result.patterns_matched)


def top_candidate(result: RouteResult) -> RouterCandidate | None:
    """Highest-scoring candidate; earliest wins ties."""
    best: RouterCandidate | None = None
    for candidate in result.candidates:
        if best is None or candidate.score > best.score:
            best = candidate
    return best
