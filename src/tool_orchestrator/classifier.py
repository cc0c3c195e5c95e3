# classifier.py
# Fallback tool classifiers consulted by the router when no pattern rule fires.
#
# The router depends only on the Classifier protocol, so the static weight
# table below can be swapped for a trained model (or a chat model) without
# touching pattern precedence.

import logging
import os
import re
from dataclasses import dataclass
from typing import Protocol

from openai import OpenAI

from tool_orchestrator.models import RouterCandidate

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    def classify(self, text: str) -> list[RouterCandidate]:
        """Return ranked candidates (highest score first), reason='classifier'."""
        ...


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------

_QUOTES_RE = re.compile(r"[\"']")
_FILE_EXT_RE = re.compile(r"\.[a-zA-Z0-9]+\b")
_URL_RE = re.compile(r"https?://")
_STRIP_CHARS = ".,!?;:\"'()"


@dataclass(frozen=True)
class Features:
    bigrams: tuple[str, ...]
    has_quotes: bool
    has_file_extension: bool
    has_url: bool
    word_count: int
    has_question_mark: bool

    def flags(self) -> dict[str, bool]:
        return {
            "has_quotes": self.has_quotes,
            "has_file_extension": self.has_file_extension,
            "has_url": self.has_url,
            "has_question_mark": self.has_question_mark,
            "long_text": self.word_count > 12,
        }


def extract_bigrams(text: str) -> tuple[str, ...]:
    words = [w.strip(_STRIP_CHARS) for w in text.lower().split()]
    words = [w for w in words if w]
    return tuple(" ".join(words[i : i + 2]) for i in range(len(words) - 1))


def featurize(text: str) -> Features:
    return Features(
        bigrams=extract_bigrams(text),
        has_quotes=bool(_QUOTES_RE.search(text)),
        has_file_extension=bool(_FILE_EXT_RE.search(text)),
        has_url=bool(_URL_RE.search(text)),
        word_count=len(text.split()),
        has_question_mark="?" in text,
    )


# ---------------------------------------------------------------------------
# Linear classifier
# ---------------------------------------------------------------------------

# Static weights. Keys are either bigrams or feature flag names.
DEFAULT_WEIGHTS: dict[str, dict[str, float]] = {
    "read_file": {
        "read file": 0.8,
        "view file": 0.7,
        "show file": 0.6,
        "open file": 0.6,
        "has_file_extension": 0.5,
        "has_quotes": 0.3,
    },
    "write_file": {
        "write file": 0.8,
        "create file": 0.7,
        "save file": 0.6,
        "write to": 0.5,
        "has_file_extension": 0.4,
    },
    "code_search": {
        "search for": 0.8,
        "look for": 0.6,
        "find all": 0.6,
        "in code": 0.5,
        "where is": 0.4,
    },
    "web_search": {
        "search online": 0.8,
        "find information": 0.7,
        "the web": 0.6,
        "look up": 0.6,
        "has_question_mark": 0.4,
        "long_text": 0.2,
    },
    "http_request": {
        "call api": 0.8,
        "http request": 0.7,
        "fetch data": 0.5,
        "has_url": 0.6,
    },
    "execute_command": {
        "run command": 0.8,
        "execute command": 0.7,
        "shell command": 0.6,
        "run the": 0.4,
    },
}


class LinearClassifier:
    """
    Bag-of-features linear scorer over a fixed weight table.

    No learning happens at runtime. Identical text always yields identical
    candidates. Ties keep weight-table order.
    """

    def __init__(self, weights: dict[str, dict[str, float]] | None = None, top_k: int = 2) -> None:
        self._weights = weights if weights is not None else DEFAULT_WEIGHTS
        self._top_k = top_k

    @property
    def tools(self) -> list[str]:
        return list(self._weights)

    def score(self, text: str) -> list[tuple[str, float]]:
        """Raw (unclamped) scores for every tool, highest first."""
        features = featurize(text)
        flags = features.flags()
        scored: list[tuple[str, float]] = []
        for tool, weights in self._weights.items():
            total = sum(weights.get(bigram, 0.0) for bigram in features.bigrams)
            total += sum(weights.get(name, 0.0) for name, on in flags.items() if on)
            scored.append((tool, total))
        # sorted() is stable, so equal scores keep table order.
        return sorted(scored, key=lambda pair: -pair[1])

    def classify(self, text: str) -> list[RouterCandidate]:
        candidates = [
            RouterCandidate(tool=tool, score=max(0.0, min(1.0, score)), reason="classifier")
            for tool, score in self.score(text)
            if score > 0
        ]
        return candidates[: self._top_k]


# ---------------------------------------------------------------------------
# Chat-model classifier
# ---------------------------------------------------------------------------

LLM_CLASSIFIER_PROMPT = """\
You route a user instruction to exactly one tool.

Available tools:
{tools}

Respond with ONLY the tool name, or NONE if no tool applies.\
"""


class LLMClassifier:
    """
    Classifier backed by an OpenAI-compatible chat model (OpenRouter by default).

    Deterministic only to the extent the model is; use temperature 0.
    """

    def __init__(
        self,
        model: str,
        tools: dict[str, str],
        client: OpenAI | None = None,
        api_key: str | None = None,
        confidence: float = 0.5,
    ) -> None:
        self._model = model
        self._tools = tools
        self._confidence = confidence
        self._client = client or OpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
        )

    def _call_model(self, text: str) -> str:
        tool_lines = "\n".join(f"- {name}: {desc}" for name, desc in self._tools.items())
        response = self._client.chat.completions.create(
            model=self._model,
            temperature=0,
            messages=[
                {"role": "system", "content": LLM_CLASSIFIER_PROMPT.format(tools=tool_lines)},
                {"role": "user", "content": text},
            ],
        )
        return (response.choices[0].message.content or "").strip()

    def classify(self, text: str) -> list[RouterCandidate]:
        reply = self._call_model(text)
        name = reply.strip().strip("`'\".").split()[0] if reply.strip() else ""
        if name not in self._tools:
            logger.info(f"[LLMClassifier] Model reply {reply!r} names no known tool")
            return []
        return [RouterCandidate(tool=name, score=self._confidence, reason="classifier")]
