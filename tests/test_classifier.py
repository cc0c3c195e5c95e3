from unittest.mock import MagicMock, patch

from tool_orchestrator.classifier import (
    LLMClassifier,
    LinearClassifier,
    extract_bigrams,
    featurize,
)


def _client_replying(content):
    client = MagicMock()
    client.chat.completions.create.return_value.choices = [
        MagicMock(message=MagicMock(content=content))
    ]
    return client

# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------

def test_extract_bigrams_lowercases_and_strips_punctuation():
    assert extract_bigrams("Find ALL, todo!") == ("find all", "all todo")
    assert extract_bigrams("single") == ()

def test_featurize_flags():
    features = featurize("is 'config.json' at https://x.io?")
    flags = features.flags()

    assert flags["has_quotes"] is True
    assert flags["has_file_extension"] is True
    assert flags["has_url"] is True
    assert flags["has_question_mark"] is True
    assert flags["long_text"] is False

# ---------------------------------------------------------------------------
# Linear classifier
# ---------------------------------------------------------------------------

def test_find_all_scores_code_search():
    candidates = LinearClassifier().classify("find all TODO")

    assert len(candidates) == 1
    assert candidates[0].tool == "code_search"
    assert candidates[0].score == 0.6
    assert candidates[0].reason == "classifier"

def test_scores_are_clamped_to_one():
    weights = {"read_file": {"read file": 0.8, "has_file_extension": 0.5}}
    candidates = LinearClassifier(weights=weights).classify("read file a.txt")

    assert candidates[0].score == 1.0
    assert LinearClassifier(weights=weights).score("read file a.txt")[0][1] > 1.0

def test_zero_scores_are_dropped():
    assert LinearClassifier().classify("hello there") == []

def test_ties_keep_table_order_and_top_k_limits():
    weights = {
        "a": {"go now": 0.5},
        "b": {"go now": 0.5},
        "c": {"go now": 0.9},
    }
    candidates = LinearClassifier(weights=weights).classify("go now")
    assert [c.tool for c in candidates] == ["c", "a"]

    wider = LinearClassifier(weights=weights, top_k=3).classify("go now")
    assert [c.tool for c in wider] == ["c", "a", "b"]

def test_classification_is_deterministic():
    classifier = LinearClassifier()
    text = "look up the weather in the web please?"
    assert classifier.classify(text) == classifier.classify(text)

# ---------------------------------------------------------------------------
# Chat-model classifier
# ---------------------------------------------------------------------------

TOOLS = {"web_search": "Search the web", "read_file": "Read a file"}

def test_llm_classifier_returns_named_tool():
    client = _client_replying("web_search")
    candidates = LLMClassifier("some/model", TOOLS, client=client).classify("weather?")

    assert [c.tool for c in candidates] == ["web_search"]
    assert candidates[0].score == 0.5
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "some/model"
    assert kwargs["temperature"] == 0
    assert "- read_file: Read a file" in kwargs["messages"][0]["content"]

def test_llm_classifier_tolerates_decorated_reply():
    client = _client_replying("`read_file`")
    candidates = LLMClassifier("m", TOOLS, client=client).classify("x")
    assert [c.tool for c in candidates] == ["read_file"]

def test_llm_classifier_unknown_reply_returns_nothing():
    assert LLMClassifier("m", TOOLS, client=_client_replying("NONE")).classify("x") == []
    assert LLMClassifier("m", TOOLS, client=_client_replying("")).classify("x") == []

def test_llm_classifier_defaults_to_openrouter():
    with patch("tool_orchestrator.classifier.OpenAI") as mock_openai:
        LLMClassifier("m", TOOLS, api_key="sk-test")

    mock_openai.assert_called_once_with(
        base_url="https://openrouter.ai/api/v1", api_key="sk-test"
    )
