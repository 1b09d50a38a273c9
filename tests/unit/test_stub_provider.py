import asyncio

import pytest

from aicore.core.types import Operation
from aicore.providers.base import ProviderCall, ProviderError
from aicore.providers.stub import StubProvider


def _run(provider: StubProvider, call: ProviderCall):  # type: ignore[no-untyped-def]
    return asyncio.run(provider.call(call))


def test_stub_summarize_and_digest() -> None:
    provider = StubProvider()
    messages = [{"content": "deploy finished"}, {"content": "all tests green today"}]
    summary = _run(
        provider,
        ProviderCall(Operation.SUMMARIZE, "default", {"messages": messages}, {"max_words": 3}),
    )
    assert summary.output["summary"] == "Stub summary of 2 messages: deploy finished all"
    assert summary.total_tokens > 0

    digest = _run(
        provider,
        ProviderCall(Operation.DIGEST, "default", {"messages": messages, "channel_id": "c-1"}),
    )
    assert digest.output["digest"].startswith("Digest for channel c-1")
    assert digest.output["highlights"][0] == "all tests green today"
    assert provider.calls == 2


@pytest.mark.parametrize(
    ("text", "label"),
    [
        ("I love this, great work", "positive"),
        ("this is terrible and broken", "negative"),
        ("the meeting is at noon", "neutral"),
    ],
)
def test_stub_sentiment_labels(text: str, label: str) -> None:
    result = _run(StubProvider(), ProviderCall(Operation.SENTIMENT, "default", {"text": text}))
    assert result.output["sentiment"] == label
    assert 0.0 <= result.output["confidence"] <= 1.0


def test_stub_moderation_respects_threshold() -> None:
    provider = StubProvider()
    payload = {"text": "click here winner"}
    strict = _run(provider, ProviderCall(Operation.MODERATE, "default", payload, {"threshold": 0.5}))
    lenient = _run(provider, ProviderCall(Operation.MODERATE, "default", payload, {"threshold": 1.1}))
    assert strict.output["flagged"] is True
    assert strict.output["categories"]["spam"] == 1.0
    assert lenient.output["flagged"] is False


def test_stub_embeddings_are_deterministic_unit_vectors() -> None:
    provider = StubProvider(embedding_dim=16)
    call = ProviderCall(Operation.EMBED, "default", {"texts": ["alpha beta", "gamma"]})
    first = _run(provider, call).output["embeddings"]
    second = _run(provider, call).output["embeddings"]
    assert first == second
    assert len(first) == 2
    assert len(first[0]) == 16
    assert sum(value * value for value in first[0]) == pytest.approx(1.0, abs=1e-4)


@pytest.mark.parametrize(
    ("model", "status_code", "retryable", "error_type"),
    [
        ("error-429", 429, True, "rate_limit"),
        ("error-502", 502, True, "provider"),
        ("error-400", 400, False, "provider"),
        ("error-policy", 400, False, "policy"),
    ],
)
def test_stub_error_models(model: str, status_code: int, retryable: bool, error_type: str) -> None:
    with pytest.raises(ProviderError) as exc_info:
        _run(StubProvider(), ProviderCall(Operation.SENTIMENT, model, {"text": "hi"}))
    assert exc_info.value.status_code == status_code
    assert exc_info.value.retryable is retryable
    assert exc_info.value.error_type == error_type
