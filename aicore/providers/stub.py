import asyncio
import re
from typing import Any

from aicore.core.types import Operation
from aicore.providers.base import ProviderCall, ProviderError, ProviderResult
from aicore.vectors.embeddings import HashEmbeddingGenerator

_POSITIVE = {"good", "great", "love", "excellent", "thanks", "happy", "nice", "awesome", "glad"}
_NEGATIVE = {"bad", "terrible", "hate", "awful", "angry", "broken", "sad", "worst", "annoying"}
_FLAGGED = {
    "harassment": {"idiot", "stupid", "loser"},
    "violence": {"kill", "attack", "hurt"},
    "spam": {"free", "winner", "click"},
}


class StubProvider:
    """Deterministic in-process provider.

    Model names starting with ``error-429``, ``error-502``, ``error-400``,
    ``error-policy`` or ``error-timeout`` simulate upstream failures.
    """

    def __init__(self, embedding_dim: int = 64, delay_s: float = 0.0):
        self._embedding_generator = HashEmbeddingGenerator(embedding_dim=embedding_dim)
        self._delay_s = delay_s
        self.calls = 0

    async def call(self, request: ProviderCall) -> ProviderResult:
        self.calls += 1
        if self._delay_s > 0:
            await asyncio.sleep(self._delay_s)
        await self._maybe_raise_provider_error(request.model)

        handlers = {
            Operation.SUMMARIZE: self._summarize,
            Operation.DIGEST: self._digest,
            Operation.SENTIMENT: self._sentiment,
            Operation.MODERATE: self._moderate,
            Operation.EMBED: self._embed,
        }
        output = handlers[request.operation](request.payload, request.params)
        prompt_tokens = max(len(_words(_payload_text(request.payload))), 1)
        completion_tokens = 0 if request.operation == Operation.EMBED else max(
            len(_words(str(output))) // 2, 1
        )
        return ProviderResult(
            output=output, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens
        )

    def _summarize(self, payload: dict[str, Any], params: dict[str, Any]) -> dict[str, Any]:
        contents = _message_contents(payload)
        max_words = int(params.get("max_words", 40))
        summary = " ".join(_words(" ".join(contents))[:max_words])
        return {"summary": f"Stub summary of {len(contents)} messages: {summary}"}

    def _digest(self, payload: dict[str, Any], params: dict[str, Any]) -> dict[str, Any]:
        contents = _message_contents(payload)
        highlights = [content[:80] for content in sorted(contents, key=len, reverse=True)[:3]]
        return {
            "digest": f"Digest for channel {payload.get('channel_id')}: {len(contents)} messages",
            "highlights": highlights,
        }

    def _sentiment(self, payload: dict[str, Any], params: dict[str, Any]) -> dict[str, Any]:
        words = _words(_payload_text(payload).lower())
        positive = sum(1 for word in words if word in _POSITIVE)
        negative = sum(1 for word in words if word in _NEGATIVE)
        matched = positive + negative
        score = 0.0 if matched == 0 else (positive - negative) / matched
        if score > 0.2:
            label = "positive"
        elif score < -0.2:
            label = "negative"
        else:
            label = "neutral"
        confidence = round(min(0.5 + matched / max(len(words), 1), 1.0), 3)
        return {"sentiment": label, "score": round(score, 3), "confidence": confidence}

    def _moderate(self, payload: dict[str, Any], params: dict[str, Any]) -> dict[str, Any]:
        words = set(_words(_payload_text(payload).lower()))
        threshold = float(params.get("threshold", 0.5))
        categories = {
            name: round(min(len(words & terms) / 2.0, 1.0), 3) for name, terms in _FLAGGED.items()
        }
        score = max(categories.values())
        return {
            "flagged": score >= threshold,
            "categories": categories,
            "score": score,
        }

    def _embed(self, payload: dict[str, Any], params: dict[str, Any]) -> dict[str, Any]:
        texts = [str(text) for text in payload.get("texts", [])]
        return {"embeddings": self._embedding_generator.embed_texts(texts)}

    @staticmethod
    async def _maybe_raise_provider_error(model: str) -> None:
        if model.startswith("error-429"):
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if model.startswith("error-502"):
            raise ProviderError(
                status_code=502,
                code="provider_bad_gateway",
                message="Provider upstream bad gateway",
            )
        if model.startswith("error-400"):
            raise ProviderError(
                status_code=400,
                code="provider_bad_request",
                message="Provider rejected the input",
            )
        if model.startswith("error-policy"):
            raise ProviderError(
                status_code=400,
                code="content_policy_violation",
                message="Provider content policy rejected the input",
                error_type="policy",
            )
        if model.startswith("error-timeout"):
            await asyncio.sleep(3600)


def _words(text: str) -> list[str]:
    return re.findall(r"[A-Za-z0-9']+", text)


def _message_contents(payload: dict[str, Any]) -> list[str]:
    messages = payload.get("messages") or []
    return [str(message.get("content", "")) for message in messages if isinstance(message, dict)]


def _payload_text(payload: dict[str, Any]) -> str:
    if "text" in payload:
        return str(payload["text"])
    if "texts" in payload:
        return " ".join(str(text) for text in payload["texts"])
    return " ".join(_message_contents(payload))
