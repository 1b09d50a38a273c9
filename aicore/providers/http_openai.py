"""HTTP provider for OpenAI-compatible endpoints."""

import json
from typing import Any

import httpx

from aicore.core.types import Operation
from aicore.providers.base import ProviderCall, ProviderError, ProviderResult

_SYSTEM_PROMPTS = {
    Operation.SUMMARIZE: (
        "Summarize the following chat conversation in a few sentences. "
        "Reply with the summary only."
    ),
    Operation.DIGEST: (
        "Write a short digest of the following channel activity. Reply with JSON "
        '{"digest": string, "highlights": [string]}.'
    ),
    Operation.SENTIMENT: (
        "Classify the sentiment of the following text. Reply with JSON "
        '{"sentiment": "positive"|"neutral"|"negative", "score": number, '
        '"confidence": number}.'
    ),
}


class HTTPOpenAIProvider:
    """Provider that calls any OpenAI-compatible chat, moderation and embeddings API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    async def call(self, request: ProviderCall) -> ProviderResult:
        if request.operation == Operation.EMBED:
            return await self._embed(request)
        if request.operation == Operation.MODERATE:
            return await self._moderate(request)
        return await self._chat(request)

    async def _chat(self, request: ProviderCall) -> ProviderResult:
        body: dict[str, object] = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPTS[request.operation]},
                {"role": "user", "content": _render_input(request.payload)},
            ],
        }
        if "max_tokens" in request.params:
            body["max_tokens"] = request.params["max_tokens"]
        if "temperature" in request.params:
            body["temperature"] = request.params["temperature"]

        response = await self._post("/v1/chat/completions", body)
        content = _first_choice_content(response)
        usage = _usage(response)
        if request.operation == Operation.SUMMARIZE:
            output: dict[str, Any] = {"summary": content.strip()}
        else:
            output = _parse_json_content(content)
        return ProviderResult(output=output, **usage)

    async def _moderate(self, request: ProviderCall) -> ProviderResult:
        response = await self._post(
            "/v1/moderations",
            {"model": request.model, "input": str(request.payload.get("text", ""))},
        )
        results = response.get("results")
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            raise ProviderError(
                status_code=502,
                code="provider_bad_response",
                message="Moderation response missing results",
            )
        first = results[0]
        scores_raw = first.get("category_scores")
        scores = (
            {str(key): float(value) for key, value in scores_raw.items()}
            if isinstance(scores_raw, dict)
            else {}
        )
        return ProviderResult(
            output={
                "flagged": bool(first.get("flagged", False)),
                "categories": scores,
                "score": max(scores.values(), default=0.0),
            }
        )

    async def _embed(self, request: ProviderCall) -> ProviderResult:
        texts = [str(text) for text in request.payload.get("texts", [])]
        response = await self._post("/v1/embeddings", {"model": request.model, "input": texts})
        data = response.get("data")
        if not isinstance(data, list):
            raise ProviderError(
                status_code=502,
                code="provider_bad_response",
                message="Embeddings response missing data array",
            )
        by_index: dict[int, list[float]] = {}
        for item in data:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            embedding = item.get("embedding")
            if isinstance(index, int) and isinstance(embedding, list):
                by_index[index] = [float(value) for value in embedding]
        if len(by_index) != len(texts):
            raise ProviderError(
                status_code=502,
                code="provider_bad_response",
                message="Embeddings response missing one or more indexes",
            )
        usage = _usage(response)
        return ProviderResult(
            output={"embeddings": [by_index[idx] for idx in range(len(texts))]}, **usage
        )

    async def _post(self, path: str, body: dict[str, object]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=504,
                code="provider_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.ConnectError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_transport_error",
                message=f"Provider transport failed: {type(exc).__name__}: {exc}",
            ) from exc

        self._raise_for_status(resp)

        try:
            result = resp.json()
        except ValueError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_bad_response",
                message="Provider returned a non-JSON body",
            ) from exc
        if not isinstance(result, dict):
            raise ProviderError(
                status_code=502,
                code="provider_bad_response",
                message="Provider returned a non-object JSON body",
            )
        return result

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if resp.status_code >= 500:
            raise ProviderError(
                status_code=resp.status_code,
                code="provider_upstream_error",
                message=f"Provider returned {resp.status_code}",
            )
        if resp.status_code >= 400:
            error_code = _error_code(resp)
            raise ProviderError(
                status_code=resp.status_code,
                code=error_code or "provider_error",
                message=f"Provider returned {resp.status_code}",
                error_type="policy" if error_code == "content_policy_violation" else "provider",
            )


def _render_input(payload: dict[str, Any]) -> str:
    if "text" in payload:
        return str(payload["text"])
    lines = []
    for message in payload.get("messages", []):
        if not isinstance(message, dict):
            continue
        author = message.get("author") or message.get("author_id") or "user"
        lines.append(f"{author}: {message.get('content', '')}")
    return "\n".join(lines)


def _first_choice_content(response: dict[str, Any]) -> str:
    choices = response.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return str(message["content"])
    raise ProviderError(
        status_code=502,
        code="provider_bad_response",
        message="Chat completion response missing content",
    )


def _parse_json_content(content: str) -> dict[str, Any]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ProviderError(
            status_code=502,
            code="provider_bad_response",
            message=f"Provider returned non-JSON content: {exc}",
        ) from exc
    if not isinstance(parsed, dict):
        raise ProviderError(
            status_code=502,
            code="provider_bad_response",
            message="Provider returned a non-object JSON document",
        )
    return parsed


def _usage(response: dict[str, Any]) -> dict[str, int]:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return {"prompt_tokens": 0, "completion_tokens": 0}
    return {
        "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
        "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
    }


def _error_code(resp: httpx.Response) -> str | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        code = body["error"].get("code")
        return str(code) if code else None
    return None
