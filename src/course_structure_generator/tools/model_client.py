"""Model transport: one request in, one normalised ModelResponse out.

No retries happen here. Transport failures raise ``TransportError`` and are
retried by the phase executor; provider refusals raise ``ProviderRejected``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Protocol

import autogen
import openai

from ..agents.search_tool import DEFAULT_SEARCH_LIMIT, SEARCH_DOCUMENTS_TOOL, build_messages
from ..config import build_tier_llm_config
from ..errors import ProviderRejected, TransportError
from ..models import FinishReason, ModelResponse, ModelTier, PhaseRequest, ProjectConfig, TokenUsage, ToolCall

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    async def invoke(self, request: PhaseRequest) -> ModelResponse: ...


def _coerce_limit(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return DEFAULT_SEARCH_LIMIT
    try:
        limit = int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            limit = int(float(value))
        except (TypeError, ValueError, OverflowError):
            logger.warning("Invalid search limit %r, using %d", value, DEFAULT_SEARCH_LIMIT)
            return DEFAULT_SEARCH_LIMIT
    return max(1, limit)


def _parse_tool_calls(message: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for call in getattr(message, "tool_calls", None) or []:
        function = getattr(call, "function", None)
        if function is None or function.name != "search_documents":
            logger.warning("Ignoring unknown tool call: %s", getattr(function, "name", call))
            continue
        try:
            args = json.loads(function.arguments or "{}")
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unparseable tool arguments: %r", function.arguments)
            args = {}
        if not isinstance(args, dict):
            logger.warning("Tool arguments are not an object: %r", function.arguments)
            args = {}
        query = args.get("query")
        calls.append(ToolCall(
            query=query.strip() if isinstance(query, str) else "",
            limit=_coerce_limit(args.get("limit")),
        ))
    return calls


def normalize_completion(completion: Any, *, latency_ms: float = 0.0) -> ModelResponse:
    """Map a provider ChatCompletion onto a ModelResponse.

    Raises:
        ProviderRejected: if the provider filtered the content.
    """
    if not getattr(completion, "choices", None):
        return ModelResponse(finish_reason=FinishReason.EMPTY, latency_ms=latency_ms)

    choice = completion.choices[0]
    message = choice.message
    text = message.content or ""
    tool_calls = _parse_tool_calls(message)
    usage = getattr(completion, "usage", None)
    token_usage = TokenUsage(
        prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )

    raw_reason = choice.finish_reason
    if raw_reason == "content_filter":
        raise ProviderRejected("Response blocked by provider content filter")
    if raw_reason == "length":
        finish = FinishReason.TRUNCATED
    elif not text.strip() and not tool_calls:
        finish = FinishReason.EMPTY
    else:
        finish = FinishReason.COMPLETE

    return ModelResponse(
        raw_text=text,
        tool_calls=tool_calls,
        finish_reason=finish,
        latency_ms=latency_ms,
        usage=token_usage,
        model=getattr(completion, "model", "") or "",
    )


def _classify_provider_error(exc: openai.OpenAIError) -> Exception:
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError)):
        return TransportError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429 or exc.status_code >= 500:
            return TransportError(f"HTTP {exc.status_code}: {exc}")
        return ProviderRejected(f"HTTP {exc.status_code}: {exc}")
    return ProviderRejected(str(exc))


class AG2ModelClient:
    """ModelClient over ``autogen.OpenAIWrapper``, one wrapper per tier."""

    def __init__(self, config: ProjectConfig) -> None:
        self.config = config
        self._clients: dict[ModelTier, autogen.OpenAIWrapper] = {}

    def _client(self, tier: ModelTier) -> autogen.OpenAIWrapper:
        if tier not in self._clients:
            self._clients[tier] = autogen.OpenAIWrapper(**build_tier_llm_config(tier, self.config))
        return self._clients[tier]

    def _create(self, request: PhaseRequest) -> Any:
        params: dict[str, Any] = {
            "messages": build_messages(request),
            "temperature": request.temperature,
            "max_tokens": request.max_output_tokens,
            "response_format": {"type": "json_object"},
            "cache_seed": None,
        }
        if request.retrieval_enabled:
            params["tools"] = [SEARCH_DOCUMENTS_TOOL]
        return self._client(request.model_tier).create(**params)

    async def invoke(self, request: PhaseRequest) -> ModelResponse:
        """Send *request* to the tier's model.

        A wall-clock timeout yields a ``truncated`` response. The worker
        thread is abandoned, not killed.
        """
        started = time.perf_counter()
        try:
            completion = await asyncio.wait_for(
                asyncio.to_thread(self._create, request),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Model call timed out after %ss (%s, tier %s)",
                self.config.timeout, request.phase_kind.value, request.model_tier.name,
            )
            return ModelResponse(
                finish_reason=FinishReason.TRUNCATED,
                latency_ms=(time.perf_counter() - started) * 1000,
                timed_out=True,
            )
        except openai.OpenAIError as e:
            raise _classify_provider_error(e) from e

        return normalize_completion(completion, latency_ms=(time.perf_counter() - started) * 1000)
