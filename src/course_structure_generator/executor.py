"""Phase executor: one model call plus a bounded retrieval tool-call loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import RetrievalUnavailable, TransportError
from .models import ModelResponse, PhaseRequest, ProjectConfig, RetrievalQuery, RetrievedChunk, TokenUsage
from .tools.model_client import ModelClient
from .tools.retrieval import RetrievalGateway
from .tools.token_budget import chunk_limit_for_budget, estimate, estimate_tokens, token_counter

logger = logging.getLogger(__name__)


@dataclass
class PhaseOutcome:
    """Final response of one attempt plus what happened on the way."""
    response: ModelResponse
    retrieval_queries: list[RetrievalQuery] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    degraded: bool = False


class PhaseExecutor:
    """Runs a PhaseRequest against a ModelClient.

    Retrieval only happens when the model asks for it through a
    ``search_documents`` tool call, at most ``max_tool_rounds`` times, one
    call per round. Transport errors are retried with exponential backoff;
    everything else propagates to the controller.
    """

    def __init__(
        self,
        client: ModelClient,
        config: ProjectConfig,
        *,
        gateway: RetrievalGateway | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.gateway = gateway
        self.counter = token_counter(config.budget.encoding)

    async def _invoke(self, request: PhaseRequest) -> ModelResponse:
        retry = self.config.retry
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransportError),
            stop=stop_after_attempt(retry.transport_max_attempts),
            wait=wait_exponential(min=retry.transport_backoff_min, max=retry.transport_backoff_max),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying model call after transport error (try %d/%d)",
                        attempt.retry_state.attempt_number, retry.transport_max_attempts,
                    )
                return await self.client.invoke(request)
        raise AssertionError("unreachable")

    def _fit_chunks(self, chunks: list[RetrievedChunk], remaining: int) -> tuple[list[RetrievedChunk], int]:
        """Keep whole chunks, in relevance order, while they fit *remaining* tokens."""
        kept: list[RetrievedChunk] = []
        used = 0
        for chunk in chunks:
            tokens = estimate_tokens(chunk.text, self.counter)
            if used + tokens > remaining:
                break
            kept.append(chunk)
            used += tokens
        return kept, used

    async def run(self, request: PhaseRequest) -> PhaseOutcome:
        """Execute one attempt.

        Raises:
            BudgetExceeded: base context alone is over the hard limit. No
                call is made.
            TransportError: transport retries exhausted.
            ProviderRejected: provider refused the request.
        """
        budget_cfg = self.config.budget
        retrieval_cfg = self.config.retrieval
        base_tokens = estimate_tokens(request.base_context, self.counter)
        budget = estimate(base_tokens, 0, budget_cfg.hard_limit_tokens, budget_cfg.max_retrieval_share)
        remaining = budget.allowed_retrieval_tokens

        outcome = PhaseOutcome(response=ModelResponse())
        current = request
        response = await self._invoke(current)
        outcome.usage = response.usage
        rounds = 0
        finalize = False
        where = current.section_id or current.phase_kind.value

        while response.tool_calls:
            if not current.retrieval_enabled or self.gateway is None or current.section_id is None:
                logger.info(
                    "Ignoring tool call for %s: retrieval disabled", where,
                    extra={"section_id": current.section_id, "decision": "retrieval_disabled"},
                )
                outcome.notes.append("tool call ignored: retrieval disabled")
                break
            if rounds >= retrieval_cfg.max_tool_rounds:
                logger.info("Tool-call round limit (%d) reached for %s", rounds, where)
                outcome.notes.append(f"tool-call round limit reached after {rounds} round(s)")
                finalize = True
                break
            if len(response.tool_calls) > 1:
                logger.info("Honouring first of %d tool calls for %s", len(response.tool_calls), where)

            call = response.tool_calls[0]
            if not call.query.strip():
                logger.info("Empty search query from model for %s", where)
                outcome.notes.append("empty search query ignored")
                finalize = True
                break

            rounds += 1
            applied = chunk_limit_for_budget(
                remaining, retrieval_cfg.chunk_token_estimate, call.limit, retrieval_cfg.max_limit,
            )
            if applied == 0:
                logger.info("Retrieval budget exhausted for %s", where)
                outcome.notes.append("retrieval budget exhausted")
                finalize = True
                break

            try:
                chunks = await self.gateway.search(call.query, current.section_id, applied)
            except RetrievalUnavailable as e:
                logger.warning("Retrieval unavailable for %s, continuing without it: %s", where, e)
                outcome.notes.append(f"retrieval unavailable: {e}")
                outcome.degraded = True
                finalize = True
                break

            kept, used = self._fit_chunks(chunks, remaining)
            remaining -= used
            trace = RetrievalQuery(
                phase_kind=current.phase_kind,
                section_id=current.section_id,
                round=rounds,
                query=call.query,
                requested_limit=call.limit,
                applied_limit=applied,
                chunk_count=len(kept),
                tokens=used,
                source_ids=[c.source_id for c in kept],
            )
            outcome.retrieval_queries.append(trace)
            logger.info(
                "Retrieval round %d for %s: %d chunk(s), %d tokens", rounds, where, len(kept), used,
                extra={"retrieval": trace.model_dump(mode="json")},
            )

            current = current.model_copy(
                update={"retrieved_context": [*current.retrieved_context, *kept]},
            )
            response = await self._invoke(current)
            outcome.usage = outcome.usage + response.usage

        if finalize:
            # Ask for the answer with what has been gathered so far.
            current = current.model_copy(update={"retrieval_enabled": False})
            response = await self._invoke(current)
            outcome.usage = outcome.usage + response.usage

        outcome.response = response
        return outcome
