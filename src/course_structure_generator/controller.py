"""Retry / escalation controller.

Each phase (metadata, one section batch, validation review) runs as a
*lineage*: a strictly sequential series of attempts. After every attempt the
gate verdict is classified and ``decide()`` picks the next transition:

    PENDING -> ATTEMPTING -> ACCEPTED
                          -> RETRY_SAME_MODEL    (format slip, one quality retry, budget trim)
                          -> RETRY_HIGHER_MODEL  (retries on this tier used up, empty lessons)
                          -> TERMINALLY_FAILED   (policy, cancellation, no higher tier)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

from .errors import BudgetExceeded, ProviderRejected, QualityBelowThreshold, SchemaViolation, TransportError
from .executor import PhaseExecutor
from .models import (
    GateVerdict,
    ModelTier,
    PhaseKind,
    PhaseRequest,
    ProjectConfig,
    RetrievalQuery,
    RetryConfig,
    SectionSpec,
    TokenUsage,
)
from .quality_gate import QualityGate, failure_verdict

if TYPE_CHECKING:
    from .logging_config import PipelineCallbacks

logger = logging.getLogger(__name__)


class LineageState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    ACCEPTED = "accepted"
    RETRY_SAME_MODEL = "retry_same_model"
    RETRY_HIGHER_MODEL = "retry_higher_model"
    TERMINALLY_FAILED = "terminally_failed"


class FailureClass(str, Enum):
    FORMAT = "format"
    CONTENT_FATAL = "content_fatal"
    BUDGET = "budget"
    POLICY = "policy"
    CANCELLED = "cancelled"
    QUALITY = "quality"


FORMAT_CODES = frozenset({
    "schema-parse-failure",
    "schema-missing-field",
    "schema-wrong-type",
    "truncated-response",
    "empty-response",
    "model-error",
    "transport-error",
})


def classify_failure(verdict: GateVerdict) -> FailureClass:
    """Map a failed verdict's issue codes onto a failure class."""
    codes = verdict.codes
    if "cancelled" in codes:
        return FailureClass.CANCELLED
    if "provider-rejected" in codes:
        return FailureClass.POLICY
    if "budget-exceeded" in codes:
        return FailureClass.BUDGET
    if codes & FORMAT_CODES:
        return FailureClass.FORMAT
    if "empty-lesson-list" in codes:
        return FailureClass.CONTENT_FATAL
    return FailureClass.QUALITY


# ---------------------------------------------------------------------------
# Transition rule
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decision:
    state: LineageState
    failure: FailureClass | None = None
    tier: ModelTier | None = None
    attempt_number: int = 1
    temperature: float = 0.7
    corrective_instruction: str | None = None
    trim_context: bool = False
    reason: str = ""


def _corrective_instruction(failure: FailureClass, verdict: GateVerdict) -> str:
    if failure == FailureClass.FORMAT:
        head = (
            "Your previous answer could not be used. Return exactly one complete JSON object "
            "with snake_case keys, no markdown fences, and keep it concise enough to finish."
        )
    else:
        head = "Your previous answer did not meet the quality bar. Fix the following:"
    details = [f"- {i.code}: {i.message}" for i in verdict.issues if i.message][:8]
    return "\n".join([head, *details])


def next_tier(current: ModelTier, ladder: list[ModelTier]) -> ModelTier | None:
    """Next configured tier above *current*, skipping unconfigured ones."""
    tier = current.next()
    while tier is not None and tier not in ladder:
        tier = tier.next()
    return tier


def decide(
    verdict: GateVerdict,
    request: PhaseRequest,
    ladder: list[ModelTier],
    retry: RetryConfig,
    *,
    quality_retries_used: int = 0,
) -> Decision:
    """Pure transition function for one finished attempt."""
    if verdict.passed:
        return Decision(LineageState.ACCEPTED, tier=request.model_tier, attempt_number=request.attempt_number)

    failure = classify_failure(verdict)
    if failure in (FailureClass.POLICY, FailureClass.CANCELLED):
        return Decision(LineageState.TERMINALLY_FAILED, failure=failure, tier=request.model_tier,
                        attempt_number=request.attempt_number, reason=f"{failure.value} failure is not retried")

    can_retry_here = request.attempt_number < retry.max_same_model_retries
    same = dict(
        failure=failure,
        tier=request.model_tier,
        attempt_number=request.attempt_number + 1,
        temperature=request.temperature,
    )

    if failure == FailureClass.FORMAT and can_retry_here:
        return Decision(
            LineageState.RETRY_SAME_MODEL,
            **{**same, "temperature": max(retry.min_temperature, request.temperature - retry.temperature_step)},
            corrective_instruction=_corrective_instruction(failure, verdict),
            reason="format failure, retrying with lower temperature",
        )
    if failure == FailureClass.BUDGET and not request.context_trimmed and can_retry_here:
        return Decision(LineageState.RETRY_SAME_MODEL, **same, trim_context=True,
                        reason="base context over budget, retrying with trimmed context")
    if (
        failure == FailureClass.QUALITY
        and quality_retries_used < retry.quality_retries_per_tier
        and can_retry_here
    ):
        return Decision(LineageState.RETRY_SAME_MODEL, **same,
                        corrective_instruction=_corrective_instruction(failure, verdict),
                        reason=f"score {verdict.score:.2f} below threshold, retrying with feedback")

    higher = next_tier(request.model_tier, ladder)
    if higher is None:
        return Decision(LineageState.TERMINALLY_FAILED, failure=failure, tier=request.model_tier,
                        attempt_number=request.attempt_number,
                        reason=f"{failure.value} failure on highest tier {request.model_tier.name}")
    return Decision(
        LineageState.RETRY_HIGHER_MODEL,
        failure=failure,
        tier=higher,
        attempt_number=1,
        temperature=retry.base_temperature,
        corrective_instruction=_corrective_instruction(failure, verdict) if failure == FailureClass.QUALITY else None,
        trim_context=request.context_trimmed,
        reason=f"{failure.value} failure, escalating {request.model_tier.name} -> {higher.name}",
    )


# ---------------------------------------------------------------------------
# Initial tier routing
# ---------------------------------------------------------------------------

COMPLEXITY_THRESHOLD = 0.75
CRITICALITY_THRESHOLD = 0.80
_FOUNDATIONAL_MARKERS = ("introduction", "fundamental", "basics", "getting started")


def complexity_score(spec: SectionSpec) -> float:
    """Breadth of topics and objectives plus estimated size, in [0, 1]."""
    topics = len(spec.key_topics)
    objectives = len(spec.objectives)
    score = 0.4 if topics >= 8 else 0.25 if topics >= 5 else 0.1
    score += 0.3 if objectives >= 5 else 0.2 if objectives >= 3 else 0.1
    score += 0.3 if spec.estimated_hours >= 5 else 0.2 if spec.estimated_hours >= 3 else 0.1
    return min(1.0, round(score, 4))


def criticality_score(spec: SectionSpec) -> float:
    """Importance plus foundational position, in [0, 1]."""
    score = {"core": 0.6, "important": 0.3}.get(spec.importance.value, 0.1)
    name = f"{spec.title} {spec.section_id}".lower()
    score += 0.4 if any(m in name for m in _FOUNDATIONAL_MARKERS) else 0.2
    return min(1.0, round(score, 4))


def initial_tier(phase_kind: PhaseKind, spec: SectionSpec | None = None) -> ModelTier:
    if phase_kind == PhaseKind.METADATA:
        return ModelTier.STANDARD
    if phase_kind == PhaseKind.VALIDATION or spec is None:
        return ModelTier.FAST
    if complexity_score(spec) >= COMPLEXITY_THRESHOLD or criticality_score(spec) >= CRITICALITY_THRESHOLD:
        return ModelTier.STANDARD
    return ModelTier.FAST


def clamp_to_ladder(tier: ModelTier, ladder: list[ModelTier]) -> ModelTier:
    """Lowest configured tier at or above *tier*, else the highest configured."""
    if not ladder:
        raise ValueError("No model tiers configured")
    candidates = [t for t in ladder if t >= tier]
    return min(candidates) if candidates else max(ladder)


# ---------------------------------------------------------------------------
# Lineage driver
# ---------------------------------------------------------------------------

@dataclass
class AttemptRecord:
    tier: ModelTier
    attempt_number: int
    score: float
    issue_codes: list[str]
    decision: LineageState


@dataclass
class LineageOutcome:
    """Result of one lineage. ``attempts_used`` counts attempts on every tier."""
    state: LineageState
    verdict: GateVerdict | None
    attempts_used: int
    model_tier: ModelTier
    retrieval_queries: list[RetrievalQuery] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    history: list[AttemptRecord] = field(default_factory=list)
    degraded: bool = False

    @property
    def accepted(self) -> bool:
        return self.state == LineageState.ACCEPTED

    def raise_for_status(self) -> None:
        if not self.accepted:
            raise QualityBelowThreshold(self.verdict)


class RetryController:
    """Drives lineages through executor, gate and ``decide()``."""

    def __init__(
        self,
        executor: PhaseExecutor,
        gate: QualityGate,
        config: ProjectConfig,
        *,
        callbacks: PipelineCallbacks | None = None,
    ) -> None:
        self.executor = executor
        self.gate = gate
        self.config = config
        self.callbacks = callbacks
        self.ladder = config.models.ladder()

    async def run_lineage(
        self,
        phase_kind: PhaseKind,
        build_context: Callable[[bool], str],
        *,
        section: SectionSpec | None = None,
        start_tier: ModelTier | None = None,
        retrieval_enabled: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> LineageOutcome:
        """Run attempts until accepted or terminally failed.

        *build_context* is called with ``trimmed`` and returns the base
        context for the attempt.
        """
        retry = self.config.retry
        tier = clamp_to_ladder(start_tier or initial_tier(phase_kind, section), self.ladder)
        attempt = 1
        temperature = retry.base_temperature
        corrective: str | None = None
        trimmed = False
        quality_retries_used = 0
        section_id = section.section_id if section else None
        label = section_id or phase_kind.value

        outcome = LineageOutcome(state=LineageState.PENDING, verdict=None, attempts_used=0, model_tier=tier)

        while True:
            if cancel_event is not None and cancel_event.is_set():
                outcome.verdict = failure_verdict("cancelled", "Run cancelled before attempt")
                outcome.state = LineageState.TERMINALLY_FAILED
                return outcome

            outcome.state = LineageState.ATTEMPTING
            outcome.attempts_used += 1
            outcome.model_tier = tier
            request = PhaseRequest(
                phase_kind=phase_kind,
                section_id=section_id,
                base_context=build_context(trimmed),
                retrieval_enabled=retrieval_enabled,
                model_tier=tier,
                attempt_number=attempt,
                temperature=temperature,
                max_output_tokens=self.config.budget.max_output_tokens,
                corrective_instruction=corrective,
                context_trimmed=trimmed,
            )
            if self.callbacks:
                self.callbacks.on_attempt(label, tier.name, attempt)

            try:
                result = await self.executor.run(request)
            except BudgetExceeded as e:
                verdict = failure_verdict("budget-exceeded", str(e))
            except TransportError as e:
                verdict = failure_verdict("transport-error", str(e))
            except ProviderRejected as e:
                verdict = failure_verdict("provider-rejected", str(e))
            except SchemaViolation as e:
                verdict = failure_verdict("schema-parse-failure", str(e))
            else:
                outcome.retrieval_queries.extend(result.retrieval_queries)
                outcome.notes.extend(result.notes)
                outcome.usage = outcome.usage + result.usage
                outcome.degraded = outcome.degraded or result.degraded
                verdict = self.gate.evaluate(phase_kind, result.response, section=section)

            decision = decide(verdict, request, self.ladder, retry, quality_retries_used=quality_retries_used)
            outcome.verdict = verdict
            outcome.history.append(AttemptRecord(
                tier=tier,
                attempt_number=attempt,
                score=verdict.score,
                issue_codes=sorted(verdict.codes),
                decision=decision.state,
            ))
            logger.info(
                "%s attempt %d on %s: score=%.2f -> %s%s",
                label, attempt, tier.name, verdict.score, decision.state.value,
                f" ({decision.reason})" if decision.reason else "",
                extra={"section_id": section_id, "phase_kind": phase_kind.value,
                       "issues": sorted(verdict.codes), "decision": decision.state.value},
            )

            if decision.state in (LineageState.ACCEPTED, LineageState.TERMINALLY_FAILED):
                outcome.state = decision.state
                return outcome

            if decision.state == LineageState.RETRY_SAME_MODEL:
                if decision.failure == FailureClass.QUALITY:
                    quality_retries_used += 1
            else:
                quality_retries_used = 0
                if self.callbacks:
                    self.callbacks.on_escalation(label, tier.name, decision.tier.name, decision.reason)

            tier = decision.tier
            attempt = decision.attempt_number
            temperature = decision.temperature
            corrective = decision.corrective_instruction
            trimmed = trimmed or decision.trim_context
