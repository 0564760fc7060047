"""Quality gate: scores a model response and decides pass/fail.

Three dimensions are scored in [0, 1]:

- schema_compliance: JSON parses, required fields present with the right
  types, snake_case keys.
- content_quality: lesson count and completeness, metadata thresholds.
- language_quality: measurable objectives, no placeholders, no jargon the
  section asked to avoid, minimum description lengths.

A verdict passes when the weighted score reaches the acceptance threshold
and no issue is critical. Truncated, empty and errored responses never pass.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from .models import (
    DimensionScores,
    FinishReason,
    GateConfig,
    GateVerdict,
    GenerationGuidance,
    Issue,
    ModelResponse,
    PhaseKind,
    SectionSpec,
    Severity,
)
from .tools.json_repair import parse_json_object

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

NON_MEASURABLE_VERBS = (
    "understand",
    "know",
    "learn",
    "appreciate",
    "be aware of",
    "be familiar with",
    "grasp",
    "comprehend",
    "realize",
    "become acquainted with",
)
_VERB_RES = [re.compile(rf"\b{re.escape(v)}\b", re.IGNORECASE) for v in NON_MEASURABLE_VERBS]

_PLACEHOLDER_TOKEN_RE = re.compile(r"\b(?:TODO|FIXME|XXX|HACK|TBD)\b")
_PLACEHOLDER_BRACKET_RE = re.compile(r"\[(?:tbd|insert|add|replace)\b[^\]]*\]", re.IGNORECASE)
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")

_REQUIRED_FIELDS: dict[PhaseKind, dict[str, type | tuple[type, ...]]] = {
    PhaseKind.SECTION_BATCH: {"lessons": list},
    PhaseKind.METADATA: {
        "course_title": str,
        "course_description": str,
        "course_overview": str,
        "target_audience": str,
        "estimated_duration_hours": (int, float),
        "learning_outcomes": list,
        "course_tags": list,
    },
    PhaseKind.VALIDATION: {"consistent": bool, "issues": list},
}

_LESSON_FIELDS: dict[str, type] = {
    "title": str,
    "objectives": list,
    "topics": list,
    "exercises": list,
}


def to_snake(key: str) -> str:
    return _CAMEL_RE.sub(r"_\1", key).lower()


def normalize_keys(value: Any) -> tuple[Any, list[str]]:
    """Recursively convert dict keys to snake_case. Returns (value, renamed keys)."""
    renamed: list[str] = []
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for key, item in value.items():
            new_item, inner = normalize_keys(item)
            renamed.extend(inner)
            new_key = to_snake(key) if isinstance(key, str) else key
            if new_key != key:
                renamed.append(key)
            out[new_key] = new_item
        return out, renamed
    if isinstance(value, list):
        items = []
        for item in value:
            new_item, inner = normalize_keys(item)
            renamed.extend(inner)
            items.append(new_item)
        return items, renamed
    return value, renamed


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_strings(item)


def _is_type(value: Any, expected: type | tuple[type, ...]) -> bool:
    # bool is an int subclass; never accept it for numeric fields
    if isinstance(value, bool) and expected is not bool:
        return False
    return isinstance(value, expected)


def failure_verdict(code: str, message: str, *, severity: Severity = Severity.CRITICAL) -> GateVerdict:
    """Verdict for an attempt that produced no gradable output."""
    return GateVerdict(
        passed=False,
        score=0.0,
        dimension_scores=DimensionScores(),
        issues=[Issue(code=code, severity=severity, message=message)],
    )


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class QualityGate:
    """Deterministic scorer for metadata, section-batch and validation output."""

    def __init__(self, config: GateConfig | None = None) -> None:
        self.config = config or GateConfig()

    # -- schema -------------------------------------------------------------

    def _check_schema(
        self,
        phase_kind: PhaseKind,
        payload: dict[str, Any],
        renamed: list[str],
        issues: list[Issue],
    ) -> float:
        checked = 0
        bad = 0
        for name, expected in _REQUIRED_FIELDS[phase_kind].items():
            checked += 1
            if name not in payload:
                bad += 1
                issues.append(Issue(code="schema-missing-field", severity=Severity.CRITICAL,
                                    message=f"Missing required field '{name}'"))
            elif not _is_type(payload[name], expected):
                bad += 1
                issues.append(Issue(code="schema-wrong-type", severity=Severity.CRITICAL,
                                    message=f"Field '{name}' has type {type(payload[name]).__name__}"))

        if phase_kind == PhaseKind.SECTION_BATCH and isinstance(payload.get("lessons"), list):
            missing: list[str] = []
            for idx, lesson in enumerate(payload["lessons"], 1):
                if not isinstance(lesson, dict):
                    checked += 1
                    bad += 1
                    missing.append(f"lesson {idx} is not an object")
                    continue
                for name, expected in _LESSON_FIELDS.items():
                    checked += 1
                    if not _is_type(lesson.get(name), expected):
                        bad += 1
                        missing.append(f"lesson {idx}: {name}")
            if missing:
                issues.append(Issue(code="lesson-missing-field", severity=Severity.WARNING,
                                    message="; ".join(missing[:10])))

        if renamed:
            # Normalised keys still count against compliance.
            checked += len(renamed)
            bad += len(renamed)
            issues.append(Issue(code="naming-convention", severity=Severity.WARNING,
                                message=f"camelCase keys normalised: {', '.join(sorted(set(renamed))[:10])}"))

        return max(0.0, 1.0 - bad / checked) if checked else 0.0

    # -- content ------------------------------------------------------------

    def _check_section_content(self, payload: dict[str, Any], issues: list[Issue]) -> float:
        if not isinstance(payload.get("lessons"), list):
            # already reported as a schema failure
            return 0.0
        lessons = [l for l in payload["lessons"] if isinstance(l, dict)]
        if not lessons:
            issues.append(Issue(code="empty-lesson-list", severity=Severity.CRITICAL,
                                message="Section produced no lessons"))
            return 0.0

        cfg = self.config
        completeness = []
        incomplete: list[str] = []
        for lesson in lessons:
            parts = [
                bool(lesson.get("objectives")),
                len(lesson.get("topics") or []) >= 2,
                bool(lesson.get("exercises")),
            ]
            completeness.append(sum(parts) / len(parts))
            if not all(parts):
                incomplete.append(str(lesson.get("title", "?")))
        score = sum(completeness) / len(completeness)

        if incomplete:
            issues.append(Issue(code="incomplete-lesson", severity=Severity.WARNING,
                                message=f"Lessons missing objectives, topics or exercises: {', '.join(incomplete)}"))
        if not cfg.min_lessons <= len(lessons) <= cfg.max_lessons:
            score *= 0.7
            issues.append(Issue(code="lesson-count-out-of-range", severity=Severity.WARNING,
                                message=f"{len(lessons)} lessons, expected {cfg.min_lessons}-{cfg.max_lessons}"))

        titles = [str(l.get("title", "")).strip().lower() for l in lessons]
        if len(set(titles)) != len(titles):
            score -= 0.1
            issues.append(Issue(code="duplicate-lesson-title", severity=Severity.WARNING,
                                message="Duplicate lesson titles within section"))
        return max(0.0, score)

    def _check_metadata_content(self, payload: dict[str, Any], issues: list[Issue]) -> float:
        cfg = self.config
        score = 1.0
        outcomes = payload.get("learning_outcomes") or []
        if len(outcomes) < cfg.min_learning_outcomes:
            score -= 0.4
            issues.append(Issue(code="too-few-learning-outcomes", severity=Severity.WARNING,
                                message=f"{len(outcomes)} learning outcomes, need {cfg.min_learning_outcomes}"))
        tags = payload.get("course_tags") or []
        if len(tags) < cfg.min_course_tags:
            score -= 0.3
            issues.append(Issue(code="too-few-course-tags", severity=Severity.WARNING,
                                message=f"{len(tags)} course tags, need {cfg.min_course_tags}"))
        if len(str(payload.get("course_title", "")).strip()) < 10:
            score -= 0.2
            issues.append(Issue(code="title-too-short", severity=Severity.WARNING,
                                message="Course title shorter than 10 characters"))
        return max(0.0, score)

    # -- language -----------------------------------------------------------

    def _check_language(
        self,
        phase_kind: PhaseKind,
        payload: dict[str, Any],
        guidance: GenerationGuidance | None,
        issues: list[Issue],
    ) -> float:
        cfg = self.config
        score = 1.0

        objectives: list[str] = []
        if phase_kind == PhaseKind.SECTION_BATCH:
            for lesson in payload.get("lessons") or []:
                if isinstance(lesson, dict):
                    objectives.extend(str(o) for o in lesson.get("objectives") or [])
        elif phase_kind == PhaseKind.METADATA:
            objectives.extend(str(o) for o in payload.get("learning_outcomes") or [])

        vague = [o for o in objectives if any(r.search(o) for r in _VERB_RES)]
        if vague:
            score -= 0.5 * len(vague) / len(objectives)
            issues.append(Issue(code="non-measurable-objective", severity=Severity.WARNING,
                                message=f"{len(vague)} objective(s) use non-measurable verbs, e.g. {vague[0]!r}"))

        texts = list(_iter_strings(payload))
        placeholders = [t for t in texts if _PLACEHOLDER_TOKEN_RE.search(t) or _PLACEHOLDER_BRACKET_RE.search(t)]
        if placeholders:
            score -= 0.3
            issues.append(Issue(code="placeholder-text", severity=Severity.WARNING,
                                message=f"Placeholder text found: {placeholders[0][:80]!r}"))

        if guidance and guidance.avoid_jargon:
            blob = "\n".join(texts)
            used = [
                term for term in guidance.avoid_jargon
                if term.strip() and re.search(rf"\b{re.escape(term.strip())}\b", blob, re.IGNORECASE)
            ]
            if used:
                score -= 0.2
                issues.append(Issue(code="avoided-jargon", severity=Severity.WARNING,
                                    message=f"Uses terms the section asked to avoid: {', '.join(used)}"))

        if phase_kind == PhaseKind.METADATA:
            if len(str(payload.get("course_overview", "")).strip()) < cfg.min_overview_chars:
                score -= 0.25
                issues.append(Issue(code="overview-too-short", severity=Severity.WARNING,
                                    message=f"Course overview shorter than {cfg.min_overview_chars} characters"))
            if len(str(payload.get("course_description", "")).strip()) < cfg.min_description_chars:
                score -= 0.25
                issues.append(Issue(code="description-too-short", severity=Severity.WARNING,
                                    message=f"Course description shorter than {cfg.min_description_chars} characters"))
        return max(0.0, score)

    # -- entry point --------------------------------------------------------

    def evaluate(
        self,
        phase_kind: PhaseKind,
        response: ModelResponse,
        *,
        section: SectionSpec | None = None,
        guidance: GenerationGuidance | None = None,
    ) -> GateVerdict:
        """Score *response* for *phase_kind*. Never raises on bad model output."""
        if response.finish_reason == FinishReason.TRUNCATED:
            reason = "timed out" if response.timed_out else "hit the output token limit"
            return failure_verdict("truncated-response", f"Response {reason}")
        if response.finish_reason == FinishReason.ERROR:
            return failure_verdict("model-error", "Model returned an error")
        if response.finish_reason == FinishReason.EMPTY or not response.raw_text.strip():
            return failure_verdict("empty-response", "Model returned no content")

        parsed, error = parse_json_object(response.raw_text)
        if parsed is None:
            return failure_verdict("schema-parse-failure", f"Output is not a JSON object: {error}")

        payload, renamed = normalize_keys(parsed)
        issues: list[Issue] = []
        schema = self._check_schema(phase_kind, payload, renamed, issues)

        if phase_kind == PhaseKind.SECTION_BATCH:
            content = self._check_section_content(payload, issues)
        elif phase_kind == PhaseKind.METADATA:
            content = self._check_metadata_content(payload, issues)
        else:
            content = 1.0 if isinstance(payload.get("issues"), list) else 0.0

        if guidance is None and section is not None:
            guidance = section.generation_guidance
        language = self._check_language(phase_kind, payload, guidance, issues)

        cfg = self.config
        total_weight = cfg.schema_weight + cfg.content_weight + cfg.language_weight
        score = (
            cfg.schema_weight * schema + cfg.content_weight * content + cfg.language_weight * language
        ) / total_weight
        score = round(min(1.0, max(0.0, score)), 4)
        passed = score >= cfg.acceptance_threshold and not any(i.fatal for i in issues)

        verdict = GateVerdict(
            passed=passed,
            score=score,
            dimension_scores=DimensionScores(
                schema_compliance=round(schema, 4),
                content_quality=round(content, 4),
                language_quality=round(language, 4),
            ),
            issues=issues,
            payload=payload,
        )
        logger.debug(
            "Gate %s%s: score=%.3f passed=%s issues=%s",
            phase_kind.value, f" [{section.section_id}]" if section else "", score, passed,
            sorted(verdict.codes),
        )
        return verdict
