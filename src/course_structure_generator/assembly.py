"""Validation, assembly and final verification of the course structure.

Everything here is deterministic and free of model calls: the same run
state always assembles to byte-identical JSON.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from .models import (
    AnalysisArtifact,
    CourseMetadata,
    CourseSection,
    CourseStructure,
    Exercise,
    Issue,
    Lesson,
    PipelineState,
    SectionResult,
    SectionSpec,
    SectionStatus,
    Severity,
    TopicNode,
    ValidationReport,
    VerificationResult,
)

# ---------------------------------------------------------------------------
# Payload conversion
# ---------------------------------------------------------------------------


def _topic(value: Any) -> TopicNode | None:
    if isinstance(value, str):
        return TopicNode(name=value.strip()) if value.strip() else None
    if isinstance(value, dict):
        name = str(value.get("name") or value.get("title") or "").strip()
        if not name:
            return None
        subs = [t for t in (_topic(v) for v in value.get("subtopics") or []) if t]
        return TopicNode(name=name, subtopics=subs)
    return None


def _exercise(value: Any, index: int) -> Exercise | None:
    if isinstance(value, str):
        return Exercise(title=value.strip()) if value.strip() else None
    if isinstance(value, dict):
        return Exercise(
            type=str(value.get("type") or "practice"),
            title=str(value.get("title") or f"Exercise {index}"),
            description=str(value.get("description") or ""),
        )
    return None


def lessons_from_payload(payload: dict[str, Any]) -> list[Lesson]:
    """Convert a gate-normalised section payload into Lesson models."""
    lessons: list[Lesson] = []
    for raw in payload.get("lessons") or []:
        if not isinstance(raw, dict) or not str(raw.get("title", "")).strip():
            continue
        minutes = raw.get("estimated_minutes")
        lessons.append(Lesson(
            title=str(raw["title"]).strip(),
            objectives=[str(o).strip() for o in raw.get("objectives") or [] if str(o).strip()],
            topics=[t for t in (_topic(v) for v in raw.get("topics") or []) if t],
            exercises=[e for e in (_exercise(v, i) for i, v in enumerate(raw.get("exercises") or [], 1)) if e],
            estimated_minutes=int(minutes) if isinstance(minutes, (int, float)) and not isinstance(minutes, bool) else None,
        ))
    return lessons


def metadata_from_payload(payload: dict[str, Any]) -> CourseMetadata:
    """Raises ValidationError if required metadata is unusable."""
    fields = set(CourseMetadata.model_fields)
    return CourseMetadata.model_validate({k: v for k, v in payload.items() if k in fields})


# ---------------------------------------------------------------------------
# Validation phase (deterministic part)
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"[^\W\d_]{4,}", re.UNICODE)
_STOPWORDS = frozenset({
    "able", "about", "after", "also", "apply", "based", "basic", "being", "between", "build",
    "compare", "create", "describe", "design", "each", "evaluate", "explain", "from", "have",
    "identify", "implement", "into", "learners", "make", "more", "other", "such", "that",
    "their", "them", "then", "these", "they", "this", "through", "using", "what", "when",
    "where", "which", "will", "with", "your",
})


def _keywords(texts: list[str]) -> set[str]:
    words: set[str] = set()
    for text in texts:
        words.update(w.lower() for w in _WORD_RE.findall(text))
    return words - _STOPWORDS


def _topic_names(topics: list[TopicNode]) -> list[str]:
    names: list[str] = []
    for topic in topics:
        names.append(topic.name)
        names.extend(_topic_names(topic.subtopics))
    return names


def objective_alignment(spec: SectionSpec, lessons: list[Lesson]) -> float:
    """Share of section-objective keywords covered by the lessons, in [0, 1]."""
    wanted = _keywords(spec.objectives)
    if not wanted:
        return 1.0
    covered: list[str] = []
    for lesson in lessons:
        covered.append(lesson.title)
        covered.extend(lesson.objectives)
        covered.extend(_topic_names(lesson.topics))
    return round(len(wanted & _keywords(covered)) / len(wanted), 4)


def _usable(result: SectionResult, accept_degraded: bool) -> bool:
    if result.status == SectionStatus.ACCEPTED:
        return True
    return accept_degraded and result.status == SectionStatus.DEGRADED


def validate_course(
    artifact: AnalysisArtifact,
    results: dict[str, SectionResult],
    *,
    min_alignment: float = 0.2,
    accept_degraded: bool = True,
) -> ValidationReport:
    """Cross-section checks over usable sections. Findings are advisory."""
    report = ValidationReport()
    owners: dict[str, list[str]] = {}
    for spec in artifact.sections:
        result = results.get(spec.section_id)
        if result is None or not _usable(result, accept_degraded):
            continue
        for lesson in result.lessons:
            owners.setdefault(lesson.title.strip().lower(), []).append(spec.section_id)
        score = objective_alignment(spec, result.lessons)
        report.alignment[spec.section_id] = score
        if score < min_alignment:
            report.issues.append(Issue(
                code="low-objective-alignment",
                severity=Severity.WARNING,
                message=f"Section {spec.section_id}: lessons cover {score:.0%} of objective keywords",
            ))

    for title, sections in owners.items():
        distinct = sorted(set(sections))
        if len(distinct) > 1:
            report.issues.append(Issue(
                code="duplicate-lesson-title",
                severity=Severity.WARNING,
                message=f"Lesson title {title!r} appears in sections {', '.join(distinct)}",
            ))
    return report


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def _topic_lines(topics: list[TopicNode], depth: int = 0) -> list[str]:
    lines: list[str] = []
    for topic in topics:
        lines.append(f"{'  ' * depth}- {topic.name}")
        lines.extend(_topic_lines(topic.subtopics, depth + 1))
    return lines


def build_content_prompt(
    lesson: Lesson,
    spec: SectionSpec,
    *,
    course_title: str,
    language: str,
    target_audience: str = "",
) -> str:
    """Instruction block the downstream renderer uses to write the lesson body."""
    guidance = spec.generation_guidance
    lines = [
        f'Write the lesson "{lesson.title}" ({lesson.lesson_id}) of the course "{course_title}".',
        f"Section: {spec.label}. Difficulty: {spec.difficulty.value}. Language: {language}.",
    ]
    if target_audience:
        lines.append(f"Audience: {target_audience}.")
    if lesson.estimated_minutes:
        lines.append(f"Target length: about {lesson.estimated_minutes} minutes of study.")
    lines.append("Objectives:")
    lines.extend(f"- {o}" for o in lesson.objectives)
    lines.append("Topics:")
    lines.extend(_topic_lines(lesson.topics))
    if lesson.exercises:
        lines.append("Exercises:")
        lines.extend(f"- [{e.type}] {e.title}: {e.description}".rstrip(": ") for e in lesson.exercises)
    if guidance.tone:
        lines.append(f"Tone: {guidance.tone}.")
    if guidance.analogies:
        lines.append(f"Useful analogies: {', '.join(guidance.analogies)}.")
    if guidance.avoid_jargon:
        lines.append(f"Avoid these terms: {', '.join(guidance.avoid_jargon)}.")
    return "\n".join(lines)


def assemble_course(
    artifact: AnalysisArtifact,
    state: PipelineState,
    *,
    accept_degraded: bool = True,
) -> CourseStructure:
    """Merge metadata and usable section results in artifact order. Pure."""
    metadata = state.metadata.metadata
    course_title = (metadata.course_title if metadata else "") or artifact.course_title
    audience = (metadata.target_audience if metadata else "") or artifact.target_audience

    sections: list[CourseSection] = []
    for spec in artifact.sections:
        result = state.sections.get(spec.section_id) or SectionResult(section_id=spec.section_id)
        notes = list(result.notes)
        lessons: list[Lesson] = []
        if _usable(result, accept_degraded):
            for n, lesson in enumerate(result.lessons, 1):
                numbered = lesson.model_copy(update={"lesson_id": f"{spec.section_id}.{n}"}, deep=True)
                numbered.content_prompt = build_content_prompt(
                    numbered, spec, course_title=course_title, language=artifact.language,
                    target_audience=audience,
                )
                lessons.append(numbered)
        elif result.status == SectionStatus.DEGRADED:
            notes.append("excluded from assembly: degraded sections not accepted")

        sections.append(CourseSection(
            section_id=spec.section_id,
            title=spec.label,
            status=result.status,
            lessons=lessons,
            issues=list(result.final_verdict.issues) if result.final_verdict else [],
            attempts_used=result.attempts_used,
            model_tier=result.model_tier,
            notes=notes,
        ))

    return CourseStructure(
        run_id=state.run_id,
        language=artifact.language,
        course=metadata,
        sections=sections,
        validation=state.validation or ValidationReport(),
    )


def render_artifact(course: CourseStructure) -> str:
    """Serialise to the on-disk JSON form. Equal input gives identical bytes."""
    return json.dumps(course.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Final verification
# ---------------------------------------------------------------------------


def verify_course(course: CourseStructure, artifact: AnalysisArtifact) -> VerificationResult:
    """Re-validate the rendered artifact and check structural invariants."""
    issues: list[Issue] = []
    try:
        CourseStructure.model_validate_json(render_artifact(course))
    except ValidationError as e:
        issues.append(Issue(code="verification-schema", severity=Severity.CRITICAL, message=str(e)[:500]))

    ids = [s.section_id for s in course.sections]
    if ids != artifact.section_ids:
        issues.append(Issue(
            code="verification-section-mismatch",
            severity=Severity.CRITICAL,
            message=f"Sections {ids} do not match analysis order {artifact.section_ids}",
        ))

    seen: set[str] = set()
    for section in course.sections:
        if section.lessons and section.status not in (SectionStatus.ACCEPTED, SectionStatus.DEGRADED):
            issues.append(Issue(code="verification-unaccepted-lessons", severity=Severity.CRITICAL,
                                message=f"Section {section.section_id} is {section.status.value} but has lessons"))
        for lesson in section.lessons:
            if lesson.lesson_id in seen or not lesson.lesson_id:
                issues.append(Issue(code="verification-lesson-id", severity=Severity.CRITICAL,
                                    message=f"Missing or duplicate lesson id {lesson.lesson_id!r}"))
            seen.add(lesson.lesson_id)
            if not lesson.content_prompt.strip():
                issues.append(Issue(code="verification-empty-prompt", severity=Severity.CRITICAL,
                                    message=f"Lesson {lesson.lesson_id} has no content prompt"))

    if course.course is None:
        issues.append(Issue(code="verification-missing-metadata", severity=Severity.WARNING,
                            message="Course metadata missing"))
    return VerificationResult(passed=not any(i.fatal for i in issues), issues=issues)
