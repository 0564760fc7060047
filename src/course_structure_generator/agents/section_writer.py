"""SectionWriter: lesson plan for one course section."""

from __future__ import annotations

import json

from ..models import AnalysisArtifact, CourseMetadata, SectionResult, SectionSpec

SECTION_WRITER_SYSTEM_MESSAGE = (
    "You are an instructional designer. Turn the section analysis you are given into "
    "a lesson plan. Respond with a single JSON object using snake_case keys only:\n"
    '{"lessons": [{"title": str, "objectives": [str], '
    '"topics": [{"name": str, "subtopics": [{"name": str}]}], '
    '"exercises": [{"type": str, "title": str, "description": str}], '
    '"estimated_minutes": int}]}\n'
    "Rules: 3-5 lessons; 1-5 measurable objectives per lesson starting with an "
    "observable verb (explain, implement, compare, build, evaluate); 2-10 topics per "
    "lesson; 3-5 exercises per lesson; no placeholders such as TODO or [insert]. "
    "If you need facts from the source documents, call search_documents. "
    "No markdown fences, no commentary."
)


def build_section_context(
    spec: SectionSpec,
    artifact: AnalysisArtifact,
    *,
    metadata: CourseMetadata | None = None,
    prerequisite_results: list[SectionResult] | None = None,
    trimmed: bool = False,
) -> str:
    """Base context for a section batch.

    The trimmed form drops prerequisite summaries and free-form guidance notes.
    """
    guidance = spec.generation_guidance
    section = {
        "section_id": spec.section_id,
        "title": spec.label,
        "objectives": spec.objectives,
        "key_topics": spec.key_topics,
        "estimated_hours": spec.estimated_hours,
        "difficulty": spec.difficulty.value,
        "prerequisites": spec.prerequisites,
        "guidance": {
            "tone": guidance.tone,
            "avoid_jargon": guidance.avoid_jargon,
            "analogies": guidance.analogies,
            "exercise_types": guidance.exercise_types,
        },
    }
    if guidance.notes and not trimmed:
        section["guidance"]["notes"] = guidance.notes

    lines = [f"# Course: {artifact.course_title or (metadata.course_title if metadata else '')}"]
    lines.append(f"Language: {artifact.language}")
    if metadata and metadata.target_audience:
        lines.append(f"Audience: {metadata.target_audience}")
    lines.append("## Section analysis")
    lines.append(json.dumps(section, ensure_ascii=False, indent=2))

    if prerequisite_results and not trimmed:
        lines.append("## Lessons already planned in prerequisite sections")
        for result in prerequisite_results:
            titles = ", ".join(lesson.title for lesson in result.lessons) or "(none)"
            lines.append(f"- {result.section_id}: {titles}")
    return "\n".join(lines)
