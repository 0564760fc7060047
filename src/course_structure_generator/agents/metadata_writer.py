"""MetadataWriter: course-level title, overview, outcomes and tags."""

from __future__ import annotations

import json

from ..models import AnalysisArtifact

METADATA_WRITER_SYSTEM_MESSAGE = (
    "You are a curriculum lead writing the course-level metadata for a course whose "
    "sections are summarised below. Respond with a single JSON object using snake_case "
    "keys: course_title (>= 10 chars), course_description (>= 20 chars), "
    "course_overview (>= 30 chars), target_audience, estimated_duration_hours (number), "
    "prerequisites (list of str), learning_outcomes (3-8 measurable outcomes), "
    "course_tags (5-10 short tags), assessment_strategy. Avoid vague verbs such as "
    "understand, know or learn. No markdown fences, no commentary."
)


def build_metadata_context(artifact: AnalysisArtifact, *, trimmed: bool = False) -> str:
    """Base context for the metadata phase. Trimmed form keeps titles and hours only."""
    total_hours = sum(s.estimated_hours for s in artifact.sections)
    sections = []
    for spec in artifact.sections:
        entry: dict = {"section_id": spec.section_id, "title": spec.label, "estimated_hours": spec.estimated_hours}
        if not trimmed:
            entry["objectives"] = spec.objectives
            entry["key_topics"] = spec.key_topics
            entry["difficulty"] = spec.difficulty.value
        sections.append(entry)
    lines = [
        f"# Working title: {artifact.course_title or '(none)'}",
        f"Language: {artifact.language}",
    ]
    if artifact.target_audience:
        lines.append(f"Audience: {artifact.target_audience}")
    lines.append(f"Total estimated hours: {total_hours:g}")
    lines.append("## Sections")
    lines.append(json.dumps(sections, ensure_ascii=False, indent=2))
    return "\n".join(lines)
