"""ConsistencyReviewer: cross-section review of the lesson plan."""

from __future__ import annotations

import json

from ..models import SectionResult

CONSISTENCY_REVIEWER_SYSTEM_MESSAGE = (
    "You are a cross-section consistency reviewer for course outlines. Check the lesson "
    "titles of all sections for overlap, ordering problems and gaps against the section "
    "objectives. Respond with a single JSON object: "
    '{"consistent": bool, "issues": [{"code": str, "message": str}], "summary": str}. '
    "Report at most 5 issues. No markdown fences, no commentary."
)


def build_review_context(results: list[SectionResult], objectives: dict[str, list[str]]) -> str:
    outline = [
        {
            "section_id": r.section_id,
            "objectives": objectives.get(r.section_id, []),
            "lessons": [lesson.title for lesson in r.lessons],
        }
        for r in results
    ]
    return "## Course outline\n" + json.dumps(outline, ensure_ascii=False, indent=2)
