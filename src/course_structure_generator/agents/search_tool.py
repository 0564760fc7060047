"""``search_documents`` tool declaration and per-phase message assembly."""

from __future__ import annotations

from typing import Any

from ..models import PhaseKind, PhaseRequest
from .consistency_reviewer import CONSISTENCY_REVIEWER_SYSTEM_MESSAGE
from .metadata_writer import METADATA_WRITER_SYSTEM_MESSAGE
from .section_writer import SECTION_WRITER_SYSTEM_MESSAGE

DEFAULT_SEARCH_LIMIT = 3
MAX_SEARCH_LIMIT = 10

SEARCH_DOCUMENTS_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "search_documents",
        "description": (
            "Search the source documents of this course section for passages that "
            "support the lesson plan. Use it only when the provided context is not "
            "enough to ground specific facts, examples or exercises."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Focused natural-language search query",
                },
                "limit": {
                    "type": "integer",
                    "description": f"Number of passages to return (default {DEFAULT_SEARCH_LIMIT}, max {MAX_SEARCH_LIMIT})",
                    "minimum": 1,
                    "maximum": MAX_SEARCH_LIMIT,
                },
            },
            "required": ["query"],
        },
    },
}


def _system_message(kind: PhaseKind) -> str:
    return {
        PhaseKind.METADATA: METADATA_WRITER_SYSTEM_MESSAGE,
        PhaseKind.SECTION_BATCH: SECTION_WRITER_SYSTEM_MESSAGE,
        PhaseKind.VALIDATION: CONSISTENCY_REVIEWER_SYSTEM_MESSAGE,
    }[kind]


def build_messages(request: PhaseRequest) -> list[dict[str, str]]:
    """Render a PhaseRequest as chat messages."""
    parts = [request.base_context]
    if request.retrieved_context:
        parts.append("## Retrieved source passages")
        for chunk in request.retrieved_context:
            parts.append(f"[{chunk.source_id}]\n{chunk.text}")
    if request.corrective_instruction:
        parts.append("## Correction required\n" + request.corrective_instruction)
    return [
        {"role": "system", "content": _system_message(request.phase_kind)},
        {"role": "user", "content": "\n\n".join(parts)},
    ]
