"""Loading and structural validation of the upstream analysis artifact."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import SchemaViolation
from .models import AnalysisArtifact


def _format_validation_error(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


def find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    """Return one prerequisite cycle as a path (first node repeated), or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {node: WHITE for node in graph}
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        colour[node] = GREY
        stack.append(node)
        for dep in graph.get(node, []):
            if colour.get(dep) == GREY:
                return stack[stack.index(dep):] + [dep]
            if colour.get(dep) == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        colour[node] = BLACK
        return None

    for node in graph:
        if colour[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def validate_dependencies(artifact: AnalysisArtifact) -> None:
    """Check section ids are unique and prerequisites form a DAG over known sections.

    Raises:
        SchemaViolation: on duplicate ids, unknown prerequisites or a cycle.
    """
    errors: list[str] = []
    ids = artifact.section_ids
    seen: set[str] = set()
    for section_id in ids:
        if section_id in seen:
            errors.append(f"duplicate section_id {section_id!r}")
        seen.add(section_id)

    for spec in artifact.sections:
        for dep in spec.prerequisites:
            if dep == spec.section_id:
                errors.append(f"section {spec.section_id!r} lists itself as a prerequisite")
            elif dep not in seen:
                errors.append(f"section {spec.section_id!r} has unknown prerequisite {dep!r}")
    if errors:
        raise SchemaViolation("Invalid analysis artifact", errors)

    cycle = find_cycle({s.section_id: list(s.prerequisites) for s in artifact.sections})
    if cycle:
        raise SchemaViolation("Invalid analysis artifact", [f"prerequisite cycle: {' -> '.join(cycle)}"])


def parse_analysis(data: dict[str, Any]) -> AnalysisArtifact:
    """Validate raw analysis JSON (camelCase or snake_case keys).

    Raises:
        SchemaViolation: if fields are missing or malformed, or the
            prerequisite graph is not a DAG.
    """
    try:
        artifact = AnalysisArtifact.model_validate(data)
    except ValidationError as e:
        raise SchemaViolation("Invalid analysis artifact", _format_validation_error(e)) from e
    validate_dependencies(artifact)
    return artifact


def load_analysis(path: str | Path) -> AnalysisArtifact:
    """Load and validate an analysis artifact from a JSON file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Analysis artifact not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SchemaViolation(f"Analysis artifact is not valid JSON: {path}", [str(e)]) from e
    if not isinstance(data, dict):
        raise SchemaViolation(f"Analysis artifact must be a JSON object: {path}")
    return parse_analysis(data)


def topological_order(artifact: AnalysisArtifact) -> list[str]:
    """Section ids with every prerequisite before its dependents, ties in artifact order."""
    remaining = {s.section_id: set(s.prerequisites) for s in artifact.sections}
    order: list[str] = []
    while remaining:
        ready = [sid for sid in artifact.section_ids if sid in remaining and not remaining[sid]]
        if not ready:
            raise SchemaViolation("Invalid analysis artifact", ["prerequisite cycle"])
        for sid in ready:
            order.append(sid)
            del remaining[sid]
        for deps in remaining.values():
            deps.difference_update(ready)
    return order
