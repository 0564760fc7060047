"""Lenient JSON object parsing for model output."""

from __future__ import annotations

import json
import re
from typing import Any


def strip_fences(raw: str) -> str:
    return re.sub(r"```(?:json)?|```", "", raw).strip()


def _outer_object(txt: str) -> str | None:
    if "{" in txt and "}" in txt:
        return txt[txt.find("{"):txt.rfind("}") + 1]
    return None


def attempt_repair(raw: str) -> str | None:
    """Fix the usual model JSON slips: smart quotes, trailing commas, stray backslashes."""
    txt = raw.strip()
    if not txt:
        return None
    txt = _outer_object(txt) or txt
    txt = txt.replace("\u201c", '"').replace("\u201d", '"').replace("\u2018", "'").replace("\u2019", "'")
    txt = re.sub(r",\s*([}\]])", r"\1", txt)
    txt = re.sub(r'\\(?!["\\/bfnrtu])', r'\\\\', txt)
    return txt


def parse_json_object(raw: str) -> tuple[dict[str, Any] | None, str | None]:
    """3-stage parse: direct, outer-object slice, repaired slice.

    Returns ``(payload, None)`` on success or ``(None, error)``.
    """
    errors: list[str] = []
    stripped = strip_fences(raw)
    if not stripped:
        return None, "Empty output"

    # Stage 1: direct parse
    try:
        value = json.loads(stripped)
        if isinstance(value, dict):
            return value, None
        errors.append(f"direct: top-level {type(value).__name__}, expected object")
    except json.JSONDecodeError as e:
        errors.append(f"direct: {e}")

    # Stage 2: outermost {...}
    segment = _outer_object(stripped)
    if segment and segment != stripped:
        try:
            value = json.loads(segment)
            if isinstance(value, dict):
                return value, None
        except json.JSONDecodeError as e:
            errors.append(f"slice: {e}")

    # Stage 3: repair + parse
    repaired = attempt_repair(stripped)
    if repaired:
        try:
            value = json.loads(repaired)
            if isinstance(value, dict):
                return value, None
        except json.JSONDecodeError as e:
            errors.append(f"repair: {e}")

    return None, "; ".join(errors) or "Unparseable"
