"""Persistence of PipelineState between runs."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .models import PipelineState

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def state_path(run_id: str, directory: str | Path) -> Path:
    return Path(directory) / f"{run_id}.json"


def save_state(state: PipelineState, directory: str | Path) -> Path:
    """Write *state* atomically to ``<directory>/<run_id>.json``."""
    path = state_path(state.run_id, directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(state.model_dump_json(indent=2), encoding="utf-8")
    tmp.replace(path)
    logger.debug("Saved run state to %s", path)
    return path


def load_state(run_id: str, directory: str | Path) -> PipelineState:
    """Load a persisted run state.

    Raises:
        FileNotFoundError: if no state exists for *run_id*.
    """
    path = state_path(run_id, directory)
    if not path.exists():
        raise FileNotFoundError(f"No saved state for run {run_id!r} in {directory}")
    return PipelineState.model_validate_json(path.read_text(encoding="utf-8"))
