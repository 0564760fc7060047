"""Tests for run state persistence."""

import re

import pytest

from course_structure_generator.models import PipelinePhase, PipelineState, SectionResult, SectionStatus
from course_structure_generator.state import load_state, new_run_id, save_state, state_path


class TestRunId:
    def test_format(self):
        assert re.fullmatch(r"\d{8}T\d{6}-[0-9a-f]{8}", new_run_id())

    def test_unique(self):
        assert new_run_id() != new_run_id()


class TestSaveLoad:
    def test_round_trip(self, tmp_path):
        state = PipelineState(run_id="run-1", phase_cursor=PipelinePhase.SECTIONS, token_spend=1234)
        state.sections["intro"] = SectionResult(section_id="intro", status=SectionStatus.ACCEPTED, attempts_used=2)
        path = save_state(state, tmp_path / "state")
        assert path == state_path("run-1", tmp_path / "state")
        assert not path.with_suffix(".json.tmp").exists()

        loaded = load_state("run-1", tmp_path / "state")
        assert loaded.phase_cursor == PipelinePhase.SECTIONS
        assert loaded.token_spend == 1234
        assert loaded.sections["intro"].attempts_used == 2

    def test_overwrite(self, tmp_path):
        state = PipelineState(run_id="run-1")
        save_state(state, tmp_path)
        state.token_spend = 99
        save_state(state, tmp_path)
        assert load_state("run-1", tmp_path).token_spend == 99

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_state("nope", tmp_path)
