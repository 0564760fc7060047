"""End-to-end pipeline tests against fake model and retrieval boundaries."""

import asyncio
import copy
import json

import pytest

from conftest import (
    FakeModelClient,
    FakeStore,
    default_responder,
    json_response,
    tool_call_response,
)
from course_structure_generator.analysis import parse_analysis
from course_structure_generator.errors import ProviderRejected, SchemaViolation
from course_structure_generator.models import (
    PhaseKind,
    PipelinePhase,
    RetrievalConfig,
    RetrievedChunk,
    SectionStatus,
)
from course_structure_generator.pipeline import COURSE_FILE, REPORT_FILE, Pipeline
from course_structure_generator.state import load_state


class RecordingCallbacks:
    def __init__(self):
        self.events = []

    def on_phase_start(self, phase, description):
        self.events.append(("phase_start", phase))

    def on_phase_end(self, phase, success):
        self.events.append(("phase_end", phase, success))

    def on_section_start(self, section_id):
        self.events.append(("section_start", section_id))

    def on_section_end(self, section_id, status):
        self.events.append(("section_end", section_id, status))

    def on_attempt(self, label, tier, attempt):
        self.events.append(("attempt", label, tier, attempt))

    def on_escalation(self, label, from_tier, to_tier, reason):
        self.events.append(("escalation", label, from_tier, to_tier))

    def on_warning(self, message):
        self.events.append(("warning", message))

    def on_error(self, message):
        self.events.append(("error", message))


class ConcurrencyTrackingClient(FakeModelClient):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.peak = 0

    async def invoke(self, request):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            return await super().invoke(request)
        finally:
            self.active -= 1


class SlowPhaseClient(FakeModelClient):
    """Blocks for *hold* seconds on one phase, calling *on_slow* when it starts."""

    def __init__(self, slow_phase, hold=2.0):
        super().__init__()
        self.slow_phase = slow_phase
        self.hold = hold
        self.on_slow = None
        self.finished_slow = False

    async def invoke(self, request):
        if request.phase_kind != self.slow_phase:
            return await super().invoke(request)
        self.requests.append(request)
        if self.on_slow is not None:
            self.on_slow()
        await asyncio.sleep(self.hold)
        self.finished_slow = True
        return default_responder(request)


def _pipeline(config, client, artifact=None, **kwargs):
    return Pipeline(
        config,
        callbacks=kwargs.pop("callbacks", RecordingCallbacks()),
        model_client=client,
        artifact=artifact,
        **kwargs,
    )


class TestFullRun:
    @pytest.mark.asyncio
    async def test_success(self, config, artifact, fake_client, tmp_path):
        pipeline = _pipeline(config, fake_client, artifact)
        result = await pipeline.arun()

        assert result.success, result.errors
        assert result.errors == []
        assert [s.status for s in result.sections] == [SectionStatus.ACCEPTED] * 4
        assert result.phases_completed == list(PipelinePhase)
        assert result.token_spend == 5 * 150
        assert result.verification.passed

        written = json.loads((tmp_path / "output" / COURSE_FILE).read_text(encoding="utf-8"))
        assert [s["section_id"] for s in written["sections"]] == artifact.section_ids
        assert written["sections"][0]["lessons"][0]["lesson_id"] == "intro.1"
        report = json.loads((tmp_path / "output" / REPORT_FILE).read_text(encoding="utf-8"))
        assert report["success"] is True
        assert "course" not in report
        assert load_state(result.run_id, tmp_path / "state").sections["models"].status == SectionStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_prerequisites_before_dependents(self, config, artifact, fake_client):
        pipeline = _pipeline(config, fake_client, artifact)
        await pipeline.arun()

        order = pipeline.state.started_order
        for spec in artifact.sections:
            for dep in spec.prerequisites:
                assert order.index(dep) < order.index(spec.section_id)
        section_requests = [r.section_id for r in fake_client.requests if r.phase_kind == PhaseKind.SECTION_BATCH]
        assert section_requests == ["intro", "data", "models", "evaluation"]

    @pytest.mark.asyncio
    async def test_prerequisite_summary_in_context(self, config, artifact, fake_client):
        await _pipeline(config, fake_client, artifact).arun()
        [models_request] = fake_client.requests_for("models")
        assert "Data lesson 1" in models_request.base_context

    @pytest.mark.asyncio
    async def test_parallelism_bounded(self, config, sample_analysis_data):
        data = copy.deepcopy(sample_analysis_data)
        for section in data["sections"]:
            section["prerequisites"] = []
        artifact = parse_analysis(data)
        config = config.model_copy(update={"max_parallel_sections": 2})
        client = ConcurrencyTrackingClient(delay=0.01)

        result = await _pipeline(config, client, artifact).arun()
        assert result.success
        assert client.peak == 2

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_model_calls(self, config, sample_analysis_data, tmp_path, fake_client):
        data = copy.deepcopy(sample_analysis_data)
        data["sections"][0]["prerequisites"] = ["evaluation"]
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        config = config.model_copy(update={"analysis_path": str(path)})

        with pytest.raises(SchemaViolation, match="cycle"):
            await _pipeline(config, fake_client).arun()
        assert fake_client.requests == []

    @pytest.mark.asyncio
    async def test_loads_artifact_from_config_dir(self, config, fixtures_dir, fake_client):
        config = config.model_copy(update={"analysis_path": "sample_analysis.json"})
        pipeline = Pipeline(config, config_dir=fixtures_dir, callbacks=RecordingCallbacks(), model_client=fake_client)
        result = await pipeline.arun()
        assert result.success
        assert pipeline.artifact.course_title == "Practical Machine Learning"


class TestDegradedAndFailedRuns:
    @pytest.mark.asyncio
    async def test_retrieval_down_degrades_sections(self, config, artifact):
        config = config.model_copy(update={"retrieval": RetrievalConfig(enabled=True)})

        def responder(request):
            if request.phase_kind == PhaseKind.SECTION_BATCH and request.retrieval_enabled:
                return tool_call_response(f"{request.section_id} examples")
            return default_responder(request)

        client = FakeModelClient(responder)
        store = FakeStore(error=ConnectionError("vector store offline"))
        result = await _pipeline(config, client, artifact, retrieval_store=store).arun()

        assert result.success
        assert [s.status for s in result.sections] == [SectionStatus.DEGRADED] * 4
        assert all(any("retrieval unavailable" in n for n in s.notes) for s in result.sections)
        assert len(store.calls) == 4
        assert all(s.lessons for s in result.course.sections)

    @pytest.mark.asyncio
    async def test_missing_vector_store_warns(self, config, artifact, fake_client, tmp_path):
        config = config.model_copy(update={
            "retrieval": RetrievalConfig(enabled=True, persist_dir="no-index/"),
        })
        callbacks = RecordingCallbacks()
        result = await _pipeline(
            config, fake_client, artifact, callbacks=callbacks, config_dir=tmp_path,
        ).arun()

        assert result.success
        warnings = [e[1] for e in callbacks.events if e[0] == "warning"]
        assert any("No vector store collection" in w and "no-index" in w for w in warnings)

    @pytest.mark.asyncio
    async def test_retrieval_trace_recorded(self, config, artifact):
        config = config.model_copy(update={"retrieval": RetrievalConfig(enabled=True)})
        chunks = [
            RetrievedChunk(text=f"{sid} passage", source_id=f"{sid}-1", section_id=sid, relevance_score=0.8)
            for sid in artifact.section_ids
        ]

        def responder(request):
            if request.phase_kind == PhaseKind.SECTION_BATCH and not request.retrieved_context:
                return tool_call_response("background")
            return default_responder(request)

        result = await _pipeline(config, FakeModelClient(responder), artifact, retrieval_store=FakeStore(chunks)).arun()
        evaluation = result.sections[3]
        assert evaluation.status == SectionStatus.ACCEPTED
        [trace] = evaluation.retrieval_queries
        assert set(trace.source_ids) <= {"evaluation-1", "models-1", "data-1"}

    @pytest.mark.asyncio
    async def test_all_sections_fail(self, config, artifact, tmp_path):
        def responder(request):
            if request.phase_kind == PhaseKind.SECTION_BATCH:
                return json_response({"lessons": []})
            return default_responder(request)

        client = FakeModelClient(responder)
        result = await _pipeline(config, client, artifact).arun()

        assert not result.success
        assert "All sections failed" in result.errors
        assert all(s.status == SectionStatus.FAILED for s in result.sections)
        assert len(client.requests_for("data")) == 3
        assert (tmp_path / "output" / COURSE_FILE).exists()

    @pytest.mark.asyncio
    async def test_one_section_failure_below_threshold(self, config, artifact):
        config = config.model_copy(update={"min_section_success_fraction": 0.8})

        def responder(request):
            if request.section_id == "evaluation":
                return ProviderRejected("blocked")
            return default_responder(request)

        result = await _pipeline(config, FakeModelClient(responder), artifact).arun()
        assert not result.success
        assert result.sections[3].status == SectionStatus.FAILED
        assert result.sections[3].attempts_used == 1
        assert any("3/4" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_failed_prerequisite_does_not_block(self, config, artifact):
        def responder(request):
            if request.section_id == "data":
                return ProviderRejected("blocked")
            return default_responder(request)

        result = await _pipeline(config, FakeModelClient(responder), artifact).arun()
        statuses = {s.section_id: s.status for s in result.sections}
        assert statuses["data"] == SectionStatus.FAILED
        assert statuses["models"] == SectionStatus.ACCEPTED
        assert statuses["evaluation"] == SectionStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_metadata_failure(self, config, artifact):
        def responder(request):
            if request.phase_kind == PhaseKind.METADATA:
                return ProviderRejected("blocked")
            return default_responder(request)

        callbacks = RecordingCallbacks()
        result = await _pipeline(config, FakeModelClient(responder), artifact, callbacks=callbacks).arun()
        assert not result.success
        assert "Metadata phase failed" in result.errors
        assert all(s.status == SectionStatus.ACCEPTED for s in result.sections)
        assert result.course.course is None
        assert any(e[0] == "warning" for e in callbacks.events)


class TestValidationReview:
    @pytest.mark.asyncio
    async def test_review_enabled(self, config, artifact, fake_client):
        config = config.model_copy(update={"validation_review_enabled": True})
        result = await _pipeline(config, fake_client, artifact).arun()
        assert result.course.validation.review_summary == "Coherent outline"
        assert any(r.phase_kind == PhaseKind.VALIDATION for r in fake_client.requests)

    @pytest.mark.asyncio
    async def test_review_failure_is_advisory(self, config, artifact):
        config = config.model_copy(update={"validation_review_enabled": True})

        def responder(request):
            if request.phase_kind == PhaseKind.VALIDATION:
                return ProviderRejected("blocked")
            return default_responder(request)

        result = await _pipeline(config, FakeModelClient(responder), artifact).arun()
        assert result.success
        codes = {i.code for i in result.course.validation.issues}
        assert "consistency-review-failed" in codes


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, config, artifact, fake_client):
        pipeline = _pipeline(config, fake_client, artifact)
        pipeline.cancel()
        result = await pipeline.arun()

        assert fake_client.requests == []
        assert result.cancelled
        assert not result.success
        assert "Run cancelled" in result.errors
        assert all(s.status == SectionStatus.FAILED for s in result.sections)

    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, config, artifact):
        holder = {}

        def responder(request):
            if request.section_id == "data":
                holder["pipeline"].cancel()
            return default_responder(request)

        client = FakeModelClient(responder)
        pipeline = _pipeline(config, client, artifact)
        holder["pipeline"] = pipeline
        result = await pipeline.arun()

        assert result.cancelled
        assert not result.success
        statuses = {s.section_id: s.status for s in result.sections}
        assert statuses["intro"] == SectionStatus.ACCEPTED
        assert statuses["models"] == SectionStatus.FAILED
        assert statuses["evaluation"] == SectionStatus.FAILED
        assert client.requests_for("models") == []
        assert result.sections[2].final_verdict.codes == {"cancelled"}

    @pytest.mark.asyncio
    async def test_cancel_from_other_thread(self, config, artifact):
        pipeline = _pipeline(config, FakeModelClient(delay=0.05), artifact)

        async def cancel_soon():
            await asyncio.sleep(0.02)
            await asyncio.to_thread(pipeline.cancel)

        result, _ = await asyncio.gather(pipeline.arun(), cancel_soon())
        assert result.cancelled

    @pytest.mark.asyncio
    async def test_cancel_during_metadata_call(self, config, artifact):
        client = SlowPhaseClient(PhaseKind.METADATA)
        pipeline = _pipeline(config, client, artifact)
        client.on_slow = lambda: asyncio.get_running_loop().call_later(0.05, pipeline.cancel)

        result = await asyncio.wait_for(pipeline.arun(), timeout=1.0)

        assert not client.finished_slow
        assert result.cancelled
        assert not result.success
        metadata = pipeline.state.metadata
        assert metadata.status == SectionStatus.FAILED
        assert metadata.final_verdict.codes == {"cancelled"}
        assert [r.phase_kind for r in client.requests] == [PhaseKind.METADATA]
        assert all(s.final_verdict.codes == {"cancelled"} for s in result.sections)

    @pytest.mark.asyncio
    async def test_cancel_during_review_call(self, config, artifact):
        config = config.model_copy(update={"validation_review_enabled": True})
        client = SlowPhaseClient(PhaseKind.VALIDATION)
        pipeline = _pipeline(config, client, artifact)
        client.on_slow = lambda: asyncio.get_running_loop().call_later(0.05, pipeline.cancel)

        result = await asyncio.wait_for(pipeline.arun(), timeout=1.0)

        assert not client.finished_slow
        assert result.cancelled
        assert not result.success
        assert all(s.status == SectionStatus.ACCEPTED for s in result.sections)
        assert "cancelled" in {i.code for i in pipeline.state.validation.issues}


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_reruns_only_unaccepted(self, config, artifact, tmp_path):
        def first(request):
            if request.section_id == "models":
                return ProviderRejected("blocked")
            return default_responder(request)

        first_run = await _pipeline(config, FakeModelClient(first), artifact).arun()
        assert first_run.sections[2].status == SectionStatus.FAILED

        client = FakeModelClient()
        resumed_config = config.model_copy(update={"resume_run_id": first_run.run_id})
        result = await _pipeline(resumed_config, client, artifact).arun()

        assert result.success
        assert result.run_id == first_run.run_id
        assert [r.section_id for r in client.requests] == ["models"]
        assert all(s.status == SectionStatus.ACCEPTED for s in result.sections)

    def test_resume_missing_state(self, config, artifact, fake_client):
        config = config.model_copy(update={"resume_run_id": "does-not-exist"})
        with pytest.raises(FileNotFoundError):
            _pipeline(config, fake_client, artifact).run()


class TestPartialModes:
    def test_validate_only(self, config, artifact, fake_client):
        returned = _pipeline(config, fake_client, artifact).run_validate_only()
        assert returned.section_ids == artifact.section_ids
        assert fake_client.requests == []

    def test_assemble_only_requires_run_id(self, config, artifact, fake_client):
        with pytest.raises(ValueError):
            _pipeline(config, fake_client, artifact).run_assemble_only()

    def test_assemble_from_saved_state(self, config, artifact, tmp_path):
        first = _pipeline(config, FakeModelClient(), artifact).run()
        (tmp_path / "output" / COURSE_FILE).unlink()

        client = FakeModelClient()
        config = config.model_copy(update={"resume_run_id": first.run_id, "validation_review_enabled": True})
        result = _pipeline(config, client, artifact).run_assemble_only()

        assert result.success
        assert client.requests == []
        assert (tmp_path / "output" / COURSE_FILE).exists()
        assert result.phases_completed[0] == PipelinePhase.VALIDATION
