"""Pipeline: analysis artifact -> validated course structure.

Phase 1: INPUT         - Load and validate the analysis artifact (no model calls)
Phase 2: METADATA      - Course-level metadata, one lineage
Phase 3: SECTIONS      - One lineage per section, scheduled along the prerequisite DAG
Phase 4: VALIDATION    - Cross-section checks, optional LLM consistency review
Phase 5: ASSEMBLY      - Pure merge of accepted outputs into the course structure
Phase 6: VERIFICATION  - Re-validate the assembled artifact

The coordinator is the only writer of ``PipelineState``. Section tasks
return ``LineageOutcome`` values and the scheduling loop applies them.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine

from pydantic import ValidationError

from .agents.consistency_reviewer import build_review_context
from .agents.metadata_writer import build_metadata_context
from .agents.section_writer import build_section_context
from .analysis import load_analysis, topological_order
from .assembly import (
    assemble_course,
    lessons_from_payload,
    metadata_from_payload,
    render_artifact,
    validate_course,
    verify_course,
)
from .controller import LineageOutcome, RetryController
from .executor import PhaseExecutor
from .logging_config import PipelineCallbacks, RichCallbacks
from .models import (
    AnalysisArtifact,
    CourseStructure,
    Issue,
    PhaseKind,
    PipelinePhase,
    PipelineResult,
    PipelineState,
    ProjectConfig,
    SectionResult,
    SectionStatus,
    Severity,
    VerificationResult,
)
from .quality_gate import QualityGate, failure_verdict
from .state import load_state, new_run_id, save_state
from .tools.model_client import AG2ModelClient, ModelClient
from .tools.retrieval import ChromaRetrievalStore, RetrievalGateway, RetrievalStore

logger = logging.getLogger(__name__)

COURSE_FILE = "course_structure.json"
REPORT_FILE = "run_report.json"


class Pipeline:
    """Orchestrates course-structure generation for one analysis artifact."""

    def __init__(
        self,
        config: ProjectConfig,
        config_dir: Path | None = None,
        callbacks: PipelineCallbacks | None = None,
        *,
        model_client: ModelClient | None = None,
        retrieval_store: RetrievalStore | None = None,
        artifact: AnalysisArtifact | None = None,
    ) -> None:
        self.config = config
        self.config_dir = config_dir or Path(".")
        self.callbacks = callbacks or RichCallbacks()

        # Resolve paths relative to config dir
        self.analysis_path = self.config_dir / config.analysis_path
        self.output_dir = self.config_dir / config.output_dir
        self.state_dir = self.config_dir / config.state_dir

        self.model_client = model_client
        self.retrieval_store = retrieval_store
        self.artifact = artifact
        self.gate = QualityGate(config.gate)
        self.controller: RetryController | None = None
        self.gateway: RetrievalGateway | None = None

        # State
        self.state = PipelineState(run_id=config.run_id or new_run_id())
        self._cancel_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    # -----------------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is not loop:
                loop.call_soon_threadsafe(self._cancel_event.set)
                return
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # -----------------------------------------------------------------------
    # Phase 1: Input
    # -----------------------------------------------------------------------

    def run_input(self, *, reset_unresolved: bool = True) -> AnalysisArtifact:
        """Load and validate the artifact and seed the run state.

        When resuming, sections that were not accepted are reset to pending
        unless *reset_unresolved* is False.

        Raises:
            SchemaViolation: malformed artifact or prerequisite cycle.
            FileNotFoundError: missing artifact or resume state.
        """
        self.state.phase_cursor = PipelinePhase.INPUT
        if self.artifact is None:
            self.artifact = load_analysis(self.analysis_path)
        artifact = self.artifact
        topological_order(artifact)

        if self.config.resume_run_id:
            previous = load_state(self.config.resume_run_id, self.state_dir)
            self.state = previous.model_copy(update={"phase_cursor": PipelinePhase.INPUT, "cancelled": False})
            self.state.validation = None
            for sid, result in list(self.state.sections.items()):
                if sid not in artifact.section_ids:
                    del self.state.sections[sid]
                elif reset_unresolved and result.status not in (SectionStatus.ACCEPTED, SectionStatus.DEGRADED):
                    self.state.sections[sid] = SectionResult(section_id=sid)
            if reset_unresolved and self.state.metadata.status != SectionStatus.ACCEPTED:
                self.state.metadata = self.state.metadata.model_copy(
                    update={"status": SectionStatus.PENDING, "metadata": None}
                )
            logger.info("Resuming run %s", self.state.run_id)

        for sid in artifact.section_ids:
            self.state.sections.setdefault(sid, SectionResult(section_id=sid))
        logger.info(
            "Loaded analysis: %d sections, language %s", len(artifact.sections), artifact.language,
        )
        return artifact

    def _build_runtime(self) -> RetryController:
        if self.controller is not None:
            return self.controller
        assert self.artifact is not None
        client = self.model_client or AG2ModelClient(self.config)
        if self.config.retrieval.enabled:
            store = self.retrieval_store
            if store is None:
                chroma = ChromaRetrievalStore.from_config(self.config.retrieval, base_dir=self.config_dir)
                if not chroma.exists():
                    message = (
                        f"No vector store collection {chroma.collection_name!r} at {chroma.persist_dir}; "
                        "sections that search will be marked degraded"
                    )
                    logger.warning(message)
                    self.callbacks.on_warning(message)
                store = chroma
            self.gateway = RetrievalGateway(store, self.artifact, max_limit=self.config.retrieval.max_limit)
        executor = PhaseExecutor(client, self.config, gateway=self.gateway)
        self.controller = RetryController(executor, self.gate, self.config, callbacks=self.callbacks)
        return self.controller

    def _add_spend(self, outcome: LineageOutcome) -> None:
        self.state.token_spend += outcome.usage.total

    def _persist(self) -> None:
        if self.config.persist_state:
            save_state(self.state, self.state_dir)

    async def _run_cancellable(self, lineage: Coroutine[Any, Any, LineageOutcome]) -> LineageOutcome | None:
        """Await *lineage*, aborting its in-flight model call on cancellation.

        Returns None when the run was cancelled before the lineage finished.
        """
        task = asyncio.ensure_future(lineage)
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait([task, cancel_wait], return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            return None
        return task.result()

    # -----------------------------------------------------------------------
    # Phase 2: Metadata
    # -----------------------------------------------------------------------

    async def run_metadata(self) -> bool:
        """Generate course metadata. Returns True when accepted."""
        self.state.phase_cursor = PipelinePhase.METADATA
        if self.state.metadata.status == SectionStatus.ACCEPTED:
            logger.info("Metadata reused from previous run")
            return True

        artifact = self.artifact
        assert artifact is not None
        controller = self._build_runtime()
        self.state.metadata.status = SectionStatus.RUNNING

        outcome = await self._run_cancellable(controller.run_lineage(
            PhaseKind.METADATA,
            lambda trimmed: build_metadata_context(artifact, trimmed=trimmed),
            cancel_event=self._cancel_event,
        ))
        result = self.state.metadata
        if outcome is None:
            result.status = SectionStatus.FAILED
            result.final_verdict = failure_verdict("cancelled", "Run cancelled during metadata generation")
            return False
        self._add_spend(outcome)

        result.final_verdict = outcome.verdict
        result.attempts_used = outcome.attempts_used
        result.model_tier = outcome.model_tier
        result.notes = list(outcome.notes)
        result.status = SectionStatus.FAILED
        if outcome.accepted:
            try:
                result.metadata = metadata_from_payload(outcome.verdict.payload or {})
                result.status = SectionStatus.ACCEPTED
            except ValidationError as e:
                logger.warning("Accepted metadata could not be converted: %s", e)
                result.notes.append(f"metadata conversion failed: {e.error_count()} error(s)")
        return result.status == SectionStatus.ACCEPTED

    # -----------------------------------------------------------------------
    # Phase 3: Section batches
    # -----------------------------------------------------------------------

    def _section_context(self, section_id: str, trimmed: bool) -> str:
        artifact = self.artifact
        assert artifact is not None
        spec = artifact.section(section_id)
        prereqs = [
            self.state.sections[dep] for dep in spec.prerequisites
            if self.state.sections[dep].status in (SectionStatus.ACCEPTED, SectionStatus.DEGRADED)
        ]
        return build_section_context(
            spec, artifact,
            metadata=self.state.metadata.metadata,
            prerequisite_results=prereqs,
            trimmed=trimmed,
        )

    async def _section_task(
        self,
        section_id: str,
        controller: RetryController,
        semaphore: asyncio.Semaphore,
    ) -> LineageOutcome:
        assert self.artifact is not None
        spec = self.artifact.section(section_id)
        async with semaphore:
            return await controller.run_lineage(
                PhaseKind.SECTION_BATCH,
                lambda trimmed: self._section_context(section_id, trimmed),
                section=spec,
                retrieval_enabled=self.gateway is not None,
                cancel_event=self._cancel_event,
            )

    def _apply_section_outcome(self, section_id: str, outcome: LineageOutcome) -> SectionResult:
        result = self.state.sections[section_id]
        result.final_verdict = outcome.verdict
        result.attempts_used = outcome.attempts_used
        result.model_tier = outcome.model_tier
        result.retrieval_queries = list(outcome.retrieval_queries)
        result.notes = list(outcome.notes)
        self._add_spend(outcome)

        if outcome.accepted:
            lessons = lessons_from_payload(outcome.verdict.payload or {})
            if lessons:
                result.lessons = lessons
                result.status = SectionStatus.DEGRADED if outcome.degraded else SectionStatus.ACCEPTED
                return result
            result.notes.append("accepted output contained no usable lessons")
        result.status = SectionStatus.FAILED
        return result

    def _fail_section(self, section_id: str, code: str, message: str) -> None:
        result = self.state.sections[section_id]
        result.status = SectionStatus.FAILED
        result.final_verdict = failure_verdict(code, message)
        result.lessons = []

    async def run_sections(self) -> None:
        """Run one lineage per unresolved section along the prerequisite DAG.

        A section is scheduled only after all of its prerequisites are
        resolved (accepted, degraded or failed). At most
        ``max_parallel_sections`` lineages call the model at once.
        """
        self.state.phase_cursor = PipelinePhase.SECTIONS
        artifact = self.artifact
        assert artifact is not None
        controller = self._build_runtime()
        semaphore = asyncio.Semaphore(self.config.max_parallel_sections)

        pending = [sid for sid in artifact.section_ids if not self.state.sections[sid].resolved]
        running: dict[asyncio.Task, str] = {}
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())

        try:
            while (pending or running) and not self.cancelled:
                for sid in list(pending):
                    spec = artifact.section(sid)
                    if all(self.state.sections[dep].resolved for dep in spec.prerequisites):
                        pending.remove(sid)
                        self.state.sections[sid].status = SectionStatus.RUNNING
                        self.state.started_order.append(sid)
                        self.callbacks.on_section_start(sid)
                        task = asyncio.ensure_future(self._section_task(sid, controller, semaphore))
                        running[task] = sid
                if not running:
                    break

                done, _ = await asyncio.wait([*running, cancel_wait], return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is cancel_wait:
                        continue
                    sid = running.pop(task)
                    try:
                        outcome = task.result()
                    except Exception as e:
                        logger.exception("Section %s failed unexpectedly", sid)
                        self._fail_section(sid, "internal-error", str(e))
                    else:
                        self._apply_section_outcome(sid, outcome)
                    self.callbacks.on_section_end(sid, self.state.sections[sid].status)
                    self._persist()
        finally:
            cancel_wait.cancel()

        if self.cancelled:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            for sid in [*running.values(), *pending]:
                self._fail_section(sid, "cancelled", "Run cancelled")
                self.callbacks.on_section_end(sid, SectionStatus.FAILED)
            self.state.cancelled = True
            self._persist()

    # -----------------------------------------------------------------------
    # Phase 4: Validation
    # -----------------------------------------------------------------------

    async def run_validation(self) -> None:
        self.state.phase_cursor = PipelinePhase.VALIDATION
        artifact = self.artifact
        assert artifact is not None
        report = validate_course(
            artifact,
            self.state.sections,
            min_alignment=self.config.min_alignment,
            accept_degraded=self.config.accept_degraded,
        )

        usable = [
            r for r in (self.state.sections[sid] for sid in artifact.section_ids)
            if r.status == SectionStatus.ACCEPTED
            or (self.config.accept_degraded and r.status == SectionStatus.DEGRADED)
        ]
        if self.config.validation_review_enabled and usable and not self.cancelled:
            controller = self._build_runtime()
            objectives = {s.section_id: s.objectives for s in artifact.sections}
            outcome = await self._run_cancellable(controller.run_lineage(
                PhaseKind.VALIDATION,
                lambda trimmed: build_review_context(usable, objectives),
                cancel_event=self._cancel_event,
            ))
            if outcome is None:
                self.state.cancelled = True
                report.issues.append(Issue(code="cancelled", severity=Severity.INFO,
                                           message="Consistency review cancelled"))
            else:
                self._add_spend(outcome)
                if outcome.accepted and outcome.verdict.payload:
                    payload = outcome.verdict.payload
                    for item in payload.get("issues") or []:
                        if isinstance(item, dict):
                            report.issues.append(Issue(
                                code=f"review-{item.get('code') or 'finding'}",
                                severity=Severity.INFO,
                                message=str(item.get("message", "")),
                            ))
                    report.review_summary = str(payload.get("summary", ""))
                else:
                    report.issues.append(Issue(code="consistency-review-failed", severity=Severity.INFO,
                                               message="LLM consistency review produced no usable result"))
        self.state.validation = report

    # -----------------------------------------------------------------------
    # Phase 5-6: Assembly & verification
    # -----------------------------------------------------------------------

    def run_assembly(self) -> CourseStructure:
        self.state.phase_cursor = PipelinePhase.ASSEMBLY
        assert self.artifact is not None
        course = assemble_course(self.artifact, self.state, accept_degraded=self.config.accept_degraded)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        (self.output_dir / COURSE_FILE).write_text(render_artifact(course), encoding="utf-8")
        return course

    def run_verification(self, course: CourseStructure) -> VerificationResult:
        self.state.phase_cursor = PipelinePhase.VERIFICATION
        assert self.artifact is not None
        verification = verify_course(course, self.artifact)
        for issue in verification.issues:
            if issue.fatal:
                self.callbacks.on_error(f"Verification: {issue.message}")
        return verification

    # -----------------------------------------------------------------------
    # Full run
    # -----------------------------------------------------------------------

    def _summarise(self, result: PipelineResult) -> PipelineResult:
        """Apply the run success rule and write the run report."""
        artifact = self.artifact
        assert artifact is not None
        results = [self.state.sections[sid] for sid in artifact.section_ids]
        usable = sum(
            1 for r in results
            if r.status == SectionStatus.ACCEPTED
            or (self.config.accept_degraded and r.status == SectionStatus.DEGRADED)
        )
        fraction = usable / len(results)

        if self.state.metadata.status != SectionStatus.ACCEPTED:
            result.errors.append("Metadata phase failed")
        if usable == 0:
            result.errors.append("All sections failed")
        elif fraction < self.config.min_section_success_fraction:
            result.errors.append(
                f"Only {usable}/{len(results)} sections accepted "
                f"(minimum {self.config.min_section_success_fraction:.0%})"
            )
        if result.verification is not None and not result.verification.passed:
            result.errors.append("Final verification failed")
        if self.state.cancelled:
            result.errors.append("Run cancelled")

        result.success = (
            self.state.metadata.status == SectionStatus.ACCEPTED
            and usable > 0
            and fraction >= self.config.min_section_success_fraction
            and result.verification is not None
            and result.verification.passed
            and not self.state.cancelled
        )
        result.sections = results
        result.token_spend = self.state.token_spend
        result.cancelled = self.state.cancelled

        self.output_dir.mkdir(parents=True, exist_ok=True)
        report_path = self.output_dir / REPORT_FILE
        result.report_path = str(report_path)
        report_path.write_text(result.model_dump_json(indent=2, exclude={"course"}), encoding="utf-8")
        self._persist()
        return result

    async def arun(self) -> PipelineResult:
        """Run every phase.

        Input errors (``SchemaViolation``, missing files) raise before any
        model call. Later failures are recorded on the result; a
        diagnostic artifact is written whenever assembly is reached.
        """
        self._loop = asyncio.get_running_loop()
        result = PipelineResult(success=False, run_id=self.state.run_id)

        self.callbacks.on_phase_start("Input", "Loading analysis artifact")
        self.run_input()
        result.run_id = self.state.run_id
        result.phases_completed.append(PipelinePhase.INPUT)
        self.callbacks.on_phase_end("Input", True)

        try:
            self.callbacks.on_phase_start("Metadata", "Course metadata")
            ok = await self.run_metadata()
            self.callbacks.on_phase_end("Metadata", ok)
            result.phases_completed.append(PipelinePhase.METADATA)
            if not ok:
                self.callbacks.on_warning("Metadata not accepted; continuing with sections")

            if not self.cancelled:
                self.callbacks.on_phase_start("Sections", f"{len(self.artifact.sections)} section batches")
                await self.run_sections()
                statuses = [r.status for r in self.state.sections.values()]
                self.callbacks.on_phase_end("Sections", SectionStatus.FAILED not in statuses)
                result.phases_completed.append(PipelinePhase.SECTIONS)
            else:
                for sid, section in self.state.sections.items():
                    if not section.resolved:
                        self._fail_section(sid, "cancelled", "Run cancelled")
                self.state.cancelled = True

            self.callbacks.on_phase_start("Validation", "Cross-section checks")
            await self.run_validation()
            self.callbacks.on_phase_end("Validation", True)
            result.phases_completed.append(PipelinePhase.VALIDATION)

            self.callbacks.on_phase_start("Assembly", "Course structure")
            course = self.run_assembly()
            result.course = course
            result.output_path = str(self.output_dir / COURSE_FILE)
            result.phases_completed.append(PipelinePhase.ASSEMBLY)
            self.callbacks.on_phase_end("Assembly", True)

            self.callbacks.on_phase_start("Verification", "Final checks")
            result.verification = self.run_verification(course)
            result.phases_completed.append(PipelinePhase.VERIFICATION)
            self.callbacks.on_phase_end("Verification", result.verification.passed)
        except Exception as e:
            logger.exception("Pipeline failed")
            result.errors.append(str(e))

        return self._summarise(result)

    def run(self) -> PipelineResult:
        """Synchronous wrapper around :meth:`arun`."""
        return asyncio.run(self.arun())

    # -----------------------------------------------------------------------
    # Partial runs (for CLI subcommands)
    # -----------------------------------------------------------------------

    def run_validate_only(self) -> AnalysisArtifact:
        """Phase 1 only. No model calls."""
        return self.run_input()

    def run_assemble_only(self) -> PipelineResult:
        """Re-run validation, assembly and verification from persisted state.

        Requires ``resume_run_id``. The LLM consistency review is skipped.
        """
        if not self.config.resume_run_id:
            raise ValueError("resume_run_id is required to assemble from saved state")
        self.run_input(reset_unresolved=False)
        self.config = self.config.model_copy(update={"validation_review_enabled": False})
        result = PipelineResult(success=False, run_id=self.state.run_id)
        asyncio.run(self.run_validation())
        course = self.run_assembly()
        result.course = course
        result.output_path = str(self.output_dir / COURSE_FILE)
        result.verification = self.run_verification(course)
        result.phases_completed = [
            PipelinePhase.VALIDATION, PipelinePhase.ASSEMBLY, PipelinePhase.VERIFICATION,
        ]
        return self._summarise(result)
