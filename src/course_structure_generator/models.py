"""Pydantic models for the course structure generator pipeline."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PipelinePhase(str, Enum):
    INPUT = "input"
    METADATA = "metadata"
    SECTIONS = "sections"
    VALIDATION = "validation"
    ASSEMBLY = "assembly"
    VERIFICATION = "verification"


class PhaseKind(str, Enum):
    METADATA = "metadata"
    SECTION_BATCH = "section_batch"
    VALIDATION = "validation"


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class Importance(str, Enum):
    CORE = "core"
    IMPORTANT = "important"
    OPTIONAL = "optional"


class ModelTier(IntEnum):
    """Closed, ordered set of model capability tiers."""

    FAST = 1
    STANDARD = 2
    PREMIUM = 3

    def next(self) -> ModelTier | None:
        """Return the next tier up, or None at the top of the ladder."""
        try:
            return ModelTier(self.value + 1)
        except ValueError:
            return None


class FinishReason(str, Enum):
    COMPLETE = "complete"
    TRUNCATED = "truncated"
    EMPTY = "empty"
    ERROR = "error"


class SectionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    ACCEPTED = "accepted"
    DEGRADED = "degraded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Input: analysis artifact (produced upstream)
# ---------------------------------------------------------------------------

class _InputModel(BaseModel):
    """Accepts both snake_case and camelCase keys; immutable once parsed."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class GenerationGuidance(_InputModel):
    """Per-section hints for tone, vocabulary and exercises."""
    tone: str = ""
    avoid_jargon: list[str] = Field(default_factory=list)
    analogies: list[str] = Field(default_factory=list)
    exercise_types: list[str] = Field(default_factory=list)
    notes: str = ""


class SectionSpec(_InputModel):
    """One section of the analysis artifact."""
    section_id: str = Field(..., min_length=1)
    title: str = ""
    objectives: list[str] = Field(..., min_length=1)
    key_topics: list[str] = Field(..., min_length=1)
    estimated_hours: float = Field(..., gt=0)
    difficulty: Difficulty = Difficulty.INTERMEDIATE
    prerequisites: list[str] = Field(default_factory=list)
    importance: Importance = Importance.IMPORTANT
    generation_guidance: GenerationGuidance = Field(default_factory=GenerationGuidance)

    @field_validator("key_topics")
    @classmethod
    def _dedupe_topics(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(t.strip() for t in value if t.strip()))

    @property
    def label(self) -> str:
        return self.title or self.section_id


class AnalysisArtifact(_InputModel):
    """Structured output of the upstream document-analysis stage."""
    course_title: str = ""
    target_audience: str = ""
    language: str = "en"
    sections: list[SectionSpec] = Field(..., min_length=3, max_length=7)

    def section(self, section_id: str) -> SectionSpec:
        for spec in self.sections:
            if spec.section_id == section_id:
                return spec
        raise KeyError(section_id)

    @property
    def section_ids(self) -> list[str]:
        return [s.section_id for s in self.sections]


# ---------------------------------------------------------------------------
# Model boundary: requests, responses, retrieval
# ---------------------------------------------------------------------------

class RetrievedChunk(BaseModel):
    """A chunk returned by the retrieval store."""
    text: str
    source_id: str
    section_id: str
    relevance_score: float = 0.0


class PhaseRequest(BaseModel):
    """One model invocation. Built per attempt and discarded after the call."""
    phase_kind: PhaseKind
    section_id: str | None = None
    base_context: str
    retrieved_context: list[RetrievedChunk] = Field(default_factory=list)
    retrieval_enabled: bool = False
    model_tier: ModelTier = ModelTier.FAST
    attempt_number: int = Field(default=1, ge=1)
    temperature: float = 0.7
    max_output_tokens: int = 8000
    corrective_instruction: str | None = None
    context_trimmed: bool = False


class ToolCall(BaseModel):
    """A ``search_documents`` request emitted by the model."""
    query: str = ""
    limit: int = 3


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ModelResponse(BaseModel):
    """Normalised result of one model invocation."""
    raw_text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: FinishReason = FinishReason.COMPLETE
    latency_ms: float = 0.0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    timed_out: bool = False


class RetrievalQuery(BaseModel):
    """Trace record for a single retrieval tool call."""
    phase_kind: PhaseKind
    section_id: str | None = None
    round: int
    query: str
    requested_limit: int
    applied_limit: int
    chunk_count: int = 0
    tokens: int = 0
    source_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Quality gate
# ---------------------------------------------------------------------------

class Issue(BaseModel):
    """A single finding from the quality gate or validation phase."""
    code: str
    severity: Severity = Severity.WARNING
    message: str = ""

    @property
    def fatal(self) -> bool:
        return self.severity == Severity.CRITICAL


class DimensionScores(BaseModel):
    schema_compliance: float = Field(default=0.0, ge=0.0, le=1.0)
    content_quality: float = Field(default=0.0, ge=0.0, le=1.0)
    language_quality: float = Field(default=0.0, ge=0.0, le=1.0)


class GateVerdict(BaseModel):
    """Quality gate outcome for one model response."""
    passed: bool
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    dimension_scores: DimensionScores = Field(default_factory=DimensionScores)
    issues: list[Issue] = Field(default_factory=list)
    # Parsed, name-normalised payload; consumed by the coordinator only.
    payload: dict[str, Any] | None = Field(default=None, exclude=True)

    @property
    def codes(self) -> set[str]:
        return {i.code for i in self.issues}

    @property
    def has_fatal(self) -> bool:
        return any(i.fatal for i in self.issues)


# ---------------------------------------------------------------------------
# Generated content
# ---------------------------------------------------------------------------

class TopicNode(BaseModel):
    name: str
    subtopics: list[TopicNode] = Field(default_factory=list)


class Exercise(BaseModel):
    type: str = "practice"
    title: str
    description: str = ""


class Lesson(BaseModel):
    """A lesson inside a section."""
    lesson_id: str = ""
    title: str
    objectives: list[str] = Field(default_factory=list)
    topics: list[TopicNode] = Field(default_factory=list)
    exercises: list[Exercise] = Field(default_factory=list)
    estimated_minutes: int | None = None
    content_prompt: str = Field(default="", description="Prompt for the downstream content renderer")


class CourseMetadata(BaseModel):
    """Output of the metadata phase."""
    course_title: str
    course_description: str = ""
    course_overview: str = ""
    target_audience: str = ""
    estimated_duration_hours: float = 0.0
    prerequisites: list[str] = Field(default_factory=list)
    learning_outcomes: list[str] = Field(default_factory=list)
    course_tags: list[str] = Field(default_factory=list)
    assessment_strategy: str = ""


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

class SectionResult(BaseModel):
    """Per-section outcome. Owned and mutated by the coordinator only."""
    section_id: str
    status: SectionStatus = SectionStatus.PENDING
    lessons: list[Lesson] = Field(default_factory=list)
    final_verdict: GateVerdict | None = None
    attempts_used: int = 0
    model_tier: ModelTier | None = None
    retrieval_queries: list[RetrievalQuery] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.status in (SectionStatus.ACCEPTED, SectionStatus.DEGRADED, SectionStatus.FAILED)


class MetadataResult(BaseModel):
    status: SectionStatus = SectionStatus.PENDING
    metadata: CourseMetadata | None = None
    final_verdict: GateVerdict | None = None
    attempts_used: int = 0
    model_tier: ModelTier | None = None
    notes: list[str] = Field(default_factory=list)


class ValidationReport(BaseModel):
    """Cross-section validation findings. Advisory, never blocks assembly."""
    issues: list[Issue] = Field(default_factory=list)
    alignment: dict[str, float] = Field(default_factory=dict, description="section_id -> objective/topic overlap")
    review_summary: str = ""


class PipelineState(BaseModel):
    """Mutable state of one run."""
    run_id: str
    sections: dict[str, SectionResult] = Field(default_factory=dict)
    phase_cursor: PipelinePhase = PipelinePhase.INPUT
    token_spend: int = 0
    metadata: MetadataResult = Field(default_factory=MetadataResult)
    started_order: list[str] = Field(default_factory=list)
    validation: ValidationReport | None = None
    cancelled: bool = False


# ---------------------------------------------------------------------------
# Output artifact
# ---------------------------------------------------------------------------

class CourseSection(BaseModel):
    section_id: str
    title: str
    status: SectionStatus
    lessons: list[Lesson] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    attempts_used: int = 0
    model_tier: ModelTier | None = None
    notes: list[str] = Field(default_factory=list)


class CourseStructure(BaseModel):
    """The assembled course-structure artifact handed to the content renderer."""
    run_id: str
    language: str = "en"
    course: CourseMetadata | None = None
    sections: list[CourseSection] = Field(default_factory=list)
    validation: ValidationReport = Field(default_factory=ValidationReport)


class VerificationResult(BaseModel):
    passed: bool
    issues: list[Issue] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Top-level Pipeline Result
# ---------------------------------------------------------------------------

class PipelineResult(BaseModel):
    """Top-level result of the full pipeline run."""
    success: bool
    run_id: str = ""
    course: CourseStructure | None = None
    verification: VerificationResult | None = None
    output_path: str | None = None
    report_path: str | None = None
    token_spend: int = 0
    sections: list[SectionResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    phases_completed: list[PipelinePhase] = Field(default_factory=list)
    cancelled: bool = False


# ---------------------------------------------------------------------------
# Project Configuration (loaded from YAML / Hydra)
# ---------------------------------------------------------------------------

class AzureConfig(BaseModel):
    """Azure OpenAI connection settings."""
    api_key: str = Field(default="", description="Azure OpenAI API key")
    api_version: str = Field(default="", description="API version")
    endpoint: str = Field(default="", description="Azure endpoint URL")


class ModelEndpointOverride(BaseModel):
    """Per-model endpoint settings that take precedence over ``azure``."""
    endpoint: str = ""
    api_key: str | None = None
    api_version: str | None = None
    api_type: str | None = None


class ModelConfig(BaseModel):
    """LLM model per capability tier. A tier set to None is skipped."""
    fast: str | None = Field(default="gpt-4.1-mini")
    standard: str | None = Field(default="gpt-4.1")
    premium: str | None = Field(default="gpt-5.2")
    overrides: dict[str, ModelEndpointOverride] = Field(default_factory=dict)

    def model_for(self, tier: ModelTier) -> str | None:
        return {
            ModelTier.FAST: self.fast,
            ModelTier.STANDARD: self.standard,
            ModelTier.PREMIUM: self.premium,
        }[tier]

    def ladder(self) -> list[ModelTier]:
        """Configured tiers in ascending order."""
        return [t for t in ModelTier if self.model_for(t)]


class BudgetConfig(BaseModel):
    hard_limit_tokens: int = Field(default=90_000, description="Max input tokens per call")
    max_retrieval_share: float = Field(default=0.4, gt=0.0, le=1.0)
    max_output_tokens: int = Field(default=8000)
    encoding: str = Field(default="cl100k_base", description="tiktoken encoding used for budget arithmetic")


class RetrievalConfig(BaseModel):
    enabled: bool = Field(default=True)
    persist_dir: str = Field(default="vector_db/", description="ChromaDB persistence directory")
    collection: str = Field(default="course_chunks")
    default_limit: int = Field(default=3)
    max_limit: int = Field(default=10)
    max_tool_rounds: int = Field(default=3, description="Bound on the tool-call loop per phase")
    chunk_token_estimate: int = Field(default=500, description="Assumed tokens per retrieved chunk")


class GateConfig(BaseModel):
    acceptance_threshold: float = Field(default=0.75)
    schema_weight: float = Field(default=0.5)
    content_weight: float = Field(default=0.3)
    language_weight: float = Field(default=0.2)
    min_lessons: int = Field(default=3)
    max_lessons: int = Field(default=5)
    min_learning_outcomes: int = Field(default=3)
    min_course_tags: int = Field(default=5)
    min_overview_chars: int = Field(default=30)
    min_description_chars: int = Field(default=20)


class RetryConfig(BaseModel):
    max_same_model_retries: int = Field(default=2, ge=1, description="Max attempts on one tier")
    quality_retries_per_tier: int = Field(default=1, ge=0)
    base_temperature: float = Field(default=0.7)
    temperature_step: float = Field(default=0.2)
    min_temperature: float = Field(default=0.1)
    transport_max_attempts: int = Field(default=3, ge=1)
    transport_backoff_min: float = Field(default=1.0)
    transport_backoff_max: float = Field(default=10.0)


class ProjectConfig(BaseModel):
    """Full project configuration."""
    project_name: str = Field(default="course-structure")
    analysis_path: str = Field(default="analysis.json", description="Analysis artifact (JSON)")
    output_dir: str = Field(default="output/", description="Output directory")
    state_dir: str = Field(default="output/state/", description="Persisted run state directory")
    run_id: str | None = Field(default=None, description="Explicit run id; generated when empty")
    resume_run_id: str | None = Field(default=None, description="Reuse accepted sections of a persisted run")

    # Azure OpenAI
    azure: AzureConfig = Field(default_factory=AzureConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)

    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    # Pipeline tuning
    max_parallel_sections: int = Field(default=3, ge=1)
    min_section_success_fraction: float = Field(default=0.8, ge=0.0, le=1.0)
    accept_degraded: bool = Field(default=True, description="Assemble sections accepted with degradation notes")
    validation_review_enabled: bool = Field(default=False, description="Run the LLM consistency review")
    min_alignment: float = Field(default=0.2, description="Min objective/topic keyword overlap per section")
    persist_state: bool = Field(default=True)
    timeout: int = Field(default=120)
    seed: int = Field(default=42)
