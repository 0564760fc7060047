"""Hydra structured config dataclasses.

These mirror the Pydantic ``ProjectConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``ProjectConfig`` via
``cli._to_project_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from hydra.core.config_store import ConfigStore


@dataclass
class AzureConf:
    api_key: str = "${oc.env:AZURE_OPENAI_API_KEY,''}"
    api_version: str = "${oc.env:AZURE_OPENAI_API_VERSION,''}"
    endpoint: str = "${oc.env:AZURE_OPENAI_ENDPOINT,''}"


@dataclass
class ModelEndpointOverrideConf:
    endpoint: str = ""
    api_key: str | None = None
    api_version: str | None = None
    api_type: str | None = None


@dataclass
class ModelConf:
    fast: str | None = "gpt-4.1-mini"
    standard: str | None = "gpt-4.1"
    premium: str | None = "gpt-5.2"
    overrides: dict[str, ModelEndpointOverrideConf] = field(default_factory=dict)


@dataclass
class BudgetConf:
    hard_limit_tokens: int = 90_000
    max_retrieval_share: float = 0.4
    max_output_tokens: int = 8000
    encoding: str = "cl100k_base"


@dataclass
class RetrievalConf:
    enabled: bool = True
    persist_dir: str = "vector_db/"
    collection: str = "course_chunks"
    default_limit: int = 3
    max_limit: int = 10
    max_tool_rounds: int = 3
    chunk_token_estimate: int = 500


@dataclass
class GateConf:
    acceptance_threshold: float = 0.75
    schema_weight: float = 0.5
    content_weight: float = 0.3
    language_weight: float = 0.2
    min_lessons: int = 3
    max_lessons: int = 5
    min_learning_outcomes: int = 3
    min_course_tags: int = 5
    min_overview_chars: int = 30
    min_description_chars: int = 20


@dataclass
class RetryConf:
    max_same_model_retries: int = 2
    quality_retries_per_tier: int = 1
    base_temperature: float = 0.7
    temperature_step: float = 0.2
    min_temperature: float = 0.1
    transport_max_attempts: int = 3
    transport_backoff_min: float = 1.0
    transport_backoff_max: float = 10.0


@dataclass
class CsgConf:
    # --- CLI-only fields ---
    mode: str = "run"                     # run | validate | assemble
    verbose: bool = False
    quiet: bool = False

    # --- ProjectConfig fields ---
    project_name: str = "course-structure"
    analysis_path: str = "analysis.json"
    output_dir: str = "output/"
    state_dir: str = "output/state/"
    run_id: str | None = None
    resume_run_id: str | None = None

    # Azure OpenAI
    azure: AzureConf = field(default_factory=AzureConf)
    models: ModelConf = field(default_factory=ModelConf)

    budget: BudgetConf = field(default_factory=BudgetConf)
    retrieval: RetrievalConf = field(default_factory=RetrievalConf)
    gate: GateConf = field(default_factory=GateConf)
    retry: RetryConf = field(default_factory=RetryConf)

    # Tuning
    max_parallel_sections: int = 3
    min_section_success_fraction: float = 0.8
    accept_degraded: bool = True
    validation_review_enabled: bool = False
    min_alignment: float = 0.2
    persist_state: bool = True
    timeout: int = 120
    seed: int = 42


# Keys in CsgConf that are NOT part of ProjectConfig.
CLI_ONLY_KEYS = frozenset({
    "mode", "verbose", "quiet",
})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore.

    Two entries are stored:
    - ``csg_schema``: referenced by user config files via ``defaults: [csg_schema]``
    - ``config``: fallback when no ``--config-dir`` is provided (e.g. ``csg mode=validate``)
    """
    cs = ConfigStore.instance()
    cs.store(name="csg_schema", node=CsgConf)
    cs.store(name="config", node=CsgConf)
