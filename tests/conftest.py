"""Shared test fixtures and fakes for the model and retrieval boundaries."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from course_structure_generator.analysis import load_analysis
from course_structure_generator.models import (
    AnalysisArtifact,
    FinishReason,
    GateConfig,
    ModelResponse,
    PhaseKind,
    PhaseRequest,
    ProjectConfig,
    RetrievalConfig,
    RetrievedChunk,
    RetryConfig,
    TokenUsage,
    ToolCall,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SAMPLE_ANALYSIS = FIXTURES_DIR / "sample_analysis.json"
SAMPLE_CONFIG = FIXTURES_DIR / "sample_config.yaml"


# ---------------------------------------------------------------------------
# Canned model output
# ---------------------------------------------------------------------------

def section_payload(section_id: str, n_lessons: int = 4) -> dict[str, Any]:
    return {
        "lessons": [
            {
                "title": f"{section_id.title()} lesson {i}",
                "objectives": [f"Explain concept {i} of {section_id}", f"Apply technique {i} in practice"],
                "topics": [
                    {"name": f"{section_id} topic {i}a", "subtopics": [{"name": "worked example"}]},
                    {"name": f"{section_id} topic {i}b"},
                ],
                "exercises": [
                    {"type": "quiz", "title": f"Quiz {i}", "description": "Five questions"},
                    {"type": "practice", "title": f"Practice {i}", "description": "Hands-on task"},
                    {"type": "project", "title": f"Mini project {i}", "description": "Small build"},
                ],
                "estimated_minutes": 45,
            }
            for i in range(1, n_lessons + 1)
        ]
    }


METADATA_PAYLOAD: dict[str, Any] = {
    "course_title": "Practical Machine Learning Foundations",
    "course_description": "A hands-on course that takes engineers from raw data to evaluated models.",
    "course_overview": "Learners frame problems, prepare data, train models and evaluate them with sound metrics.",
    "target_audience": "Software engineers new to machine learning",
    "estimated_duration_hours": 11,
    "prerequisites": ["Python basics"],
    "learning_outcomes": [
        "Frame business problems as supervised learning tasks",
        "Build reproducible data preparation pipelines",
        "Evaluate models with precision, recall and cross validation",
    ],
    "course_tags": ["machine-learning", "python", "data", "models", "evaluation"],
    "assessment_strategy": "Weekly exercises and a final project",
}


def json_response(payload: Any, **kwargs: Any) -> ModelResponse:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return ModelResponse(
        raw_text=text,
        finish_reason=kwargs.pop("finish_reason", FinishReason.COMPLETE),
        usage=kwargs.pop("usage", TokenUsage(prompt_tokens=100, completion_tokens=50)),
        **kwargs,
    )


def tool_call_response(query: str, limit: int = 3) -> ModelResponse:
    return ModelResponse(
        tool_calls=[ToolCall(query=query, limit=limit)],
        usage=TokenUsage(prompt_tokens=80, completion_tokens=10),
    )


def truncated_response() -> ModelResponse:
    return ModelResponse(raw_text='{"lessons": [{"title": "Cut', finish_reason=FinishReason.TRUNCATED)


def default_responder(request: PhaseRequest) -> ModelResponse:
    if request.phase_kind == PhaseKind.METADATA:
        return json_response(METADATA_PAYLOAD)
    if request.phase_kind == PhaseKind.VALIDATION:
        return json_response({"consistent": True, "issues": [], "summary": "Coherent outline"})
    return json_response(section_payload(request.section_id or "x"))


class FakeModelClient:
    """ModelClient that answers through a responder callable and records requests.

    The responder may return a ModelResponse or an exception instance to raise.
    """

    def __init__(self, responder: Callable[[PhaseRequest], Any] = default_responder, *, delay: float = 0.0) -> None:
        self.responder = responder
        self.delay = delay
        self.requests: list[PhaseRequest] = []

    async def invoke(self, request: PhaseRequest) -> ModelResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.responder(request)
        if isinstance(result, BaseException):
            raise result
        return result

    def requests_for(self, section_id: str | None) -> list[PhaseRequest]:
        return [r for r in self.requests if r.section_id == section_id]


class FakeStore:
    """In-memory RetrievalStore. Ignores the section filter unless *honour_filter*."""

    def __init__(
        self,
        chunks: list[RetrievedChunk] | None = None,
        *,
        honour_filter: bool = True,
        error: Exception | None = None,
    ) -> None:
        self.chunks = chunks or []
        self.honour_filter = honour_filter
        self.error = error
        self.calls: list[tuple[str, list[str], int]] = []

    def query(self, text: str, section_ids: list[str], limit: int) -> list[RetrievedChunk]:
        self.calls.append((text, list(section_ids), limit))
        if self.error is not None:
            raise self.error
        pool = [c for c in self.chunks if not self.honour_filter or c.section_id in section_ids]
        return pool[:limit] if self.honour_filter else pool


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def sample_config_path() -> Path:
    return SAMPLE_CONFIG


@pytest.fixture
def sample_analysis_path() -> Path:
    return SAMPLE_ANALYSIS


@pytest.fixture
def sample_analysis_data() -> dict[str, Any]:
    return json.loads(SAMPLE_ANALYSIS.read_text(encoding="utf-8"))


@pytest.fixture
def artifact() -> AnalysisArtifact:
    return load_analysis(SAMPLE_ANALYSIS)


@pytest.fixture
def config(tmp_path: Path) -> ProjectConfig:
    """Fast-failing config: no backoff, retrieval off, everything under tmp_path."""
    return ProjectConfig(
        project_name="test-course",
        output_dir=str(tmp_path / "output"),
        state_dir=str(tmp_path / "state"),
        retrieval=RetrievalConfig(enabled=False),
        retry=RetryConfig(transport_backoff_min=0.0, transport_backoff_max=0.0),
        gate=GateConfig(),
        min_section_success_fraction=0.75,
        timeout=5,
    )


@pytest.fixture
def fake_client() -> FakeModelClient:
    return FakeModelClient()
