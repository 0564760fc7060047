"""Exception hierarchy for the course structure generator."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import GateVerdict


class CourseGenError(Exception):
    """Base class for pipeline errors."""


class TransportError(CourseGenError):
    """Network failure, timeout at the socket level, or a retryable provider status."""


class ProviderRejected(CourseGenError):
    """The provider refused the request (content policy, bad request, auth)."""


class BudgetExceeded(CourseGenError):
    """Base context alone is larger than the hard input-token limit."""

    def __init__(self, base_tokens: int, hard_limit: int) -> None:
        self.base_tokens = base_tokens
        self.hard_limit = hard_limit
        super().__init__(f"Base context of {base_tokens} tokens exceeds hard limit of {hard_limit}")


class SchemaViolation(CourseGenError):
    """Input or output does not match the expected structure."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        detail = f": {'; '.join(self.errors)}" if self.errors else ""
        super().__init__(f"{message}{detail}")


class RetrievalUnavailable(CourseGenError):
    """The retrieval store could not be queried."""


class QualityBelowThreshold(CourseGenError):
    """A lineage ended without an accepted verdict."""

    def __init__(self, verdict: GateVerdict | None, message: str = "") -> None:
        self.verdict = verdict
        codes = ", ".join(sorted(verdict.codes)) if verdict else "no verdict"
        super().__init__(message or f"Quality gate not passed ({codes})")
