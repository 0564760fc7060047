"""Deterministic token counting and retrieval budget arithmetic.

No model calls. Content is serialised to canonical JSON and counted with a
tiktoken encoding.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import tiktoken
from pydantic import BaseModel

from ..errors import BudgetExceeded

DEFAULT_ENCODING = "cl100k_base"


@dataclass(frozen=True)
class BudgetEstimate:
    fits: bool
    allowed_retrieval_tokens: int


class TokenCounter:
    """Wrapper around a tiktoken encoding."""

    def __init__(self, encoding: str = DEFAULT_ENCODING) -> None:
        self._encoder = tiktoken.get_encoding(encoding)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoder.encode(text, disallowed_special=()))


@lru_cache(maxsize=4)
def token_counter(encoding: str = DEFAULT_ENCODING) -> TokenCounter:
    return TokenCounter(encoding)


def _canonical(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def estimate_tokens(value: Any, counter: TokenCounter | None = None) -> int:
    """Count the tokens of a string or JSON-serialisable value."""
    return (counter or token_counter()).count(_canonical(value))


def estimate(
    base_context_tokens: int,
    candidate_retrieval_tokens: int,
    hard_limit: int,
    max_retrieval_share: float = 0.4,
) -> BudgetEstimate:
    """Decide how much retrieved context a call may carry.

    ``allowed = min(hard_limit - base, floor(hard_limit * share))``, so
    ``base + allowed <= hard_limit`` always holds.

    Raises:
        BudgetExceeded: if the base context alone exceeds *hard_limit*.
    """
    if base_context_tokens > hard_limit:
        raise BudgetExceeded(base_context_tokens, hard_limit)
    allowed = min(hard_limit - base_context_tokens, math.floor(hard_limit * max_retrieval_share))
    allowed = max(allowed, 0)
    return BudgetEstimate(
        fits=candidate_retrieval_tokens <= allowed,
        allowed_retrieval_tokens=allowed,
    )


def chunk_limit_for_budget(
    allowed_tokens: int,
    chunk_token_estimate: int,
    requested: int,
    max_limit: int,
) -> int:
    """Cap a requested chunk count to what the remaining allowance admits."""
    if allowed_tokens <= 0 or requested <= 0:
        return 0
    affordable = allowed_tokens // max(chunk_token_estimate, 1)
    return max(0, min(requested, max_limit, affordable))
