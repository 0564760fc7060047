"""Tests for token estimation and budget arithmetic."""

import random

import pytest

from course_structure_generator.errors import BudgetExceeded
from course_structure_generator.tools.token_budget import (
    TokenCounter,
    chunk_limit_for_budget,
    estimate,
    estimate_tokens,
    token_counter,
)


class TestEstimateTokens:
    def test_empty(self):
        assert estimate_tokens("") == 0
        assert TokenCounter().count("") == 0

    def test_counts_encoding_tokens(self):
        assert estimate_tokens("hello") == 1
        assert estimate_tokens("hello world") == 2

    def test_grows_with_text(self):
        short = estimate_tokens("Split datasets into training and validation sets.")
        assert 0 < short < estimate_tokens("Split datasets into training and validation sets. " * 10)

    def test_special_tokens_are_plain_text(self):
        assert estimate_tokens("<|endoftext|>") > 1

    def test_explicit_counter(self):
        counter = TokenCounter("cl100k_base")
        assert estimate_tokens("hello world", counter) == estimate_tokens("hello world")

    def test_counter_is_cached(self):
        assert token_counter() is token_counter()

    def test_dict_key_order_irrelevant(self):
        assert estimate_tokens({"b": 1, "a": [1, 2]}) == estimate_tokens({"a": [1, 2], "b": 1})

    def test_deterministic(self):
        value = {"sections": ["intro", "data"], "title": "Course"}
        assert estimate_tokens(value) == estimate_tokens(value)


class TestEstimate:
    def test_base_over_limit_raises(self):
        with pytest.raises(BudgetExceeded) as exc_info:
            estimate(101, 0, 100)
        assert exc_info.value.base_tokens == 101
        assert exc_info.value.hard_limit == 100

    def test_share_caps_allowance(self):
        result = estimate(1000, 0, 10_000, 0.4)
        assert result.allowed_retrieval_tokens == 4000
        assert result.fits

    def test_remaining_caps_allowance(self):
        result = estimate(9000, 2000, 10_000, 0.4)
        assert result.allowed_retrieval_tokens == 1000
        assert not result.fits

    def test_base_equal_to_limit(self):
        result = estimate(100, 0, 100)
        assert result.allowed_retrieval_tokens == 0
        assert result.fits

    @pytest.mark.parametrize("seed", range(5))
    def test_never_exceeds_limit(self, seed):
        rng = random.Random(seed)
        for _ in range(200):
            hard_limit = rng.randint(1, 200_000)
            base = rng.randint(0, hard_limit)
            share = rng.uniform(0.01, 1.0)
            result = estimate(base, rng.randint(0, hard_limit), hard_limit, share)
            assert 0 <= result.allowed_retrieval_tokens
            assert base + result.allowed_retrieval_tokens <= hard_limit
            assert result.allowed_retrieval_tokens <= hard_limit * share


class TestChunkLimitForBudget:
    def test_affordable_caps(self):
        assert chunk_limit_for_budget(1200, 500, 5, 10) == 2

    def test_requested_caps(self):
        assert chunk_limit_for_budget(100_000, 500, 3, 10) == 3

    def test_max_limit_caps(self):
        assert chunk_limit_for_budget(100_000, 500, 50, 10) == 10

    def test_no_allowance(self):
        assert chunk_limit_for_budget(0, 500, 3, 10) == 0
        assert chunk_limit_for_budget(400, 500, 3, 10) == 0
