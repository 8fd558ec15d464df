"""Tests for CostTracker and token counting."""

import pytest

from metamind.core.cost_tracker import CostTracker, usage_tokens
from metamind.token_counter import create_token_counter, estimate_thread_tokens, estimate_tokens
from metamind.types import CostTrackingConfig

PRICING = {
    "gpt-4o-mini": {"input_per_1k": 0.00015, "output_per_1k": 0.0006},
    "sonnet": {"input_per_1k": 0.003, "output_per_1k": 0.015},
}


class TestUsage:
    def test_openai_style(self):
        assert usage_tokens({"prompt_tokens": 12, "completion_tokens": 3}) == (12, 3)

    def test_anthropic_style(self):
        assert usage_tokens({"input_tokens": 12, "output_tokens": 3}) == (12, 3)

    def test_empty(self):
        assert usage_tokens({}) == (0, 0)


class TestCostTracker:
    def test_exact_pricing(self):
        tracker = CostTracker(CostTrackingConfig(pricing=PRICING))
        tracker.log_turn(1000, 1000, "gpt-4o-mini")
        assert tracker.total_cost == pytest.approx(0.00075)

    def test_substring_pricing(self):
        tracker = CostTracker(CostTrackingConfig(pricing=PRICING))
        tracker.log_tagging(2000, 0, "claude-sonnet-4-5")
        assert tracker.total_cost == pytest.approx(0.006)

    def test_reported_cost_wins(self):
        tracker = CostTracker(CostTrackingConfig(pricing=PRICING))
        tracker.log_turn(1000, 1000, "gpt-4o-mini", cost=1.5)
        assert tracker.total_cost == pytest.approx(1.5)

    def test_unknown_model_costs_nothing(self):
        tracker = CostTracker(CostTrackingConfig(pricing=PRICING))
        tracker.log_summarization(5000, 5000, "mystery")
        assert tracker.total_cost == 0.0
        assert tracker.get_summary().total_input_tokens == 5000

    def test_disabled_counts_tokens_only(self):
        tracker = CostTracker(CostTrackingConfig(enabled=False, pricing=PRICING))
        tracker.log_turn(1000, 0, "gpt-4o-mini", cost=2.0)
        assert tracker.total_cost == 0.0
        assert tracker.get_summary().total_turns == 1

    def test_summary_counters(self):
        tracker = CostTracker()
        tracker.log_turn(1, 1)
        tracker.log_meta_turn(1, 1)
        tracker.log_tagging(1, 1)
        tracker.log_summarization(1, 1)
        summary = tracker.get_summary()
        assert (summary.total_turns, summary.total_meta_turns) == (1, 1)
        assert (summary.total_taggings, summary.total_summarizations) == (1, 1)
        assert summary.total_input_tokens == 4

    def test_summary_is_a_copy(self):
        tracker = CostTracker()
        summary = tracker.get_summary()
        tracker.log_turn(10, 10)
        assert summary.total_turns == 0


class TestTokenCounter:
    def test_estimate(self):
        assert estimate_tokens("") == 1
        assert estimate_tokens("a" * 40) == 10

    def test_thread_estimate(self):
        assert estimate_thread_tokens(["abcd", "efgh"], "") == 3  # "abcd efgh " -> 10 chars
        assert estimate_thread_tokens([], "summary") == 2

    def test_factory_modes(self):
        assert create_token_counter("estimate") is estimate_tokens
        custom = lambda text: 7  # noqa: E731
        assert create_token_counter(custom) is custom
        assert create_token_counter("callable:metamind.token_counter:estimate_tokens") is estimate_tokens

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            create_token_counter("words")
