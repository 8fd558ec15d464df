"""CostTracker: accumulate token usage and cost estimates."""

from __future__ import annotations

import threading

from ..types import CostTrackingConfig, SessionCostSummary


def usage_tokens(usage: dict) -> tuple[int, int]:
    """Extract (input, output) token counts from Anthropic- or OpenAI-style usage."""
    if not usage:
        return 0, 0
    input_tokens = usage.get("input_tokens", 0) or usage.get("prompt_tokens", 0)
    output_tokens = usage.get("output_tokens", 0) or usage.get("completion_tokens", 0)
    return int(input_tokens or 0), int(output_tokens or 0)


class CostTracker:
    """Track token usage and estimated costs.

    The orchestrator logs turns from its own thread while memory processing
    logs from a worker, so updates go through a lock.
    """

    def __init__(self, config: CostTrackingConfig | None = None) -> None:
        self.config = config or CostTrackingConfig()
        self._summary = SessionCostSummary()
        self._lock = threading.Lock()

    def log_turn(
        self, input_tokens: int = 0, output_tokens: int = 0, model: str = "",
        cost: float | None = None,
    ) -> None:
        """Log one orchestrator turn. A service-reported cost wins over pricing."""
        with self._lock:
            self._summary.total_turns += 1
            self._add(input_tokens, output_tokens, model, cost)

    def log_meta_turn(
        self, input_tokens: int = 0, output_tokens: int = 0, model: str = "",
        cost: float | None = None,
    ) -> None:
        with self._lock:
            self._summary.total_meta_turns += 1
            self._add(input_tokens, output_tokens, model, cost)

    def log_tagging(self, input_tokens: int = 0, output_tokens: int = 0, model: str = "") -> None:
        with self._lock:
            self._summary.total_taggings += 1
            self._add(input_tokens, output_tokens, model, None)

    def log_summarization(self, input_tokens: int = 0, output_tokens: int = 0, model: str = "") -> None:
        with self._lock:
            self._summary.total_summarizations += 1
            self._add(input_tokens, output_tokens, model, None)

    def _add(self, input_tokens: int, output_tokens: int, model: str, cost: float | None) -> None:
        self._summary.total_input_tokens += input_tokens
        self._summary.total_output_tokens += output_tokens
        if not self.config.enabled:
            return
        if cost is not None:
            self._summary.estimated_cost_usd += cost
            return
        # Exact match first, then substring match (e.g. "mini" in "gpt-4o-mini-2024-07-18")
        pricing = self.config.pricing.get(model, {})
        if not pricing:
            model_lower = model.lower()
            for key, val in self.config.pricing.items():
                if key.lower() in model_lower:
                    pricing = val
                    break
        input_rate = pricing.get("input_per_1k", 0.0)
        output_rate = pricing.get("output_per_1k", 0.0)
        self._summary.estimated_cost_usd += (
            (input_tokens / 1000) * input_rate
            + (output_tokens / 1000) * output_rate
        )

    @property
    def total_cost(self) -> float:
        with self._lock:
            return self._summary.estimated_cost_usd

    def get_summary(self) -> SessionCostSummary:
        """Return a copy of the current cost summary."""
        with self._lock:
            return SessionCostSummary(
                total_turns=self._summary.total_turns,
                total_meta_turns=self._summary.total_meta_turns,
                total_taggings=self._summary.total_taggings,
                total_summarizations=self._summary.total_summarizations,
                total_input_tokens=self._summary.total_input_tokens,
                total_output_tokens=self._summary.total_output_tokens,
                estimated_cost_usd=self._summary.estimated_cost_usd,
            )
