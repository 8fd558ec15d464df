"""ModelScorer: score-weighted model rotation."""

from __future__ import annotations

import logging
import math
import random
from typing import Iterable

from ..types import (
    DEFAULT_MODEL_SCORE,
    AgentSpec,
    NoModelAvailableError,
    OrchestratorConfig,
    RunState,
)

logger = logging.getLogger(__name__)


def candidates_for(agent: AgentSpec, config: OrchestratorConfig) -> list[str]:
    """Explicit model first, then the agent's configured model class."""
    candidates: list[str] = []
    if agent.model:
        candidates.append(agent.model)
    for model in config.model_classes.get(agent.model_class, []):
        if model not in candidates:
            candidates.append(model)
    return candidates


def _weight(score: object) -> float:
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(100.0, max(0.0, value))


class ModelScorer:
    """Pick one model id per turn, weighted by its score.

    Disabled models and per-call exclusions are never chosen. The previous
    turn's model is avoided when any other candidate remains, so models
    rotate. Unscored models get ``DEFAULT_MODEL_SCORE`` and stay explorable.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def select(
        self,
        candidates: list[str],
        state: RunState,
        exclude: Iterable[str] = (),
        prefer_explicit: bool = False,
    ) -> str:
        excluded = set(exclude) | state.disabled_models
        available = [m for m in candidates if m not in excluded]
        if not available:
            raise NoModelAvailableError(
                f"No model available: all of {candidates} are disabled or excluded"
            )
        if prefer_explicit:
            return available[0]

        if len(available) > 1 and state.last_model in available:
            available.remove(state.last_model)

        weights = [_weight(state.model_scores.get(m, DEFAULT_MODEL_SCORE)) for m in available]
        total = sum(weights)
        if total <= 0:
            return self.rng.choice(available)

        pick = self.rng.random() * total
        cumulative = 0.0
        for model, weight in zip(available, weights):
            cumulative += weight
            if pick < cumulative:
                return model
        # Float rounding fallback
        return available[-1]
