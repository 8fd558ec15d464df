"""MetaCognition: a scheduled reflective turn that tunes the run.

The reflective turn sees a digest of the run and may only call the meta
tools below. It never writes to the task history directly (thoughts are
injected for the next turn) and it cannot halt the task.
"""

from __future__ import annotations

import logging

from ..types import (
    VALID_META_FREQUENCIES,
    VALID_THOUGHT_DELAYS,
    AgentRequest,
    AgentSpec,
    LLMService,
    Message,
    OrchestratorConfig,
    ServiceCallError,
    StreamEventType,
    ToolSpec,
)
from .cost_tracker import CostTracker, usage_tokens
from .run import TaskRun
from .scorer import ModelScorer, candidates_for
from .tools import resolve_tool_call

logger = logging.getLogger(__name__)

RECENT_MESSAGES = 10
MESSAGE_PREVIEW_CHARS = 200

META_SYSTEM_PROMPT = """\
You are the metacognitive supervisor of an autonomous agent working on a task.
You do not talk to the user. Review how the agent is doing and adjust its
operating parameters with the tools available. Prefer small changes. If the
agent is on track, call no_changes_needed."""


def _preview(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > MESSAGE_PREVIEW_CHARS:
        return text[:MESSAGE_PREVIEW_CHARS] + "..."
    return text


def build_meta_prompt(run: TaskRun) -> str:
    state = run.state
    scores = ", ".join(f"{m}={s}" for m, s in sorted(state.model_scores.items())) or "(none)"
    disabled = ", ".join(sorted(state.disabled_models)) or "(none)"
    lines = [
        f"Runtime: {run.elapsed:.0f}s",
        f"Turns completed: {state.turn_count}",
        f"Meta frequency: every {state.meta_frequency} turns",
        f"Thought delay: {state.thought_delay}s",
        f"Last model: {state.last_model or '(none)'}",
        f"Model scores: {scores}",
        f"Disabled models: {disabled}",
        "",
        f"Last {RECENT_MESSAGES} messages:",
    ]
    for m in run.history[-RECENT_MESSAGES:]:
        lines.append(f"- {m.role.upper()}: {_preview(m.content)}")
    return "\n".join(lines)


def meta_tools(run: TaskRun) -> dict[str, ToolSpec]:
    """Meta tools bound to one run's state."""
    state = run.state

    def inject_thought(thought: str) -> str:
        run.inject_message(f"**IMPORTANT - METACOGNITION:** {thought}", role="system")
        return "Thought injected."

    def set_meta_frequency(frequency: int) -> str:
        frequency = int(frequency)
        if frequency not in VALID_META_FREQUENCIES:
            raise ValueError(f"frequency must be one of {list(VALID_META_FREQUENCIES)}")
        state.meta_frequency = frequency
        return f"Meta frequency set to {frequency}."

    def set_model_score(model: str, score: int) -> str:
        score = int(score)
        if not 0 <= score <= 100:
            raise ValueError("score must be within 0-100")
        state.model_scores[model] = score
        return f"Score for {model} set to {score}."

    def disable_model(model: str, disabled: bool = True) -> str:
        if disabled:
            state.disabled_models.add(model)
        else:
            state.disabled_models.discard(model)
        return f"Model {model} {'disabled' if disabled else 'enabled'}."

    def set_thought_delay(delay: int) -> str:
        delay = int(delay)
        if delay not in VALID_THOUGHT_DELAYS:
            raise ValueError(f"delay must be one of {list(VALID_THOUGHT_DELAYS)}")
        state.thought_delay = delay
        return f"Thought delay set to {delay}s."

    def no_changes_needed() -> str:
        return "No changes."

    tools = [
        ToolSpec(
            name="inject_thought",
            description="Add a guiding thought the agent will see before its next turn.",
            parameters={
                "type": "object",
                "properties": {"thought": {"type": "string"}},
                "required": ["thought"],
            },
            function=inject_thought,
        ),
        ToolSpec(
            name="set_meta_frequency",
            description="Change how many turns pass between reviews.",
            parameters={
                "type": "object",
                "properties": {"frequency": {"type": "integer", "enum": list(VALID_META_FREQUENCIES)}},
                "required": ["frequency"],
            },
            function=set_meta_frequency,
        ),
        ToolSpec(
            name="set_model_score",
            description="Set a model's score (0-100). Higher scores are chosen more often.",
            parameters={
                "type": "object",
                "properties": {
                    "model": {"type": "string"},
                    "score": {"type": "integer", "minimum": 0, "maximum": 100},
                },
                "required": ["model", "score"],
            },
            function=set_model_score,
        ),
        ToolSpec(
            name="disable_model",
            description="Stop (or resume) using a model for this task.",
            parameters={
                "type": "object",
                "properties": {
                    "model": {"type": "string"},
                    "disabled": {"type": "boolean"},
                },
                "required": ["model"],
            },
            function=disable_model,
        ),
        ToolSpec(
            name="set_thought_delay",
            description="Seconds to pause between turns.",
            parameters={
                "type": "object",
                "properties": {"delay": {"type": "integer", "enum": list(VALID_THOUGHT_DELAYS)}},
                "required": ["delay"],
            },
            function=set_thought_delay,
        ),
        ToolSpec(
            name="no_changes_needed",
            description="The agent is on track; change nothing.",
            function=no_changes_needed,
        ),
    ]
    return {t.name: t for t in tools}


class MetaCognition:
    """Runs one reflective turn against the language-model service."""

    def __init__(
        self,
        service: LLMService,
        scorer: ModelScorer,
        config: OrchestratorConfig,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.service = service
        self.scorer = scorer
        self.config = config
        self._cost_tracker = cost_tracker

    def reflect(self, run: TaskRun, agent: AgentSpec) -> list[str]:
        """Run the reflective turn. Returns the names of meta tools called."""
        run.state.meta_invocations += 1
        tools = meta_tools(run)

        candidates = self.config.model_classes.get(self.config.meta_model_class) or candidates_for(
            agent, self.config,
        )
        model = self.scorer.select(candidates, run.state)
        request = AgentRequest(
            name=f"{agent.name}:meta",
            model=model,
            instructions=META_SYSTEM_PROMPT,
            tools=[t.definition() for t in tools.values()],
        )
        messages = [
            Message(role="system", content=META_SYSTEM_PROMPT),
            Message(role="user", content=build_meta_prompt(run)),
        ]

        called: list[str] = []
        for event in self.service.stream(messages, request):
            if event.type == StreamEventType.TOOL_CALL_START and event.tool_call:
                outcome = resolve_tool_call(event.tool_call, tools, halted=False, max_retries=0)
                called.append(event.tool_call.name)
                logger.debug(f"Meta tool {event.tool_call.name}: {outcome.output}")
            elif event.type == StreamEventType.RESPONSE:
                if self._cost_tracker:
                    input_tokens, output_tokens = usage_tokens(event.usage)
                    self._cost_tracker.log_meta_turn(input_tokens, output_tokens, model, event.cost)
            elif event.type == StreamEventType.ERROR:
                raise ServiceCallError(event.error or "meta-cognition stream error")

        logger.info(f"Meta-cognition at turn {run.state.turn_count} ({model}): {called or 'no tool calls'}")
        return called
