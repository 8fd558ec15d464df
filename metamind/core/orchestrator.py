"""TaskOrchestrator: drives a task as repeated turns until it halts.

Per iteration:

1. drain injected messages into history
2. increment the turn counter
3. every ``meta_frequency`` turns, run the meta-cognition turn
4. pacing delay (skipped on the first iteration, interrupted by cancel)
5. pick a model and stream one turn into history, resolving tool calls

``task_complete`` and ``task_fatal_error`` halt the loop. Service failures
end the run as ``fatal_error``; they never escape ``execute``.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable

from ..types import (
    VALID_META_FREQUENCIES,
    VALID_THOUGHT_DELAYS,
    AgentRequest,
    AgentSpec,
    LLMService,
    Message,
    MetamindConfig,
    NoModelAvailableError,
    RunPhase,
    RunState,
    ServiceCallError,
    StreamEventType,
    TaskResult,
    TaskStatus,
    ToolCall,
    ToolSpec,
    ValidationError,
)
from .cost_tracker import CostTracker, usage_tokens
from .meta_cognition import MetaCognition
from .pacing import CancellationToken
from .run import TaskRun
from .scorer import ModelScorer, candidates_for
from .tools import HALT_TOOL_NAMES, Halt, decide_tool_call, merge_tools, resolve_tool_call, with_guidance

if TYPE_CHECKING:
    from ..memory.engine import MetamemoryEngine

logger = logging.getLogger(__name__)

_PHASE_FOR_STATUS = {
    TaskStatus.COMPLETE: RunPhase.COMPLETED,
    TaskStatus.FATAL_ERROR: RunPhase.FATAL_ERROR,
    TaskStatus.INCOMPLETE: RunPhase.INCOMPLETE,
}


class TaskOrchestrator:
    """Runs tasks against a language-model service.

    One orchestrator may run several tasks, concurrently or not; all
    per-task state lives in the ``TaskRun``, including its memory engine,
    which ``memory_factory`` builds fresh for every run.
    """

    def __init__(
        self,
        service: LLMService,
        config: MetamindConfig | None = None,
        memory_factory: Callable[[], MetamemoryEngine] | None = None,
        scorer: ModelScorer | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.service = service
        self.config = config or MetamindConfig()
        self.memory_factory = memory_factory
        self.scorer = scorer or ModelScorer()
        self.cost_tracker = cost_tracker or CostTracker(self.config.cost_tracking)
        self.meta = MetaCognition(service, self.scorer, self.config.orchestrator, self.cost_tracker)

    @classmethod
    def from_config(cls, config: MetamindConfig) -> TaskOrchestrator:
        """Build the provider (and memory engine, when enabled) from config."""
        from ..memory.engine import MetamemoryEngine
        from ..providers import build_provider

        name = config.orchestrator.provider
        if not name or name not in config.providers:
            raise ValidationError("orchestrator.provider must name an entry in providers")
        service = build_provider(name, config.providers[name])
        cost_tracker = CostTracker(config.cost_tracking)

        memory_factory = None
        if config.memory.enabled:
            memory_name = config.memory.provider or name
            memory_provider = service if memory_name == name else build_provider(
                memory_name, config.providers[memory_name],
            )

            def memory_factory() -> MetamemoryEngine:
                return MetamemoryEngine.from_config(config, memory_provider, cost_tracker)

        return cls(service, config, memory_factory=memory_factory, cost_tracker=cost_tracker)

    def new_memory(self) -> MetamemoryEngine | None:
        """A fresh memory engine for one run, or None when memory is off."""
        return self.memory_factory() if self.memory_factory else None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(
        self,
        agent: AgentSpec,
        content: str,
        *,
        loop: bool = True,
        state: RunState | None = None,
        history: list[Message] | None = None,
        token: CancellationToken | None = None,
        memory: MetamemoryEngine | None = None,
    ) -> TaskResult:
        run = self.create_run(agent, content, state=state, history=history, token=token, memory=memory)
        return self.execute(run, loop=loop)

    def create_run(
        self,
        agent: AgentSpec,
        content: str,
        *,
        state: RunState | None = None,
        history: list[Message] | None = None,
        token: CancellationToken | None = None,
        memory: MetamemoryEngine | None = None,
    ) -> TaskRun:
        """Validate inputs and build a run without starting it.

        ``memory`` lets the caller hand over an engine, e.g. one restored
        from a snapshot; otherwise the run gets a fresh one.
        """
        self._validate(agent, content, state)
        orch = self.config.orchestrator
        if state is None:
            state = RunState(
                meta_frequency=orch.meta_frequency,
                thought_delay=orch.thought_delay,
                model_scores=dict(orch.model_scores),
            )
        else:
            state = state.copy()
        if memory is None:
            memory = self.new_memory()
        return TaskRun(agent, content, state, history, token, memory)

    def _validate(self, agent: AgentSpec, content: str, state: RunState | None) -> None:
        if not isinstance(agent, AgentSpec):
            raise ValidationError(f"agent must be an AgentSpec, got {type(agent).__name__}")
        if not isinstance(agent.name, str) or not agent.name.strip():
            raise ValidationError("agent.name must be a non-empty string")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content must be a non-empty string")
        merge_tools(agent.tools)

        orch = self.config.orchestrator
        frequency = state.meta_frequency if state else orch.meta_frequency
        delay = state.thought_delay if state else orch.thought_delay
        if frequency not in VALID_META_FREQUENCIES:
            raise ValidationError(f"meta_frequency must be one of {list(VALID_META_FREQUENCIES)}")
        if delay not in VALID_THOUGHT_DELAYS:
            raise ValidationError(f"thought_delay must be one of {list(VALID_THOUGHT_DELAYS)}")
        if orch.max_turns < 1:
            raise ValidationError("max_turns must be >= 1")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def execute(self, run: TaskRun, loop: bool = True) -> TaskResult:
        if run.phase != RunPhase.IDLE:
            raise ValidationError(f"Run already {run.phase.value}")
        tools = merge_tools(run.agent.tools)

        run.phase = RunPhase.RUNNING
        run.start_clock()
        cost_before = self.cost_tracker.total_cost
        self._seed_history(run)
        logger.info(f"Task started: agent={run.agent.name}, loop={loop}")

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="metamemory") if run.memory else None
        end_reason: str | None = None
        iteration = 0
        try:
            while not run.halted:
                if iteration >= self.config.orchestrator.max_turns:
                    end_reason = f"max turns ({iteration}) reached"
                    break
                if run.token.cancelled:
                    end_reason = run.token.reason
                    break

                run.history.extend(run.drain_injected())
                iteration += 1
                run.state.turn_count += 1

                if run.state.turn_count % run.state.meta_frequency == 0:
                    self._reflect(run)
                    run.history.extend(run.drain_injected())

                if iteration > 1 and run.token.wait(run.state.thought_delay):
                    end_reason = run.token.reason
                    break
                if run.token.cancelled:
                    end_reason = run.token.reason
                    break

                try:
                    self._run_turn(run, tools)
                except Exception as e:
                    logger.error(f"Turn {run.state.turn_count} failed: {e}", exc_info=True)
                    run.outcome = (TaskStatus.FATAL_ERROR, str(e))
                    break
                run.turns += 1

                if pool is not None:
                    self._submit_memory(pool, run)
                if not loop:
                    break
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        return self._finish(run, cost_before, end_reason)

    def _seed_history(self, run: TaskRun) -> None:
        if not run.history:
            run.history.append(Message(role="system", content=with_guidance(run.agent.instructions)))
        run.history.append(Message(role="user", content=run.content))

    def _reflect(self, run: TaskRun) -> None:
        try:
            self.meta.reflect(run, run.agent)
        except Exception as e:
            logger.error(f"Meta-cognition failed at turn {run.state.turn_count}: {e}", exc_info=True)

    def _select_model(self, run: TaskRun) -> str:
        candidates = candidates_for(run.agent, self.config.orchestrator)
        if not candidates:
            raise NoModelAvailableError(
                f"No model configured for agent '{run.agent.name}' "
                f"(model class '{run.agent.model_class}')"
            )
        return self.scorer.select(candidates, run.state, prefer_explicit=bool(run.agent.model))

    def _turn_messages(self, run: TaskRun) -> list[Message]:
        if run.memory is None:
            return list(run.history)
        context = run.memory.build_context(run.history[1:])
        return [run.history[0]] + context.messages

    def _run_turn(self, run: TaskRun, tools: dict[str, ToolSpec]) -> None:
        model = self._select_model(run)
        run.state.last_model = model
        request = AgentRequest(
            name=run.agent.name,
            model=model,
            instructions=run.history[0].content,
            tools=[t.definition() for t in tools.values()],
            settings=dict(run.agent.settings),
        )
        logger.debug(f"Turn {run.state.turn_count}: model={model}")

        parts: list[str] = []
        resolved: set[str] = set()
        terminated = False
        for event in self.service.stream(self._turn_messages(run), request):
            if event.type == StreamEventType.MESSAGE_START:
                parts.clear()
            elif event.type == StreamEventType.MESSAGE_DELTA:
                parts.append(event.content)
            elif event.type == StreamEventType.MESSAGE_DONE:
                metadata: dict = {"model": model}
                if event.tool_calls:
                    metadata["tool_calls"] = [
                        {"id": c.id, "name": c.name, "arguments": c.arguments}
                        for c in event.tool_calls
                    ]
                run.history.append(Message(
                    role="assistant", content=event.content or "".join(parts), metadata=metadata,
                ))
            elif event.type == StreamEventType.TOOL_CALL_START and event.tool_call:
                self._handle_tool_call(run, tools, event.tool_call)
                resolved.add(event.tool_call.id)
            elif event.type == StreamEventType.TOOL_CALL_DONE and event.tool_call:
                if event.tool_call.id not in resolved:
                    self._record_service_tool(run, tools, event.tool_call, event.output)
                    resolved.add(event.tool_call.id)
            elif event.type == StreamEventType.RESPONSE:
                input_tokens, output_tokens = usage_tokens(event.usage)
                self.cost_tracker.log_turn(input_tokens, output_tokens, model, event.cost)
                terminated = True
            elif event.type == StreamEventType.ERROR:
                raise ServiceCallError(event.error or "language-model stream error")

        if not terminated:
            raise ServiceCallError("Stream ended without a terminal response")

    def _handle_tool_call(self, run: TaskRun, tools: dict[str, ToolSpec], call: ToolCall) -> None:
        outcome = resolve_tool_call(
            call, tools, halted=run.halted,
            max_retries=self.config.orchestrator.max_tool_retries,
        )
        if isinstance(outcome.decision, Halt):
            run.outcome = (outcome.decision.status, outcome.decision.text)
            logger.info(f"Task halted by {call.name}")
        run.history.append(Message(
            role="tool", content=outcome.output,
            metadata={"tool_call_id": call.id, "name": call.name},
        ))

    def _record_service_tool(
        self, run: TaskRun, tools: dict[str, ToolSpec], call: ToolCall, output: str | None,
    ) -> None:
        """A tool the service ran itself. Halt tools still halt."""
        if call.name in HALT_TOOL_NAMES:
            decision = decide_tool_call(call, tools, halted=run.halted)
            if isinstance(decision, Halt):
                run.outcome = (decision.status, decision.text)
        run.history.append(Message(
            role="tool", content=output or "",
            metadata={"tool_call_id": call.id, "name": call.name},
        ))

    def _submit_memory(self, pool: ThreadPoolExecutor, run: TaskRun) -> Future:
        future = pool.submit(run.memory.process_messages, list(run.history))
        future.add_done_callback(_log_memory_failure)
        return future

    def _finish(self, run: TaskRun, cost_before: float, end_reason: str | None) -> TaskResult:
        if run.outcome is not None:
            status, text = run.outcome
        else:
            status, text = TaskStatus.INCOMPLETE, end_reason
        run.phase = _PHASE_FOR_STATUS[status]

        result = TaskResult(
            status=status,
            result=text if status == TaskStatus.COMPLETE else None,
            error=text if status != TaskStatus.COMPLETE else None,
            history=tuple(run.history),
            elapsed_seconds=run.elapsed,
            cost=self.cost_tracker.total_cost - cost_before,
            turns=run.turns,
            state=run.state.copy(),
        )
        logger.info(
            f"Task finished: status={status.value}, turns={run.turns}, "
            f"elapsed={result.elapsed_seconds:.1f}s, cost=${result.cost:.4f}"
        )
        return result


def _log_memory_failure(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error(f"Memory processing failed: {error}", exc_info=error)


def run_task(
    agent: AgentSpec,
    content: str,
    service: LLMService,
    config: MetamindConfig | None = None,
    **kwargs,
) -> TaskResult:
    """One-call convenience wrapper around ``TaskOrchestrator.run``."""
    return TaskOrchestrator(service, config).run(agent, content, **kwargs)
