"""Tool catalogue, merging and tool-call resolution.

``decide_tool_call`` is pure: it looks at a call and returns what should
happen to it. ``resolve_tool_call`` is the call site that carries the
decision out (runs the tool, retries, or substitutes an error output).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Union

from ..types import TaskStatus, ToolCall, ToolSpec, ValidationError

logger = logging.getLogger(__name__)

TASK_COMPLETE = "task_complete"
TASK_FATAL_ERROR = "task_fatal_error"

HALT_TOOL_NAMES: frozenset[str] = frozenset({TASK_COMPLETE, TASK_FATAL_ERROR})

TOOL_GUIDANCE = """\

When the task is finished, call the `task_complete` tool with the final result.
If the task cannot be completed, call the `task_fatal_error` tool with a
description of the problem. The task keeps running until one of them is called."""


def task_tools() -> list[ToolSpec]:
    """The two orchestrator-owned tools that end a task."""
    return [
        ToolSpec(
            name=TASK_COMPLETE,
            description="Call when the task is finished. Provide the final result.",
            parameters={
                "type": "object",
                "properties": {
                    "result": {"type": "string", "description": "The final result of the task."},
                },
                "required": ["result"],
            },
        ),
        ToolSpec(
            name=TASK_FATAL_ERROR,
            description="Call when the task cannot be completed. Describe why.",
            parameters={
                "type": "object",
                "properties": {
                    "error": {"type": "string", "description": "What went wrong."},
                },
                "required": ["error"],
            },
        ),
    ]


def merge_tools(caller_tools: list[ToolSpec]) -> dict[str, ToolSpec]:
    """Orchestrator tools plus caller tools, keyed by name."""
    merged = {t.name: t for t in task_tools()}
    for tool in caller_tools:
        if not isinstance(tool, ToolSpec) or not tool.name:
            raise ValidationError(f"Invalid tool: {tool!r}")
        if tool.name in merged:
            raise ValidationError(f"Duplicate or reserved tool name: {tool.name}")
        merged[tool.name] = tool
    return merged


def with_guidance(instructions: str) -> str:
    """Append halt-tool guidance unless the instructions already cover it."""
    if TASK_COMPLETE in instructions:
        return instructions
    return instructions + "\n" + TOOL_GUIDANCE


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Execute:
    tool: ToolSpec
    arguments: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Retry:
    tool: ToolSpec
    arguments: dict = field(default_factory=dict)
    attempt: int = 1


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Halt:
    status: TaskStatus
    text: str


@dataclass(frozen=True)
class Replace:
    output: str


ToolDecision = Union[Execute, Retry, Skip, Halt, Replace]


def decide_tool_call(
    call: ToolCall,
    tools: dict[str, ToolSpec],
    *,
    halted: bool,
    attempt: int = 0,
    error: str | None = None,
    max_retries: int = 1,
) -> ToolDecision:
    if halted:
        return Skip("task already halted")
    if call.name == TASK_COMPLETE and TASK_COMPLETE in tools:
        return Halt(TaskStatus.COMPLETE, str(call.arguments.get("result", "")))
    if call.name == TASK_FATAL_ERROR and TASK_FATAL_ERROR in tools:
        return Halt(TaskStatus.FATAL_ERROR, str(call.arguments.get("error", "")))

    tool = tools.get(call.name)
    if tool is None:
        return Replace(f"Error: unknown tool '{call.name}'")
    if tool.function is None:
        return Replace(f"Error: tool '{call.name}' is not callable")

    if error is not None:
        if attempt < max_retries:
            return Retry(tool, call.arguments, attempt + 1)
        return Replace(f"Error: tool '{call.name}' failed: {error}")

    missing = [
        name for name in tool.parameters.get("required", [])
        if name not in call.arguments
    ]
    if missing:
        return Replace(f"Error: tool '{call.name}' missing required arguments: {', '.join(missing)}")

    return Execute(tool, call.arguments)


@dataclass
class ToolOutcome:
    decision: ToolDecision
    output: str


def _run(tool: ToolSpec, arguments: dict) -> str:
    result = tool.function(**arguments)
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def resolve_tool_call(
    call: ToolCall,
    tools: dict[str, ToolSpec],
    *,
    halted: bool,
    max_retries: int = 1,
) -> ToolOutcome:
    """Decide and carry out one tool call.

    ``output`` is the text to record as the tool result.
    """
    decision = decide_tool_call(call, tools, halted=halted, max_retries=max_retries)
    while isinstance(decision, (Execute, Retry)):
        try:
            return ToolOutcome(decision, _run(decision.tool, decision.arguments))
        except Exception as e:
            attempt = decision.attempt if isinstance(decision, Retry) else 0
            logger.warning(f"Tool {call.name} raised {type(e).__name__}: {e} (attempt {attempt + 1})")
            decision = decide_tool_call(
                call, tools, halted=halted, attempt=attempt,
                error=f"{type(e).__name__}: {e}", max_retries=max_retries,
            )

    if isinstance(decision, Halt):
        label = "complete" if decision.status == TaskStatus.COMPLETE else "failed"
        return ToolOutcome(decision, f"Task marked {label}.")
    if isinstance(decision, Replace):
        return ToolOutcome(decision, decision.output)
    return ToolOutcome(decision, f"Skipped: {decision.reason}")
