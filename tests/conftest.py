"""Shared fixtures and fakes for metamind tests."""

from __future__ import annotations

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from metamind.types import (
    AgentRequest,
    CompactionLevel,
    Message,
    StreamEvent,
    StreamEventType,
    TaggingError,
    TaggingResult,
    ToolCall,
)


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


def make_messages(count: int, ts: datetime, prefix: str = "msg", content: str = "short note") -> list[Message]:
    return [
        Message(
            role="user" if i % 2 == 0 else "assistant",
            content=f"{content} {i}",
            id=f"{prefix}_{i}",
            timestamp=ts + timedelta(seconds=30 * i),
        )
        for i in range(count)
    ]


class MockLLMProvider:
    """Mock completion provider. Returns responses in order, repeating the last."""

    def __init__(self, response: str | list[str] | None = None, error: Exception | None = None):
        self.calls: list[dict] = []
        if response is None:
            response = json.dumps({
                "summary": "Test summary",
                "key_points": ["point one"],
                "open_questions": [],
                "next_steps": [],
                "current_status": "",
            })
        self.responses = [response] if isinstance(response, str) else list(response)
        self.error = error
        self.model = "mock-model"
        self.last_usage: dict = {}

    def complete(self, system: str, user: str, max_tokens: int, retries: int = 3) -> str:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens, "retries": retries})
        if self.error is not None:
            raise self.error
        self.last_usage = {"prompt_tokens": 100, "completion_tokens": 20}
        idx = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[idx]


class MockSummarizer:
    """Deterministic summarizer recording every call."""

    def __init__(self, fail: bool = False):
        self.calls: list[tuple[list[str], str, CompactionLevel]] = []
        self.fail = fail

    def summarize(self, messages: list[Message], topic: str, level: CompactionLevel) -> str:
        self.calls.append(([m.id for m in messages], topic, level))
        if self.fail:
            from metamind.types import SummarizationError
            raise SummarizationError("summarizer down")
        return f"{level.value} summary of {len(messages)} {topic} messages"


class KeywordTagger:
    """Tags messages by keyword. ``rules`` maps keyword → topic names."""

    def __init__(self, rules: dict[str, list[str]] | None = None, default: list[str] | None = None):
        self.rules = rules or {}
        self.default = default if default is not None else ["general"]
        self.calls: list[tuple[list[str], list[str]]] = []
        self.fail_next = 0
        self.relationships: list[tuple[str, str]] = []

    def tag(self, messages: list[Message], known_topics: list[str]) -> TaggingResult:
        self.calls.append(([m.id for m in messages], list(known_topics)))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TaggingError("tagger unavailable")
        result = TaggingResult(relationships=list(self.relationships))
        for m in messages:
            topics = [
                topic
                for keyword, names in self.rules.items()
                if keyword in m.content.lower()
                for topic in names
            ]
            result.tags[m.id] = topics or list(self.default)
        return result


# ---------------------------------------------------------------------------
# Streaming service fakes
# ---------------------------------------------------------------------------

def text_turn(text: str, usage: dict | None = None, cost: float | None = None) -> list[StreamEvent]:
    return [
        StreamEvent(type=StreamEventType.MESSAGE_START),
        StreamEvent(type=StreamEventType.MESSAGE_DELTA, content=text),
        StreamEvent(type=StreamEventType.MESSAGE_DONE, content=text),
        StreamEvent(
            type=StreamEventType.RESPONSE,
            usage=usage or {"input_tokens": 10, "output_tokens": 5},
            cost=cost,
        ),
    ]


def tool_turn(*calls: tuple[str, dict], text: str = "") -> list[StreamEvent]:
    tool_calls = [
        ToolCall(id=f"call_{i}_{name}", name=name, arguments=args)
        for i, (name, args) in enumerate(calls)
    ]
    events = [
        StreamEvent(type=StreamEventType.MESSAGE_START),
        StreamEvent(type=StreamEventType.MESSAGE_DONE, content=text, tool_calls=tool_calls),
    ]
    events += [StreamEvent(type=StreamEventType.TOOL_CALL_START, tool_call=c) for c in tool_calls]
    events.append(StreamEvent(type=StreamEventType.RESPONSE, usage={"input_tokens": 10, "output_tokens": 5}))
    return events


class FakeLLMService:
    """Scripted streaming service.

    Task turns and meta-cognition turns (agent name ending in ":meta") pop
    from separate scripts. A script entry is a list of events or an
    exception to raise. Empty scripts fall back to a plain text turn.
    """

    def __init__(self, turns: list | None = None, meta_turns: list | None = None):
        self.turns = list(turns or [])
        self.meta_turns = list(meta_turns or [])
        self.calls: list[tuple[list[Message], AgentRequest]] = []
        self.on_call = None  # optional hook(messages, agent)

    @property
    def turn_calls(self) -> list[tuple[list[Message], AgentRequest]]:
        return [c for c in self.calls if not c[1].name.endswith(":meta")]

    @property
    def meta_calls(self) -> list[tuple[list[Message], AgentRequest]]:
        return [c for c in self.calls if c[1].name.endswith(":meta")]

    def stream(self, messages: list[Message], agent: AgentRequest):
        self.calls.append((list(messages), agent))
        if self.on_call is not None:
            self.on_call(messages, agent)
        script = self.meta_turns if agent.name.endswith(":meta") else self.turns
        entry = script.pop(0) if script else text_turn("working on it")
        if isinstance(entry, Exception):
            raise entry
        yield from entry
