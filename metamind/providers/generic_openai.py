"""GenericOpenAIProvider: OpenAI-compatible endpoint via httpx.

Works with OpenAI, Ollama, vLLM, LM Studio, or any server exposing
/v1/chat/completions. ``complete()`` serves the tagger and summarizer;
``stream()`` serves orchestrator turns over server-sent events.
"""

from __future__ import annotations

import json
import logging
from typing import Iterator

import httpx

from ..types import (
    AgentRequest,
    Message,
    StreamEvent,
    StreamEventType,
    ToolCall,
)
from .base import BaseProvider

logger = logging.getLogger(__name__)


def convert_tool_defs(tools: list[dict]) -> list[dict]:
    """Canonical ``{name, description, input_schema}`` → OpenAI function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for t in tools
    ]


def convert_messages(messages: list[Message], instructions: str = "") -> list[dict]:
    out: list[dict] = []
    if instructions and (not messages or messages[0].role != "system"):
        out.append({"role": "system", "content": instructions})
    for m in messages:
        if m.role == "tool":
            out.append({
                "role": "tool",
                "tool_call_id": m.metadata.get("tool_call_id", ""),
                "content": m.content,
            })
        elif m.role == "assistant" and m.metadata.get("tool_calls"):
            out.append({
                "role": "assistant",
                "content": m.content or None,
                "tool_calls": [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {
                            "name": tc["name"],
                            "arguments": json.dumps(tc.get("arguments", {})),
                        },
                    }
                    for tc in m.metadata["tool_calls"]
                ],
            })
        else:
            out.append({"role": m.role, "content": m.content})
    return out


def _parse_arguments(raw: str, name: str) -> dict:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Tool call '{name}' had malformed arguments: {raw[:200]!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class GenericOpenAIProvider(BaseProvider):
    """LLM provider using any OpenAI-compatible chat completions API."""

    _timeout = 120.0

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434/v1",
        model: str = "qwen3:4b-instruct-2507-fp16",
        temperature: float = 0.3,
        api_key: str = "not-needed",
        provider_name: str = "generic_openai",
    ) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.api_key = api_key
        self._name = provider_name

    def _provider_name(self) -> str:
        return self._name

    def _get_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _get_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _build_payload(self, system: str, user: str, max_tokens: int) -> dict:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }

    def _extract_text(self, data: dict) -> str:
        choices = data.get("choices", [])
        if choices:
            return choices[0].get("message", {}).get("content", "") or ""
        return ""

    def stream(self, messages: list[Message], agent: AgentRequest) -> Iterator[StreamEvent]:
        """Stream one turn. Transport failures surface as an ERROR event."""
        payload: dict = {
            "model": agent.model or self.model,
            "messages": convert_messages(messages, agent.instructions),
            "temperature": agent.settings.get("temperature", self.temperature),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if "max_tokens" in agent.settings:
            payload["max_tokens"] = agent.settings["max_tokens"]
        if agent.tools:
            payload["tools"] = convert_tool_defs(agent.tools)

        try:
            with httpx.Client(timeout=self._timeout) as client:
                with client.stream(
                    "POST", self._get_url(), headers=self._get_headers(), json=payload,
                ) as response:
                    if response.status_code != 200:
                        response.read()
                        yield StreamEvent(
                            type=StreamEventType.ERROR,
                            error=f"HTTP {response.status_code}: {response.text}",
                        )
                        return
                    yield from self._consume_sse(response.iter_lines())
        except httpx.HTTPError as e:
            yield StreamEvent(type=StreamEventType.ERROR, error=f"HTTP error: {e}")

    def _consume_sse(self, lines: Iterator[str]) -> Iterator[StreamEvent]:
        yield StreamEvent(type=StreamEventType.MESSAGE_START)

        text_parts: list[str] = []
        partial_calls: dict[int, dict] = {}
        usage: dict = {}
        finished = False

        for line in lines:
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                finished = True
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed SSE chunk: {data[:200]!r}")
                continue
            if chunk.get("usage"):
                usage = chunk["usage"]
            for choice in chunk.get("choices", []):
                delta = choice.get("delta", {})
                if delta.get("content"):
                    text_parts.append(delta["content"])
                    yield StreamEvent(type=StreamEventType.MESSAGE_DELTA, content=delta["content"])
                for tc in delta.get("tool_calls") or []:
                    entry = partial_calls.setdefault(
                        tc.get("index", 0), {"id": "", "name": "", "arguments": ""},
                    )
                    if tc.get("id"):
                        entry["id"] = tc["id"]
                    fn = tc.get("function", {})
                    if fn.get("name"):
                        entry["name"] = fn["name"]
                    entry["arguments"] += fn.get("arguments") or ""

        if not finished:
            # No terminal event; the caller treats the turn as failed.
            logger.warning(f"SSE stream from {self._name} ended before [DONE]")
            return

        tool_calls = [
            ToolCall(
                id=entry["id"] or f"call_{idx}",
                name=entry["name"],
                arguments=_parse_arguments(entry["arguments"], entry["name"]),
            )
            for idx, entry in sorted(partial_calls.items())
        ]
        yield StreamEvent(
            type=StreamEventType.MESSAGE_DONE,
            content="".join(text_parts),
            tool_calls=tool_calls,
        )
        for call in tool_calls:
            yield StreamEvent(type=StreamEventType.TOOL_CALL_START, tool_call=call)

        self.last_usage = usage
        yield StreamEvent(type=StreamEventType.RESPONSE, usage=usage)
