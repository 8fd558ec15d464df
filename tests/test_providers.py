"""Tests for the OpenAI-compatible provider and provider factory."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from metamind.core.orchestrator import TaskOrchestrator
from metamind.providers import DEFAULT_BASE_URLS, build_provider
from metamind.providers.generic_openai import (
    GenericOpenAIProvider,
    convert_messages,
    convert_tool_defs,
)
from metamind.types import (
    AgentRequest,
    AgentSpec,
    LLMProviderError,
    Message,
    MetamindConfig,
    OrchestratorConfig,
    StreamEventType,
    TaskStatus,
)


class _MockHTTPResponse:
    """Minimal mock for httpx.Response."""
    def __init__(self, data, status_code=200):
        self._data = data
        self.status_code = status_code
        self.text = json.dumps(data)

    def json(self):
        return self._data


def _mock_client(mock_client_cls):
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


def _sse(*chunks) -> list[str]:
    return [f"data: {json.dumps(c)}" for c in chunks] + ["", "data: [DONE]"]


def _completion(text="hello"):
    return {
        "choices": [{"message": {"content": text}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3},
    }


class TestComplete:
    def test_success(self):
        provider = GenericOpenAIProvider(model="m")
        with patch("metamind.providers.base.httpx.Client") as cls:
            client = _mock_client(cls)
            client.post.return_value = _MockHTTPResponse(_completion("hi"))
            assert provider.complete("sys", "user", 100) == "hi"

        payload = client.post.call_args.kwargs["json"]
        assert payload["messages"][0] == {"role": "system", "content": "sys"}
        assert payload["max_tokens"] == 100
        assert provider.last_usage == {"prompt_tokens": 12, "completion_tokens": 3}

    def test_retries_on_server_error(self):
        provider = GenericOpenAIProvider()
        with patch("metamind.providers.base.httpx.Client") as cls, \
                patch("metamind.providers.base.time.sleep") as sleep:
            client = _mock_client(cls)
            client.post.side_effect = [
                _MockHTTPResponse({"error": "busy"}, status_code=503),
                _MockHTTPResponse(_completion("ok")),
            ]
            assert provider.complete("s", "u", 10) == "ok"
        sleep.assert_called_once_with(1.0)

    def test_gives_up_after_max_retries(self):
        provider = GenericOpenAIProvider(provider_name="local")
        with patch("metamind.providers.base.httpx.Client") as cls, \
                patch("metamind.providers.base.time.sleep"):
            client = _mock_client(cls)
            client.post.side_effect = httpx.ConnectError("refused")
            with pytest.raises(LLMProviderError) as exc_info:
                provider.complete("s", "u", 10)
        assert client.post.call_count == 3
        assert exc_info.value.provider == "local"

    def test_backoff_between_attempts(self):
        provider = GenericOpenAIProvider()
        with patch("metamind.providers.base.httpx.Client") as cls, \
                patch("metamind.providers.base.time.sleep") as sleep:
            client = _mock_client(cls)
            client.post.return_value = _MockHTTPResponse({"error": "slow down"}, status_code=429)
            with pytest.raises(LLMProviderError) as exc_info:
                provider.complete("s", "u", 10)
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        assert exc_info.value.status_code == 429

    @pytest.mark.parametrize("retries", [0, 1])
    def test_single_attempt(self, retries):
        provider = GenericOpenAIProvider()
        with patch("metamind.providers.base.httpx.Client") as cls, \
                patch("metamind.providers.base.time.sleep") as sleep:
            client = _mock_client(cls)
            client.post.side_effect = httpx.ConnectError("refused")
            with pytest.raises(LLMProviderError):
                provider.complete("s", "u", 10, retries=retries)
        assert client.post.call_count == 1
        sleep.assert_not_called()

    def test_client_error_not_retried(self):
        provider = GenericOpenAIProvider()
        with patch("metamind.providers.base.httpx.Client") as cls:
            client = _mock_client(cls)
            client.post.return_value = _MockHTTPResponse({"error": "bad"}, status_code=400)
            with pytest.raises(LLMProviderError) as exc_info:
                provider.complete("s", "u", 10)
        assert exc_info.value.status_code == 400
        assert client.post.call_count == 1


class TestConvert:
    def test_tool_defs(self):
        [tool] = convert_tool_defs([{"name": "search", "description": "d", "input_schema": {"type": "object"}}])
        assert tool == {
            "type": "function",
            "function": {"name": "search", "description": "d", "parameters": {"type": "object"}},
        }

    def test_messages(self):
        messages = [
            Message(role="user", content="find cats"),
            Message(role="assistant", content="", metadata={
                "tool_calls": [{"id": "c1", "name": "search", "arguments": {"q": "cats"}}],
            }),
            Message(role="tool", content="3 cats", metadata={"tool_call_id": "c1", "name": "search"}),
        ]
        out = convert_messages(messages, "be brief")
        assert out[0] == {"role": "system", "content": "be brief"}
        assert out[2]["tool_calls"][0]["function"] == {"name": "search", "arguments": '{"q": "cats"}'}
        assert out[2]["content"] is None
        assert out[3] == {"role": "tool", "tool_call_id": "c1", "content": "3 cats"}

    def test_existing_system_message_kept(self):
        out = convert_messages([Message(role="system", content="sys")], "other")
        assert out == [{"role": "system", "content": "sys"}]


class TestStream:
    def test_text_stream(self):
        provider = GenericOpenAIProvider()
        lines = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
        )
        events = list(provider._consume_sse(iter(lines)))

        assert [e.type for e in events] == [
            StreamEventType.MESSAGE_START,
            StreamEventType.MESSAGE_DELTA,
            StreamEventType.MESSAGE_DELTA,
            StreamEventType.MESSAGE_DONE,
            StreamEventType.RESPONSE,
        ]
        assert events[3].content == "Hello"
        assert events[-1].usage == {"prompt_tokens": 5, "completion_tokens": 2}
        assert provider.last_usage == events[-1].usage

    def test_tool_call_fragments_assembled(self):
        provider = GenericOpenAIProvider()
        lines = _sse(
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "c1", "function": {"name": "task_complete", "arguments": '{"res'}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": 'ult": "done"}'}},
            ]}}]},
        )
        events = list(provider._consume_sse(iter(lines)))
        done = next(e for e in events if e.type == StreamEventType.MESSAGE_DONE)
        start = next(e for e in events if e.type == StreamEventType.TOOL_CALL_START)
        assert done.tool_calls[0].arguments == {"result": "done"}
        assert start.tool_call.id == "c1"
        assert start.tool_call.name == "task_complete"

    def test_malformed_arguments_become_empty(self):
        provider = GenericOpenAIProvider()
        lines = _sse({"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "c1", "function": {"name": "save", "arguments": "{not json"}},
        ]}}]})
        start = next(
            e for e in provider._consume_sse(iter(lines)) if e.type == StreamEventType.TOOL_CALL_START
        )
        assert start.tool_call.arguments == {}

    def test_truncated_stream_has_no_terminal_event(self):
        provider = GenericOpenAIProvider()
        lines = ["data: " + json.dumps({"choices": [{"delta": {"content": "Hel"}}]})]
        events = list(provider._consume_sse(iter(lines)))
        assert [e.type for e in events] == [
            StreamEventType.MESSAGE_START,
            StreamEventType.MESSAGE_DELTA,
        ]

    def test_truncated_stream_fails_the_turn(self):
        provider = GenericOpenAIProvider()
        response = MagicMock(status_code=200)
        response.iter_lines.return_value = iter(_sse({"choices": [{"delta": {"content": "ok"}}]})[:-1])
        config = MetamindConfig(orchestrator=OrchestratorConfig(model_classes={"standard": ["m"]}))
        with patch("metamind.providers.generic_openai.httpx.Client") as cls:
            client = _mock_client(cls)
            client.stream.return_value.__enter__.return_value = response
            result = TaskOrchestrator(provider, config).run(AgentSpec(name="a"), "hi")
        assert result.status == TaskStatus.FATAL_ERROR
        assert result.error == "Stream ended without a terminal response"

    def test_http_error_status_yields_error_event(self):
        provider = GenericOpenAIProvider()
        response = MagicMock(status_code=500, text="boom")
        with patch("metamind.providers.generic_openai.httpx.Client") as cls:
            client = _mock_client(cls)
            client.stream.return_value.__enter__.return_value = response
            events = list(provider.stream([Message(role="user", content="hi")], AgentRequest(name="a", model="m")))
        assert [e.type for e in events] == [StreamEventType.ERROR]
        assert events[0].error == "HTTP 500: boom"

    def test_transport_error_yields_error_event(self):
        provider = GenericOpenAIProvider()
        with patch("metamind.providers.generic_openai.httpx.Client") as cls:
            client = _mock_client(cls)
            client.stream.side_effect = httpx.ConnectError("refused")
            events = list(provider.stream([Message(role="user", content="hi")], AgentRequest(name="a", model="m")))
        assert events[-1].type == StreamEventType.ERROR
        assert "refused" in events[-1].error

    def test_stream_payload(self):
        provider = GenericOpenAIProvider(model="default")
        response = MagicMock(status_code=200)
        response.iter_lines.return_value = iter(_sse({"choices": [{"delta": {"content": "ok"}}]}))
        request = AgentRequest(
            name="a", model="gpt-4o-mini", instructions="sys",
            tools=[{"name": "t", "description": "", "input_schema": {}}],
            settings={"max_tokens": 64},
        )
        with patch("metamind.providers.generic_openai.httpx.Client") as cls:
            client = _mock_client(cls)
            client.stream.return_value.__enter__.return_value = response
            events = list(provider.stream([Message(role="user", content="hi")], request))

        payload = client.stream.call_args.kwargs["json"]
        assert payload["model"] == "gpt-4o-mini"
        assert payload["stream"] is True
        assert payload["max_tokens"] == 64
        assert payload["tools"][0]["function"]["name"] == "t"
        assert events[-1].type == StreamEventType.RESPONSE


class TestBuildProvider:
    def test_ollama_defaults(self):
        provider = build_provider("local", {"type": "ollama", "model": "qwen3"})
        assert provider.base_url == DEFAULT_BASE_URLS["ollama"]
        assert provider.model == "qwen3"
        assert provider._provider_name() == "local"

    def test_openai_key_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
        provider = build_provider("main", {"type": "openai", "api_key_env": "TEST_OPENAI_KEY"})
        assert provider.api_key == "sk-test"
        assert provider.base_url == "https://api.openai.com/v1"

    def test_openai_requires_key(self, monkeypatch):
        monkeypatch.delenv("TEST_OPENAI_KEY", raising=False)
        with pytest.raises(LLMProviderError):
            build_provider("main", {"type": "openai", "api_key_env": "TEST_OPENAI_KEY"})

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            build_provider("x", {"type": "telepathy"})
