"""Tests for LLMMessageTagger."""

import json
from unittest.mock import MagicMock, patch

import pytest

from metamind.core.cost_tracker import CostTracker
from metamind.memory.engine import MetamemoryEngine
from metamind.memory.tagger import LLMMessageTagger, normalize_topic
from metamind.providers.generic_openai import GenericOpenAIProvider
from metamind.types import MemoryConfig, Message, TaggingError
from tests.conftest import MockLLMProvider, MockSummarizer


def _response(entries, relationships=None) -> str:
    return json.dumps({"messages": entries, "relationships": relationships or []})


@pytest.fixture
def batch():
    return [
        Message(role="user", content="Let's design the users table", id="m1"),
        Message(role="assistant", content="Sure, start with a primary key", id="m2"),
        Message(role="user", content="thanks!", id="m3"),
    ]


class TestNormalize:
    def test_lowercase_hyphenated(self):
        assert normalize_topic("Database Schema") == "database-schema"
        assert normalize_topic("  database_schema ") == "database-schema"
        assert normalize_topic("React/Vue!!") == "react-vue"


class TestTag:
    def test_parses_tags_and_summaries(self, batch):
        llm = MockLLMProvider(_response([
            {"message_id": "m1", "topics": ["Database Schema"], "summary": "Designing users table"},
            {"message_id": "m2", "topics": ["database-schema", "sql"]},
            {"message_id": "m3", "topics": ["ephemeral"]},
        ]))
        result = LLMMessageTagger(llm).tag(batch, ["database-schema"])

        assert result.tags == {
            "m1": ["database-schema"],
            "m2": ["database-schema", "sql"],
            "m3": ["ephemeral"],
        }
        assert result.summaries == {"m1": "Designing users table"}

    def test_prompt_lists_known_topics_and_ids(self, batch):
        llm = MockLLMProvider(_response([]))
        LLMMessageTagger(llm).tag(batch, ["database-schema", "frontend"])
        user = llm.calls[0]["user"]
        assert "database-schema, frontend" in user
        assert "[m1] USER: Let's design the users table" in user
        assert '"core"' in llm.calls[0]["system"]

    def test_long_content_truncated_in_prompt(self):
        llm = MockLLMProvider(_response([]))
        msg = Message(role="user", content="x" * 900, id="long")
        LLMMessageTagger(llm).tag([msg], [])
        assert "x" * 500 + "..." in llm.calls[0]["user"]
        assert "x" * 501 not in llm.calls[0]["user"]

    def test_unknown_ids_ignored(self, batch):
        llm = MockLLMProvider(_response([
            {"message_id": "m1", "topics": ["db"]},
            {"message_id": "not-in-batch", "topics": ["db"]},
        ]))
        result = LLMMessageTagger(llm).tag(batch, [])
        assert list(result.tags) == ["m1"]

    def test_ephemeral_wins_over_other_topics(self, batch):
        llm = MockLLMProvider(_response([
            {"message_id": "m3", "topics": ["db", "Ephemeral"]},
        ]))
        result = LLMMessageTagger(llm).tag(batch, [])
        assert result.tags["m3"] == ["ephemeral"]

    def test_relationships_normalized_and_filtered(self, batch):
        llm = MockLLMProvider(_response(
            [{"message_id": "m1", "topics": ["frontend"]}],
            [
                {"parent": "Frontend", "child": "React"},
                {"parent": "frontend", "child": "ephemeral"},
                {"parent": "db", "child": "db"},
            ],
        ))
        result = LLMMessageTagger(llm).tag(batch, [])
        assert result.relationships == [("frontend", "react")]

    def test_fenced_response(self, batch):
        body = _response([{"message_id": "m1", "topics": ["db"]}])
        llm = MockLLMProvider(f"<think>hmm</think>\n```json\n{body}\n```")
        result = LLMMessageTagger(llm).tag(batch, [])
        assert result.tags == {"m1": ["db"]}

    def test_empty_batch_makes_no_call(self):
        llm = MockLLMProvider(_response([]))
        assert LLMMessageTagger(llm).tag([], []).tags == {}
        assert llm.calls == []


class TestFailures:
    def test_call_failure_raises(self, batch):
        llm = MockLLMProvider(error=RuntimeError("connection reset"))
        with pytest.raises(TaggingError, match="connection reset"):
            LLMMessageTagger(llm).tag(batch, [])
        assert [c["retries"] for c in llm.calls] == [1]

    def test_server_error_is_a_single_attempt(self, batch):
        provider = GenericOpenAIProvider()
        with patch("metamind.providers.base.httpx.Client") as cls, \
                patch("metamind.providers.base.time.sleep") as sleep:
            client = MagicMock()
            client.__enter__ = MagicMock(return_value=client)
            client.__exit__ = MagicMock(return_value=False)
            cls.return_value = client
            client.post.return_value = MagicMock(status_code=503, text="overloaded")
            with pytest.raises(TaggingError, match="503"):
                LLMMessageTagger(provider).tag(batch, [])
        assert client.post.call_count == 1
        sleep.assert_not_called()

    def test_unparseable_response_raises(self, batch):
        llm = MockLLMProvider("I could not decide on topics.")
        with pytest.raises(TaggingError):
            LLMMessageTagger(llm).tag(batch, [])

    def test_missing_messages_key_raises(self, batch):
        llm = MockLLMProvider(json.dumps({"topics": ["db"]}))
        with pytest.raises(TaggingError):
            LLMMessageTagger(llm).tag(batch, [])


def test_usage_logged_to_cost_tracker(batch):
    tracker = CostTracker()
    llm = MockLLMProvider(_response([{"message_id": "m1", "topics": ["db"]}]))
    LLMMessageTagger(llm, cost_tracker=tracker).tag(batch, [])
    summary = tracker.get_summary()
    assert summary.total_taggings == 1
    assert summary.total_input_tokens == 100
    assert summary.total_output_tokens == 20


@pytest.mark.regression("BUG-001")
def test_same_topic_across_two_calls_creates_one_thread():
    """Topic names that differ only in spelling must land in a single thread."""
    llm = MockLLMProvider([
        _response([{"message_id": "a1", "topics": ["Database Schema"]}]),
        _response([{"message_id": "b1", "topics": ["database_schema"]}]),
    ])
    engine = MetamemoryEngine(
        tagger=LLMMessageTagger(llm),
        summarizer=MockSummarizer(),
        config=MemoryConfig(processing_threshold=1, sliding_window_size=1),
    )
    history = [Message(role="user", content="users table columns?", id="a1")]
    engine.process_messages(history)
    history.append(Message(role="user", content="add an index on email", id="b1"))
    engine.process_messages(history)

    assert len(llm.calls) == 2
    assert [t.name for t in engine.store.all_threads()] == ["database-schema"]
    thread = engine.store.get("database-schema")
    assert [m.id for m in thread.messages] == ["a1", "b1"]
