"""LLMMessageTagger: assign topic tags to a window of messages."""

from __future__ import annotations

import logging
import re

from ..core.cost_tracker import CostTracker, usage_tokens
from ..types import (
    CORE_TOPIC,
    EPHEMERAL_TOPIC,
    LLMProvider,
    Message,
    TaggingError,
    TaggingResult,
)
from .response_parsing import parse_json_response

logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 500

TAGGER_SYSTEM_PROMPT = """\
You organize a conversation into topic threads. For each message, decide which
topics it belongs to. A message may belong to several topics.

Rules:
- Reuse an existing topic name whenever the message continues that subject.
  Only create a new topic for a genuinely new subject.
- Topic names are short, lowercase, hyphenated (e.g. "database-schema").
- Use "{core}" for standing instructions, goals and constraints that must
  never be forgotten.
- Use "{ephemeral}" for small talk, acknowledgements and anything not worth
  remembering. Do not combine "{ephemeral}" with other topics.
- Give each message a one-sentence summary.
- Report parent/child relationships between topics when one is a subtopic of
  another.

Respond with JSON only:
{{
  "messages": [{{"message_id": "...", "topics": ["..."], "summary": "..."}}],
  "relationships": [{{"parent": "...", "child": "..."}}]
}}"""


def normalize_topic(name: str) -> str:
    """Stable identifier for a topic name: lowercase, hyphenated."""
    topic = name.lower().strip()
    topic = re.sub(r"[^a-z0-9-]", "-", topic)
    return re.sub(r"-+", "-", topic).strip("-")


class LLMMessageTagger:
    """Tags a batch of messages with one language-model call.

    Failures raise ``TaggingError`` without retrying; the caller keeps the
    batch queued for the next cycle.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        max_tokens: int = 2000,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.llm = llm_provider
        self.max_tokens = max_tokens
        self._cost_tracker = cost_tracker

    def tag(self, messages: list[Message], known_topics: list[str]) -> TaggingResult:
        if not messages:
            return TaggingResult()

        system = TAGGER_SYSTEM_PROMPT.format(core=CORE_TOPIC, ephemeral=EPHEMERAL_TOPIC)
        prompt = self._build_prompt(messages, known_topics)

        try:
            response = self.llm.complete(system=system, user=prompt, max_tokens=self.max_tokens, retries=1)
        except Exception as e:
            raise TaggingError(f"Tagging call failed: {e}") from e
        self._log_usage()

        parsed = parse_json_response(response)
        if parsed is None or not isinstance(parsed.get("messages"), list):
            raise TaggingError(f"Unparseable tagging response: {response[:200]!r}")
        return self._build_result(parsed, messages)

    def _build_prompt(self, messages: list[Message], known_topics: list[str]) -> str:
        topics = ", ".join(known_topics) if known_topics else "(none yet)"
        lines = [f"Existing topics: {topics}", "", "Messages:"]
        for m in messages:
            content = m.content
            if len(content) > MAX_CONTENT_CHARS:
                content = content[:MAX_CONTENT_CHARS] + "..."
            lines.append(f"[{m.id}] {m.role.upper()}: {content}")
        return "\n".join(lines)

    def _build_result(self, parsed: dict, messages: list[Message]) -> TaggingResult:
        batch_ids = {m.id for m in messages}
        result = TaggingResult()

        for entry in parsed["messages"]:
            if not isinstance(entry, dict):
                continue
            message_id = entry.get("message_id")
            if message_id not in batch_ids:
                logger.debug(f"Tagger returned unknown message id {message_id!r}, ignoring")
                continue
            topics = self._normalize_topics(entry.get("topics", []))
            if not topics:
                continue
            result.tags[message_id] = topics
            summary = entry.get("summary")
            if isinstance(summary, str) and summary.strip():
                result.summaries[message_id] = summary.strip()

        for rel in parsed.get("relationships", []) or []:
            if not isinstance(rel, dict):
                continue
            parent = normalize_topic(str(rel.get("parent", "")))
            child = normalize_topic(str(rel.get("child", "")))
            if parent and child and parent != child and EPHEMERAL_TOPIC not in (parent, child):
                result.relationships.append((parent, child))

        return result

    @staticmethod
    def _normalize_topics(topics: list) -> list[str]:
        """Normalize and deduplicate; "ephemeral" wins over everything else."""
        seen: set[str] = set()
        result: list[str] = []
        for topic in topics:
            if not isinstance(topic, str):
                continue
            normalized = normalize_topic(topic)
            if normalized and normalized not in seen:
                seen.add(normalized)
                result.append(normalized)
        if EPHEMERAL_TOPIC in seen:
            return [EPHEMERAL_TOPIC]
        return result

    def _log_usage(self) -> None:
        """Log LLM token usage from the provider's last_usage to the cost tracker."""
        if not self._cost_tracker:
            return
        input_tokens, output_tokens = usage_tokens(getattr(self.llm, "last_usage", {}))
        if input_tokens or output_tokens:
            self._cost_tracker.log_tagging(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                model=getattr(self.llm, "model", ""),
            )
