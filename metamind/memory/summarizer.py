"""LLMSummarizer: level-specific summaries of topic thread messages."""

from __future__ import annotations

import logging

from ..core.cost_tracker import CostTracker, usage_tokens
from ..types import (
    CompactionLevel,
    CompactionLevels,
    LLMProvider,
    Message,
    SummarizationError,
)
from .response_parsing import parse_json_response

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[Summary truncated]"

_RESPONSE_FORMAT = """\
Respond with JSON:
{{
  "summary": "...",
  "key_points": ["..."],
  "open_questions": ["..."],
  "next_steps": ["..."],
  "current_status": "..."
}}"""

LEVEL_PROMPTS = {
    CompactionLevel.LIGHT: """\
You are compacting an active conversation thread about "{topic}".
Write a detailed summary that preserves decisions, facts, names, numbers,
code identifiers and unresolved questions, so work can continue without the
original messages. Stay within {max_tokens} tokens.

""" + _RESPONSE_FORMAT,
    CompactionLevel.HEAVY: """\
You are compacting a conversation thread about "{topic}" that has gone quiet.
Keep only key decisions, final outcomes and anything still open. Drop
exploration and back-and-forth. Stay within {max_tokens} tokens.

""" + _RESPONSE_FORMAT,
    CompactionLevel.ARCHIVAL: """\
You are archiving a finished conversation thread about "{topic}".
Write a very short record of what it was about and what was concluded, suitable
for finding this thread again later by search. Stay within {max_tokens} tokens.

""" + _RESPONSE_FORMAT,
}


def format_messages(messages: list[Message]) -> str:
    """Format messages as '[i] ROLE (HH:MM):\\ncontent' blocks."""
    blocks: list[str] = []
    for i, m in enumerate(messages):
        ts = f" ({m.timestamp.strftime('%H:%M')})" if m.timestamp else ""
        blocks.append(f"[{i}] {m.role.upper()}{ts}:\n{m.content}")
    return "\n\n".join(blocks)


def format_summary(parsed: dict) -> str:
    """Render the structured summary as text with bulleted sections."""
    parts = [str(parsed.get("summary", "")).strip()]
    for key, title in (
        ("key_points", "Key Points"),
        ("open_questions", "Open Questions"),
        ("next_steps", "Next Steps"),
    ):
        items = [str(i).strip() for i in parsed.get(key) or [] if str(i).strip()]
        if items:
            parts.append(f"{title}:\n" + "\n".join(f"• {i}" for i in items))
    status = str(parsed.get("current_status") or "").strip()
    if status:
        parts.append(f"Current Status: {status}")
    return "\n\n".join(p for p in parts if p)


def clean_summary(text: str, max_tokens: int) -> str:
    """Trim to roughly ``max_tokens`` (4 chars per token), marking the cut."""
    text = text.strip()
    limit = max_tokens * 4
    if len(text) <= limit:
        return text
    return text[:max(0, limit - 20)].rstrip() + TRUNCATION_MARKER


class LLMSummarizer:
    """Summarize thread messages with a prompt and budget chosen by level.

    One attempt per call; a failed compaction is retried by the next cycle.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        levels: CompactionLevels | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.llm = llm_provider
        self.levels = levels or CompactionLevels()
        self._cost_tracker = cost_tracker

    def summarize(self, messages: list[Message], topic: str, level: CompactionLevel) -> str:
        max_tokens = self.levels.params(level).max_tokens
        system = LEVEL_PROMPTS[level].format(topic=topic, max_tokens=max_tokens)
        user = f"Messages to summarize ({len(messages)}):\n\n{format_messages(messages)}"

        try:
            response = self.llm.complete(system=system, user=user, max_tokens=max_tokens, retries=1)
        except Exception as e:
            raise SummarizationError(f"Summarization of '{topic}' failed: {e}") from e
        self._log_usage()

        parsed = parse_json_response(response)
        if parsed is not None and parsed.get("summary"):
            text = format_summary(parsed)
        else:
            logger.debug(f"Summary for '{topic}' was not JSON, using raw text")
            text = response

        summary = clean_summary(text, max_tokens)
        if not summary:
            raise SummarizationError(f"Empty summary for '{topic}'")
        return summary

    def _log_usage(self) -> None:
        if not self._cost_tracker:
            return
        input_tokens, output_tokens = usage_tokens(getattr(self.llm, "last_usage", {}))
        if input_tokens or output_tokens:
            self._cost_tracker.log_summarization(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                model=getattr(self.llm, "model", ""),
            )
