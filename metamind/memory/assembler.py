"""ContextAssembler: bounded context for the next turn from threads and history."""

from __future__ import annotations

from typing import Callable

from ..token_counter import estimate_tokens
from ..types import (
    AssembledContext,
    ContextOptions,
    Message,
    MessageMetadata,
    TopicState,
)
from .thread_store import TopicThreadStore
from .vector_index import VectorSearchIndex

COMPACTED_SUMMARY_TEMPLATE = '[Compacted summary for topic "{name}"]: {summary}'

ARCHIVED_QUERY_MESSAGES = 5


def summary_message(name: str, summary: str) -> Message:
    """Synthetic system message standing in for a topic's compacted messages."""
    return Message(
        role="system",
        content=COMPACTED_SUMMARY_TEMPLATE.format(name=name, summary=summary),
        id=f"summary_{name}",
        metadata={"compacted_topic": name},
    )


def _tool_call_ids(msg: Message) -> set[str]:
    if msg.role != "assistant":
        return set()
    calls = msg.metadata.get("tool_calls") or []
    return {c["id"] for c in calls if isinstance(c, dict) and c.get("id")}


def group_tool_exchanges(messages: list[Message]) -> list[list[Message]]:
    """Split history into chronological units.

    An assistant message carrying tool calls and the tool results that
    answer it form one unit; every other message is a unit of its own.
    """
    units: list[list[Message]] = []
    open_ids: set[str] = set()
    for msg in messages:
        if msg.role == "tool" and units and msg.metadata.get("tool_call_id") in open_ids:
            units[-1].append(msg)
            continue
        units.append([msg])
        open_ids = _tool_call_ids(msg)
    return units


def drop_orphan_tool_results(messages: list[Message]) -> tuple[list[Message], list[Message]]:
    """Remove tool results whose tool-call message is not present.

    Returns ``(kept, removed)``.
    """
    call_ids: set[str] = set()
    for msg in messages:
        call_ids |= _tool_call_ids(msg)
    kept: list[Message] = []
    removed: list[Message] = []
    for msg in messages:
        if msg.role == "tool" and msg.metadata.get("tool_call_id") not in call_ids:
            removed.append(msg)
        else:
            kept.append(msg)
    return kept, removed


class ContextAssembler:
    """Assemble context within a token budget.

    Items are selected in priority order and are included or dropped whole:

    1. core threads: summary plus unreduced members, always included
    2. the most recent raw messages, newest first; an assistant tool-call
       message and its tool results are one item
    3. summaries of threads those messages belong to, plus one-hop relations
    4. archived threads found by similarity search on recent message text

    Output order puts summary items first, then raw messages chronologically.
    """

    def __init__(
        self,
        store: TopicThreadStore,
        index: VectorSearchIndex,
        tagged_messages: dict[str, MessageMetadata],
        options: ContextOptions | None = None,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self.store = store
        self.index = index
        self.tagged_messages = tagged_messages
        self.options = options or ContextOptions()
        self.token_counter = token_counter or estimate_tokens

    def build_context(
        self, history: list[Message], options: ContextOptions | None = None,
    ) -> AssembledContext:
        options = options or self.options
        budget = options.max_tokens
        breakdown = {"core": 0, "recent": 0, "related": 0, "archived": 0}
        summaries: list[Message] = []
        raw: dict[str, Message] = {}
        included_topics: set[str] = set()
        used = 0
        dropped = 0

        # 1. Core threads, regardless of budget
        for thread in self.store.by_state(TopicState.CORE):
            included_topics.add(thread.name)
            if thread.summary:
                item = summary_message(thread.name, thread.summary)
                summaries.append(item)
                breakdown["core"] += self.token_counter(item.content)
            for msg in thread.messages:
                if msg.id not in raw:
                    raw[msg.id] = msg
                    breakdown["core"] += self.token_counter(msg.content)
        used += breakdown["core"]

        # 2. Recent messages, newest first, stop at the first unit that doesn't
        # fit. A tool-call message and its results form one unit.
        limit = max(options.recent_message_count, 0)
        window = history[-limit:] if limit else []
        recent: list[Message] = []
        taken = 0
        for unit in reversed(group_tool_exchanges(history)):
            if taken + len(unit) > limit:
                break
            taken += len(unit)
            fresh = [m for m in unit if m.id not in raw]
            tokens = sum(self.token_counter(m.content) for m in fresh)
            if used + tokens > budget:
                break
            for msg in fresh:
                raw[msg.id] = msg
            recent = fresh + recent
            used += tokens
            breakdown["recent"] += tokens
        dropped += sum(1 for m in window if m.id not in raw)

        def try_add(name: str, summary: str, bucket: str) -> None:
            nonlocal used, dropped
            item = summary_message(name, summary)
            tokens = self.token_counter(item.content)
            if used + tokens > budget:
                dropped += 1
                return
            summaries.append(item)
            included_topics.add(name)
            used += tokens
            breakdown[bucket] += tokens

        # 3. Threads referenced by recent messages and their direct relations
        if options.include_idle_summaries:
            for name in self._referenced_topics(recent):
                if name in included_topics:
                    continue
                thread = self.store.get(name)
                if thread is None or thread.state == TopicState.EPHEMERAL or not thread.summary:
                    continue
                try_add(name, thread.summary, "related")

        # 4. Archived threads by similarity to what is being discussed now
        if options.include_archived_search and len(self.index):
            source = recent or history
            query = " ".join(m.content for m in source[-ARCHIVED_QUERY_MESSAGES:])
            if query.strip():
                for hit in self.index.search(query, options.archived_search_top_k):
                    if hit.name in included_topics:
                        continue
                    thread = self.store.get(hit.name)
                    if thread is None or thread.state != TopicState.ARCHIVED or not thread.summary:
                        continue
                    try_add(hit.name, thread.summary, "archived")

        position = {m.id: i for i, m in enumerate(history)}
        ordered = sorted(raw.values(), key=lambda m: position.get(m.id, -1))
        # Core members can still split an exchange; a lone tool result is
        # rejected by chat completion APIs.
        ordered, orphans = drop_orphan_tool_results(ordered)
        recent_ids = {m.id for m in recent}
        for msg in orphans:
            tokens = self.token_counter(msg.content)
            used -= tokens
            breakdown["recent" if msg.id in recent_ids else "core"] -= tokens
            dropped += 1

        return AssembledContext(
            messages=summaries + ordered,
            total_tokens=used,
            budget_breakdown=breakdown,
            dropped=dropped,
        )

    def _referenced_topics(self, messages: list[Message]) -> list[str]:
        """Topics of the given messages followed by their one-hop relations."""
        direct: list[str] = []
        for msg in messages:
            meta = self.tagged_messages.get(msg.id)
            if meta is None:
                continue
            for topic in meta.topics:
                if topic not in direct:
                    direct.append(topic)

        result = list(direct)
        for name in direct:
            if name not in self.store:
                continue
            for related in self.store.related(name):
                if related.name not in result:
                    result.append(related.name)
        return result
