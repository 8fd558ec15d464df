"""MetamemoryEngine: topic tagging, compaction and context assembly behind one API.

``process_messages`` is safe to call from a background worker while the
caller keeps using ``build_context``. Only one processing pass runs at a
time: a call that arrives mid-pass queues its messages and returns.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Callable

from ..types import (
    CORE_TOPIC,
    EPHEMERAL_TOPIC,
    TARGET_COMPACTION_PERCENT,
    AssembledContext,
    CompactionCycleReport,
    CompactionLevel,
    CompactionRecord,
    ContextOptions,
    LLMProvider,
    MemoryConfig,
    MemoryStats,
    Message,
    MessageMetadata,
    MessageTagger,
    MetamemorySnapshot,
    MetamindConfig,
    Summarizer,
    TaggingError,
    TaggingResult,
    TopicState,
    TopicTagRecord,
    TopicThread,
    utcnow,
)
from .assembler import ContextAssembler, summary_message
from .compactor import ThreadCompactor
from .thread_store import TopicThreadStore
from .vector_index import EmbedFn, VectorSearchIndex

logger = logging.getLogger(__name__)

MESSAGE_SUMMARY_CHARS = 120


class MetamemoryEngine:
    """Conversation memory organized as topic threads."""

    def __init__(
        self,
        tagger: MessageTagger,
        summarizer: Summarizer,
        config: MemoryConfig | None = None,
        embed_fn: EmbedFn | None = None,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self.config = config or MemoryConfig()
        self.tagger = tagger
        self.store = TopicThreadStore()
        self.index = VectorSearchIndex(embed_fn)
        self.tagged_messages: dict[str, MessageMetadata] = {}
        self.compactor = ThreadCompactor(
            self.store, self.index, summarizer, self.config, token_counter,
        )
        self.assembler = ContextAssembler(
            self.store, self.index, self.tagged_messages, self.config.context, token_counter,
        )
        self.last_processed_index = 0
        self._seen_ids: set[str] = set()
        self._queue: deque[Message] = deque()
        self._queue_lock = threading.Lock()
        # Serializes state mutation against readers (build_context, get_state).
        self._state_lock = threading.RLock()
        self._processing = False

    @classmethod
    def from_config(cls, config: MetamindConfig, provider: LLMProvider, cost_tracker=None) -> MetamemoryEngine:
        """Wire an LLM-backed tagger and summarizer around one provider."""
        from ..token_counter import create_token_counter
        from .summarizer import LLMSummarizer
        from .tagger import LLMMessageTagger
        from .vector_index import sentence_transformer_embedder

        embed_fn = None
        if config.memory.embedding_model:
            embed_fn = sentence_transformer_embedder(config.memory.embedding_model)
        return cls(
            tagger=LLMMessageTagger(provider, cost_tracker=cost_tracker),
            summarizer=LLMSummarizer(provider, config.memory.levels, cost_tracker=cost_tracker),
            config=config.memory,
            embed_fn=embed_fn,
            token_counter=create_token_counter(config.token_counter),
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_messages(self, history: list[Message]) -> bool:
        """Queue messages not seen before, then run a pass if allowed.

        Messages are tracked by id, so a history that is shorter than the
        last one, or a different conversation, is still queued in full.
        Returns True when a pass ran. Returns False when another pass is in
        flight or fewer than ``processing_threshold`` messages are queued.
        """
        with self._queue_lock:
            fresh = [m for m in history if m.id not in self._seen_ids]
            self._seen_ids.update(m.id for m in fresh)
            self._enqueue(fresh)
            self.last_processed_index = len(history)
            if self._processing:
                logger.debug("Processing pass in flight, messages queued")
                return False
            if len(self._queue) < self.config.processing_threshold:
                return False
            self._processing = True

        try:
            self._run_pass()
        finally:
            with self._queue_lock:
                self._processing = False
        return True

    def _enqueue(self, messages: list[Message]) -> None:
        for msg in messages:
            self._queue.append(msg)
        overflow = len(self._queue) - self.config.max_queue_size
        if overflow > 0:
            for _ in range(overflow):
                self._queue.popleft()
            logger.warning(f"Memory queue full, dropped {overflow} oldest messages")

    def _run_pass(self) -> None:
        window = self.config.sliding_window_size
        while True:
            with self._queue_lock:
                if len(self._queue) < self.config.processing_threshold:
                    break
                batch = [self._queue[i] for i in range(min(window, len(self._queue)))]

            try:
                result = self.tagger.tag(batch, [t.name for t in self.store.all_threads()])
            except TaggingError as e:
                # Batch stays queued for the next pass.
                logger.warning(f"Tagging failed, {len(batch)} messages remain queued: {e}")
                break

            with self._state_lock:
                self._apply_tags(batch, result)

            batch_ids = {m.id for m in batch}
            with self._queue_lock:
                self._queue = deque(m for m in self._queue if m.id not in batch_ids)

        if self.compactor.should_run_compaction():
            self.force_compaction()

    def _apply_tags(self, batch: list[Message], result: TaggingResult) -> None:
        now = utcnow()
        for msg in batch:
            topics = result.tags.get(msg.id, [])
            if not topics or EPHEMERAL_TOPIC in topics:
                continue
            for topic in topics:
                state = TopicState.CORE if topic == CORE_TOPIC else TopicState.ACTIVE
                self.store.create(topic, state)
                self.store.add_message(topic, msg, now)
            self.tagged_messages[msg.id] = MessageMetadata(
                message_id=msg.id,
                topics=list(topics),
                summary=result.summaries.get(msg.id) or msg.content[:MESSAGE_SUMMARY_CHARS],
                last_update=now,
            )

        for parent, child in result.relationships:
            if parent in self.store and child in self.store:
                self.store.add_relationship(parent, child)

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def force_compaction(self, now: datetime | None = None) -> CompactionCycleReport:
        """Run a compaction cycle now, ignoring the interval gate."""
        with self._state_lock:
            return self.compactor.run_cycle(now)

    def compact_thread_by_name(
        self, name: str, level: CompactionLevel = CompactionLevel.LIGHT,
    ) -> CompactionRecord | None:
        with self._state_lock:
            return self.compactor.compact_thread_by_name(name, level)

    def mark_topic_as_core(self, name: str) -> None:
        with self._state_lock:
            if name not in self.store:
                self.store.create(name, TopicState.CORE)
                return
            self.compactor.promote_to_core(name)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def build_context(
        self, history: list[Message], options: ContextOptions | None = None,
    ) -> AssembledContext:
        with self._state_lock:
            return self.assembler.build_context(history, options)

    def compact_history(self, history: list[Message]) -> list[Message]:
        """Replace compacted message runs with one summary message per topic.

        A message is replaced only when every topic it belongs to has
        compacted it; each topic's summary appears once, at its first run.
        """
        with self._state_lock:
            position = {m.id: i for i, m in enumerate(history)}
            boundaries: dict[str, int] = {}
            for topic, records in self.compactor.records.items():
                known = [position[r.boundary_message_id] for r in records if r.boundary_message_id in position]
                if known:
                    boundaries[topic] = max(known)

            result: list[Message] = []
            emitted: set[str] = set()
            for i, msg in enumerate(history):
                meta = self.tagged_messages.get(msg.id)
                if meta is None or not meta.topics or not all(
                    boundaries.get(t, -1) >= i for t in meta.topics
                ):
                    result.append(msg)
                    continue
                for topic in meta.topics:
                    if topic in emitted:
                        continue
                    emitted.add(topic)
                    thread = self.store.get(topic)
                    summary = thread.summary if thread else ""
                    if not summary:
                        summary = "\n\n".join(r.summary for r in self.compactor.records[topic])
                    result.append(summary_message(topic, summary))
            return result

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self) -> MetamemorySnapshot:
        with self._state_lock:
            topic_tags = {
                t.name: TopicTagRecord(
                    type=t.state,
                    description=t.summary,
                    last_update=t.last_active,
                    target_compaction_percent=TARGET_COMPACTION_PERCENT[t.state],
                    created_at=t.created_at,
                    related=list(t.relationships),
                )
                for t in self.store.all_threads()
            }
            return MetamemorySnapshot(
                topic_tags=topic_tags,
                tagged_messages=copy.deepcopy(self.tagged_messages),
                compaction_records=copy.deepcopy(self.compactor.records),
                last_processed_index=self.last_processed_index,
            )

    def restore_state(
        self, snapshot: MetamemorySnapshot, history: list[Message] | None = None,
    ) -> None:
        """Replace all state with ``snapshot``.

        When ``history`` is given, thread members newer than each topic's
        last compaction boundary are re-attached from it.
        """
        with self._state_lock, self._queue_lock:
            self.store.clear()
            self.index.clear()
            self._queue.clear()
            # Assembler holds a reference to this dict, so mutate in place.
            self.tagged_messages.clear()
            self.tagged_messages.update(copy.deepcopy(snapshot.tagged_messages))
            self.compactor.records = copy.deepcopy(snapshot.compaction_records)
            self.last_processed_index = snapshot.last_processed_index

            history = history or []
            position = {m.id: i for i, m in enumerate(history)}
            self._seen_ids = set(self.tagged_messages)
            self._seen_ids.update(m.id for m in history[:self.last_processed_index])

            for name, row in snapshot.topic_tags.items():
                thread = TopicThread(
                    name=name,
                    state=row.type,
                    summary=row.description,
                    created_at=row.created_at,
                    last_active=row.last_update,
                    relationships=list(row.related),
                )
                boundary = max(
                    (position.get(r.boundary_message_id, -1) for r in self.compactor.records.get(name, [])),
                    default=-1,
                )
                thread.messages = [
                    msg for i, msg in enumerate(history)
                    if i > boundary
                    and msg.id in self.tagged_messages
                    and name in self.tagged_messages[msg.id].topics
                ]
                self.store.restore(thread)
                if thread.state == TopicState.ARCHIVED:
                    self.index.add_thread(thread)

        logger.info(
            f"Restored memory state: {len(snapshot.topic_tags)} topics, "
            f"{len(snapshot.tagged_messages)} tagged messages"
        )

    def save_state(self, path: str | Path) -> None:
        """Persist a snapshot as JSON. Failures are logged, not raised."""
        from .persistence import save_snapshot
        try:
            save_snapshot(self.get_state(), path)
        except Exception as e:
            logger.error(f"Failed to save memory state: {e}")

    def load_state(self, path: str | Path, history: list[Message] | None = None) -> bool:
        """Restore from a JSON snapshot if one exists. Returns True on success."""
        from .persistence import load_snapshot
        try:
            snapshot = load_snapshot(path)
        except FileNotFoundError:
            return False
        except Exception as e:
            logger.error(f"Failed to load memory state from {path}: {e}")
            return False
        self.restore_state(snapshot, history)
        return True

    def get_memory_stats(self) -> MemoryStats:
        with self._state_lock:
            threads = self.store.all_threads()
            by_state: dict[str, int] = {}
            for t in threads:
                by_state[t.state.value] = by_state.get(t.state.value, 0) + 1
            with self._queue_lock:
                queued = len(self._queue)
            return MemoryStats(
                total_threads=len(threads),
                by_state=by_state,
                total_tokens=sum(t.token_count for t in threads),
                tagged_messages=len(self.tagged_messages),
                queued_messages=queued,
                archived_indexed=len(self.index),
                compactions=sum(len(r) for r in self.compactor.records.values()),
            )
