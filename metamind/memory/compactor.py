"""ThreadCompactor: lifecycle transitions and token-budget enforcement.

Each cycle walks every thread except core, archived and ephemeral ones:

- active threads idle for ``active_to_idle_minutes`` become idle and get a
  heavy compaction;
- idle threads idle for ``idle_to_archived_minutes`` get an archival
  compaction, become archived and are indexed for similarity search;
- otherwise, threads over their state's token budget get a light (active)
  or heavy (idle) compaction.

A compaction summarizes the oldest messages beyond the level's preserve
count, appends the result to the running summary and drops those messages
from the thread. Canonical history is never touched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from ..token_counter import estimate_tokens
from ..types import (
    CompactionCycleReport,
    CompactionLevel,
    CompactionRecord,
    LifecycleError,
    MemoryConfig,
    Summarizer,
    ThreadNotFoundError,
    TopicState,
    TopicThread,
    utcnow,
)
from .thread_store import TopicThreadStore
from .vector_index import VectorSearchIndex

logger = logging.getLogger(__name__)

# Forward transitions only; promotion to core is handled separately.
LEGAL_TRANSITIONS = {
    TopicState.ACTIVE: {TopicState.IDLE},
    TopicState.IDLE: {TopicState.ARCHIVED},
}

_SKIPPED_STATES = (TopicState.CORE, TopicState.ARCHIVED, TopicState.EPHEMERAL)


class ThreadCompactor:
    """Runs compaction cycles over a TopicThreadStore."""

    def __init__(
        self,
        store: TopicThreadStore,
        index: VectorSearchIndex,
        summarizer: Summarizer,
        config: MemoryConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self.store = store
        self.index = index
        self.summarizer = summarizer
        self.config = config or MemoryConfig()
        self.token_counter = token_counter or estimate_tokens
        self.records: dict[str, list[CompactionRecord]] = {}
        self._last_run = utcnow()

    def should_run_compaction(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        interval = timedelta(seconds=self.config.compaction_interval_seconds)
        return now - self._last_run >= interval

    def run_cycle(self, now: datetime | None = None) -> CompactionCycleReport:
        now = now or utcnow()
        self._last_run = now
        report = CompactionCycleReport()

        for thread in self.store.all_threads():
            if thread.state in _SKIPPED_STATES:
                continue
            try:
                if self._check_transition(thread, now, report):
                    continue
                self._check_budget(thread, report)
            except Exception as e:
                logger.warning(f"Compaction of thread '{thread.name}' failed: {e}")
                report.failures.append(thread.name)

        if report.transitions or report.compactions:
            logger.info(
                f"Compaction cycle: {len(report.transitions)} transitions, "
                f"{len(report.compactions)} compactions, {len(report.failures)} failures"
            )
        return report

    def _check_transition(
        self, thread: TopicThread, now: datetime, report: CompactionCycleReport,
    ) -> bool:
        cfg = self.config
        if thread.state == TopicState.ACTIVE and self.store.is_inactive(
            thread, cfg.active_to_idle_minutes, now,
        ):
            self.transition(thread.name, TopicState.IDLE)
            report.transitions.append((thread.name, "active", "idle"))
            if self.compact_thread(thread, CompactionLevel.HEAVY):
                report.compactions.append((thread.name, "heavy"))
            return True

        if thread.state == TopicState.IDLE and self.store.is_inactive(
            thread, cfg.idle_to_archived_minutes, now,
        ):
            # Compact before archiving: on failure the thread stays idle and
            # is retried next cycle.
            if self.compact_thread(thread, CompactionLevel.ARCHIVAL):
                report.compactions.append((thread.name, "archival"))
            self.transition(thread.name, TopicState.ARCHIVED)
            self.index.add_thread(thread)
            report.transitions.append((thread.name, "idle", "archived"))
            return True

        return False

    def _check_budget(self, thread: TopicThread, report: CompactionCycleReport) -> None:
        cfg = self.config
        level = None
        if thread.state == TopicState.ACTIVE and thread.token_count > cfg.max_tokens_per_active_thread:
            level = CompactionLevel.LIGHT
        elif thread.state == TopicState.IDLE and thread.token_count > cfg.max_tokens_per_idle_thread:
            level = CompactionLevel.HEAVY
        if level is not None and self.compact_thread(thread, level):
            report.compactions.append((thread.name, level.value))

    def transition(self, name: str, target: TopicState) -> None:
        """Apply a lifecycle transition, rejecting anything but forward moves."""
        thread = self._require(name)
        if target == TopicState.CORE:
            self.store.update_state(name, target)
            return
        if target not in LEGAL_TRANSITIONS.get(thread.state, set()):
            raise LifecycleError(
                f"Illegal transition for '{name}': {thread.state.value} -> {target.value}"
            )
        self.store.update_state(name, target)

    def promote_to_core(self, name: str) -> None:
        thread = self._require(name)
        if thread.state == TopicState.ARCHIVED:
            self.index.remove_thread(name)
        self.transition(name, TopicState.CORE)

    def compact_thread(self, thread: TopicThread, level: CompactionLevel) -> CompactionRecord | None:
        """Summarize the oldest messages beyond the level's preserve count.

        Returns the new record, or None when there was nothing to compact.
        Summarizer errors propagate.
        """
        if thread.state == TopicState.EPHEMERAL:
            logger.warning(f"Refusing to summarize ephemeral thread '{thread.name}'")
            return None

        params = self.config.levels.params(level)
        to_compact = max(0, len(thread.messages) - params.preserve_latest)
        if to_compact == 0:
            return None

        batch = thread.messages[:to_compact]
        summary = self.summarizer.summarize(batch, thread.name, level)

        merged = f"{thread.summary}\n\n{summary}" if thread.summary else summary
        self.store.update_summary(thread.name, merged)
        self.store.drop_oldest(thread.name, to_compact)

        record = CompactionRecord(
            messages_compacted=to_compact,
            tokens_compacted=sum(self.token_counter(m.content) for m in batch),
            boundary_message_id=batch[-1].id,
            summary=summary,
            level=level,
        )
        self.records.setdefault(thread.name, []).append(record)
        logger.debug(
            f"Compacted {to_compact} messages from '{thread.name}' ({level.value}), "
            f"{len(thread.messages)} remain"
        )
        return record

    def compact_thread_by_name(
        self, name: str, level: CompactionLevel = CompactionLevel.LIGHT,
    ) -> CompactionRecord | None:
        """Manual compaction outside the cycle. Errors propagate to the caller."""
        return self.compact_thread(self._require(name), level)

    def _require(self, name: str) -> TopicThread:
        thread = self.store.get(name)
        if thread is None:
            raise ThreadNotFoundError(f"Thread '{name}' not found")
        return thread
