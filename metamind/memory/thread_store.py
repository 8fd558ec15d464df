"""TopicThreadStore: in-memory per-topic thread state.

The store mutates freely; whether a lifecycle transition is legal is decided
by the compactor. It holds no locks and assumes a single writer.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from ..token_counter import estimate_thread_tokens
from ..types import Message, ThreadNotFoundError, TopicState, TopicThread, utcnow


def thread_token_estimate(thread: TopicThread) -> int:
    return estimate_thread_tokens([m.content for m in thread.messages], thread.summary)


class TopicThreadStore:
    """Holds topic threads keyed by name, in creation order."""

    def __init__(self) -> None:
        self._threads: dict[str, TopicThread] = {}

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, name: object) -> bool:
        return name in self._threads

    def create(self, name: str, state: TopicState = TopicState.ACTIVE) -> TopicThread:
        """Create a thread, or return the existing one unchanged."""
        existing = self._threads.get(name)
        if existing is not None:
            return existing
        thread = TopicThread(name=name, state=state)
        thread.token_count = thread_token_estimate(thread)
        self._threads[name] = thread
        return thread

    def get(self, name: str) -> TopicThread | None:
        return self._threads.get(name)

    def _require(self, name: str) -> TopicThread:
        thread = self._threads.get(name)
        if thread is None:
            raise ThreadNotFoundError(f"Thread '{name}' not found")
        return thread

    def all_threads(self) -> list[TopicThread]:
        return list(self._threads.values())

    def by_state(self, state: TopicState) -> list[TopicThread]:
        return [t for t in self._threads.values() if t.state == state]

    def add_message(self, name: str, message: Message, now: datetime | None = None) -> bool:
        """Append a message reference. Returns False if it was already a member."""
        thread = self._require(name)
        if any(m.id == message.id for m in thread.messages):
            return False
        thread.messages.append(message)
        thread.last_active = now or utcnow()
        thread.token_count = thread_token_estimate(thread)
        return True

    def update_state(self, name: str, state: TopicState) -> None:
        self._require(name).state = state

    def update_summary(self, name: str, summary: str) -> None:
        thread = self._require(name)
        thread.summary = summary
        thread.token_count = thread_token_estimate(thread)

    def recent_messages(self, name: str, count: int) -> list[Message]:
        thread = self._require(name)
        if count <= 0:
            return []
        return list(thread.messages[-count:])

    def drop_oldest(self, name: str, count: int) -> list[Message]:
        """Remove the oldest ``count`` members and return them."""
        thread = self._require(name)
        if count <= 0:
            return []
        dropped = thread.messages[:count]
        thread.messages = thread.messages[count:]
        thread.token_count = thread_token_estimate(thread)
        return dropped

    def add_relationship(self, a: str, b: str) -> None:
        """Link two existing threads in both directions."""
        if a == b:
            return
        first, second = self._require(a), self._require(b)
        if b not in first.relationships:
            first.relationships.append(b)
        if a not in second.relationships:
            second.relationships.append(a)

    def related(self, name: str) -> list[TopicThread]:
        thread = self._require(name)
        return [self._threads[r] for r in thread.relationships if r in self._threads]

    def remove(self, name: str) -> None:
        thread = self._threads.pop(name, None)
        if thread is None:
            return
        for other in self._threads.values():
            if name in other.relationships:
                other.relationships.remove(name)

    def restore(self, thread: TopicThread) -> None:
        """Insert a fully-built thread (snapshot restore)."""
        thread.token_count = thread_token_estimate(thread)
        self._threads[thread.name] = thread

    def clear(self) -> None:
        self._threads.clear()

    @staticmethod
    def is_inactive(
        thread: TopicThread,
        threshold_minutes: float,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        return now - thread.last_active > timedelta(minutes=threshold_minutes)
