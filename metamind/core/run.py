"""TaskRun: the mutable context of one orchestrated task."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import TYPE_CHECKING

from ..types import (
    VALID_ROLES,
    AgentSpec,
    Message,
    RunPhase,
    RunState,
    TaskStatus,
    ValidationError,
)
from .pacing import CancellationToken

if TYPE_CHECKING:
    from ..memory.engine import MetamemoryEngine


class TaskRun:
    """Everything one run owns: state, history, memory, injected messages
    and the cancel token.

    ``inject_message`` and ``cancel`` may be called from any thread; the
    orchestrator thread is the only one that touches ``history``.
    """

    def __init__(
        self,
        agent: AgentSpec,
        content: str,
        state: RunState,
        history: list[Message] | None = None,
        token: CancellationToken | None = None,
        memory: MetamemoryEngine | None = None,
    ) -> None:
        self.agent = agent
        self.content = content
        self.state = state
        self.history: list[Message] = list(history or [])
        self.token = token or CancellationToken()
        self.memory = memory
        self.phase = RunPhase.IDLE
        self.outcome: tuple[TaskStatus, str] | None = None
        self.turns = 0
        self._started_at: float | None = None
        self._pending: deque[Message] = deque()
        self._lock = threading.Lock()

    def start_clock(self) -> None:
        self._started_at = time.monotonic()

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    @property
    def halted(self) -> bool:
        return self.outcome is not None

    def inject_message(self, content: str, role: str = "user") -> Message:
        """Queue a message for the start of the next iteration."""
        if role not in VALID_ROLES:
            raise ValidationError(f"Invalid role: {role}")
        msg = Message(role=role, content=content)
        with self._lock:
            self._pending.append(msg)
        return msg

    def drain_injected(self) -> list[Message]:
        with self._lock:
            drained = list(self._pending)
            self._pending.clear()
        return drained

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)
