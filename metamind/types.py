"""All dataclasses, Protocols, enums and exceptions for metamind."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Protocol, runtime_checkable


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

VALID_ROLES = ("user", "assistant", "system", "tool")


@dataclass(frozen=True)
class Message:
    role: str  # "user", "assistant", "system", "tool"
    content: str
    id: str = field(default_factory=_new_message_id)
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict = field(default_factory=dict, compare=False, hash=False)


# ---------------------------------------------------------------------------
# Topic threads
# ---------------------------------------------------------------------------

class TopicState(str, Enum):
    """Lifecycle state of a topic thread."""
    CORE = "core"            # never transitions, never archived
    ACTIVE = "active"
    IDLE = "idle"
    ARCHIVED = "archived"
    EPHEMERAL = "ephemeral"  # never summarized


CORE_TOPIC = "core"
EPHEMERAL_TOPIC = "ephemeral"

# Snapshot "target compaction percent" per state
TARGET_COMPACTION_PERCENT = {
    TopicState.CORE: 100,
    TopicState.ACTIVE: 80,
    TopicState.IDLE: 60,
    TopicState.ARCHIVED: 40,
    TopicState.EPHEMERAL: 20,
}


@dataclass
class TopicThread:
    """A named, stateful grouping of messages sharing a subject."""
    name: str
    state: TopicState = TopicState.ACTIVE
    messages: list[Message] = field(default_factory=list)
    summary: str = ""
    token_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)
    relationships: list[str] = field(default_factory=list)


class CompactionLevel(str, Enum):
    LIGHT = "light"
    HEAVY = "heavy"
    ARCHIVAL = "archival"


@dataclass
class LevelParams:
    """Summarizer budget and how many recent messages survive a pass."""
    max_tokens: int
    preserve_latest: int


@dataclass
class CompactionRecord:
    messages_compacted: int
    tokens_compacted: int
    boundary_message_id: str  # id of the last compacted message
    summary: str
    level: CompactionLevel = CompactionLevel.LIGHT
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CompactionCycleReport:
    """What one compaction cycle did."""
    transitions: list[tuple[str, str, str]] = field(default_factory=list)  # (name, from, to)
    compactions: list[tuple[str, str]] = field(default_factory=list)  # (name, level)
    failures: list[str] = field(default_factory=list)


@dataclass
class MessageMetadata:
    message_id: str
    topics: list[str] = field(default_factory=list)
    summary: str = ""
    last_update: datetime = field(default_factory=utcnow)


@dataclass
class TopicTagRecord:
    """Snapshot row for one topic thread."""
    type: TopicState
    description: str  # running summary
    last_update: datetime
    target_compaction_percent: int
    created_at: datetime
    related: list[str] = field(default_factory=list)


@dataclass
class MetamemorySnapshot:
    topic_tags: dict[str, TopicTagRecord] = field(default_factory=dict)
    tagged_messages: dict[str, MessageMetadata] = field(default_factory=dict)
    compaction_records: dict[str, list[CompactionRecord]] = field(default_factory=dict)
    last_processed_index: int = 0


@dataclass
class TaggingResult:
    """Output of one tagger call."""
    tags: dict[str, list[str]] = field(default_factory=dict)  # message id → topics
    summaries: dict[str, str] = field(default_factory=dict)
    relationships: list[tuple[str, str]] = field(default_factory=list)  # (parent, child)


@dataclass
class SearchHit:
    name: str
    score: float
    summary: str = ""


@dataclass
class ContextOptions:
    max_tokens: int = 100_000
    include_idle_summaries: bool = True
    include_archived_search: bool = True
    recent_message_count: int = 30
    archived_search_top_k: int = 3


@dataclass
class AssembledContext:
    """Bounded message list handed to the next turn."""
    messages: list[Message] = field(default_factory=list)
    total_tokens: int = 0
    budget_breakdown: dict[str, int] = field(default_factory=dict)
    dropped: int = 0


@dataclass
class MemoryStats:
    total_threads: int = 0
    by_state: dict[str, int] = field(default_factory=dict)
    total_tokens: int = 0
    tagged_messages: int = 0
    queued_messages: int = 0
    archived_indexed: int = 0
    compactions: int = 0


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

VALID_META_FREQUENCIES = (5, 10, 20, 40)
VALID_THOUGHT_DELAYS = (0, 2, 4, 8, 16, 32, 64, 128)
DEFAULT_MODEL_SCORE = 50


class TaskStatus(str, Enum):
    COMPLETE = "complete"
    FATAL_ERROR = "fatal_error"
    INCOMPLETE = "incomplete"


class RunPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FATAL_ERROR = "fatal_error"
    INCOMPLETE = "incomplete"


@dataclass
class RunState:
    """Orchestration state for one run. Never shared across runs."""
    turn_count: int = 0
    meta_frequency: int = 5
    thought_delay: int = 0
    disabled_models: set[str] = field(default_factory=set)
    model_scores: dict[str, int] = field(default_factory=dict)
    last_model: str | None = None
    meta_invocations: int = 0

    def copy(self) -> RunState:
        return RunState(
            turn_count=self.turn_count,
            meta_frequency=self.meta_frequency,
            thought_delay=self.thought_delay,
            disabled_models=set(self.disabled_models),
            model_scores=dict(self.model_scores),
            last_model=self.last_model,
            meta_invocations=self.meta_invocations,
        )


@dataclass(frozen=True)
class TaskResult:
    status: TaskStatus
    result: str | None = None
    error: str | None = None
    history: tuple[Message, ...] = ()
    elapsed_seconds: float = 0.0
    cost: float = 0.0
    turns: int = 0
    state: RunState | None = None


@dataclass
class ToolSpec:
    """A tool the model may call. ``function`` receives the parsed arguments."""
    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    function: Callable[..., Any] | None = None

    def definition(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class AgentSpec:
    name: str
    instructions: str = ""
    model: str | None = None  # explicit model id
    model_class: str = "standard"
    tools: list[ToolSpec] = field(default_factory=list)
    settings: dict = field(default_factory=dict)


@dataclass
class AgentRequest:
    """Agent descriptor sent with each service call."""
    name: str
    model: str
    instructions: str = ""
    tools: list[dict] = field(default_factory=list)
    settings: dict = field(default_factory=dict)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)


class StreamEventType(str, Enum):
    MESSAGE_START = "message_start"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_DONE = "message_done"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_DONE = "tool_call_done"
    RESPONSE = "response"  # terminal, carries usage
    ERROR = "error"        # terminal


@dataclass
class StreamEvent:
    type: StreamEventType
    content: str = ""
    tool_call: ToolCall | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    output: str | None = None  # tool_call_done return value
    usage: dict = field(default_factory=dict)
    cost: float | None = None
    error: str | None = None


@dataclass
class SessionCostSummary:
    total_turns: int = 0
    total_meta_turns: int = 0
    total_taggings: int = 0
    total_summarizations: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    estimated_cost_usd: float = 0.0


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class MetamindError(Exception):
    """Base class for all metamind errors."""


class ValidationError(MetamindError):
    """Malformed agent, task or options. Raised before any service call."""


class ServiceCallError(MetamindError):
    """The language-model call failed or its stream ended abnormally."""


class LLMProviderError(ServiceCallError):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TaggingError(MetamindError):
    pass


class SummarizationError(MetamindError):
    pass


class NoModelAvailableError(MetamindError):
    pass


class LifecycleError(MetamindError):
    pass


class ThreadNotFoundError(MetamindError, KeyError):
    pass


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class LLMProvider(Protocol):
    """Plain completion, used by the tagger and summarizer.

    ``retries`` is the total number of attempts for transient failures.
    """
    def complete(self, system: str, user: str, max_tokens: int, retries: int = ...) -> str: ...


@runtime_checkable
class LLMService(Protocol):
    """Streaming turn execution, used by the orchestrator."""
    def stream(self, messages: list[Message], agent: AgentRequest) -> Iterator[StreamEvent]: ...


@runtime_checkable
class Summarizer(Protocol):
    def summarize(self, messages: list[Message], topic: str, level: CompactionLevel) -> str: ...


@runtime_checkable
class MessageTagger(Protocol):
    def tag(self, messages: list[Message], known_topics: list[str]) -> TaggingResult: ...


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class CompactionLevels:
    light: LevelParams = field(default_factory=lambda: LevelParams(1000, 50))
    heavy: LevelParams = field(default_factory=lambda: LevelParams(500, 20))
    archival: LevelParams = field(default_factory=lambda: LevelParams(300, 0))

    def params(self, level: CompactionLevel) -> LevelParams:
        return getattr(self, level.value)


@dataclass
class MemoryConfig:
    """Metamemory engine settings."""
    enabled: bool = True
    provider: str = ""  # provider name used for tagging and summarization
    sliding_window_size: int = 20
    processing_threshold: int = 5
    max_queue_size: int = 500
    max_tokens_per_active_thread: int = 20_000
    max_tokens_per_idle_thread: int = 5_000
    active_to_idle_minutes: float = 60
    idle_to_archived_minutes: float = 1440
    compaction_interval_seconds: float = 300
    levels: CompactionLevels = field(default_factory=CompactionLevels)
    context: ContextOptions = field(default_factory=ContextOptions)
    embedding_model: str = ""  # sentence-transformers model; empty = hashed default


@dataclass
class OrchestratorConfig:
    meta_frequency: int = 5
    thought_delay: int = 0
    max_turns: int = 100
    max_tool_retries: int = 1
    model_classes: dict[str, list[str]] = field(default_factory=dict)
    model_scores: dict[str, int] = field(default_factory=dict)
    meta_model_class: str = "reasoning"
    provider: str = ""  # provider name used for turns


@dataclass
class CostTrackingConfig:
    enabled: bool = True
    pricing: dict[str, dict[str, float]] = field(default_factory=dict)


@dataclass
class MetamindConfig:
    version: str = "0.1"
    token_counter: str = "estimate"
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    cost_tracking: CostTrackingConfig = field(default_factory=CostTrackingConfig)
    providers: dict[str, dict] = field(default_factory=dict)
