"""metamind: task orchestration with topic-threaded conversation memory."""

from .config import load_config
from .core.orchestrator import TaskOrchestrator, run_task
from .memory.engine import MetamemoryEngine
from .types import (
    AgentSpec,
    Message,
    MetamindConfig,
    RunState,
    TaskResult,
    TaskStatus,
    ToolSpec,
)

__version__ = "0.1.0"

__all__ = [
    "TaskOrchestrator",
    "MetamemoryEngine",
    "run_task",
    "load_config",
    "AgentSpec",
    "Message",
    "MetamindConfig",
    "RunState",
    "TaskResult",
    "TaskStatus",
    "ToolSpec",
]
