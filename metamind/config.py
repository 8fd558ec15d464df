"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    VALID_META_FREQUENCIES,
    VALID_THOUGHT_DELAYS,
    CompactionLevels,
    ContextOptions,
    CostTrackingConfig,
    LevelParams,
    MemoryConfig,
    MetamindConfig,
    OrchestratorConfig,
)

CONFIG_FILENAMES = [
    "metamind.yaml",
    "metamind.yml",
    "metamind.json",
    ".metamind.yaml",
]

PROVIDER_TYPES = ("openai", "ollama", "generic")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_level(raw: dict[str, Any] | None, default: LevelParams) -> LevelParams:
    raw = raw or {}
    return LevelParams(
        max_tokens=raw.get("max_tokens", default.max_tokens),
        preserve_latest=raw.get("preserve_latest", default.preserve_latest),
    )


def _build_memory(raw: dict[str, Any]) -> MemoryConfig:
    defaults = CompactionLevels()
    levels_raw = raw.get("levels", {})
    ctx_raw = raw.get("context", {})
    ctx_default = ContextOptions()
    return MemoryConfig(
        enabled=raw.get("enabled", True),
        provider=raw.get("provider", ""),
        sliding_window_size=raw.get("sliding_window_size", 20),
        processing_threshold=raw.get("processing_threshold", 5),
        max_queue_size=raw.get("max_queue_size", 500),
        max_tokens_per_active_thread=raw.get("max_tokens_per_active_thread", 20_000),
        max_tokens_per_idle_thread=raw.get("max_tokens_per_idle_thread", 5_000),
        active_to_idle_minutes=raw.get("active_to_idle_minutes", 60),
        idle_to_archived_minutes=raw.get("idle_to_archived_minutes", 1440),
        compaction_interval_seconds=raw.get("compaction_interval_seconds", 300),
        levels=CompactionLevels(
            light=_parse_level(levels_raw.get("light"), defaults.light),
            heavy=_parse_level(levels_raw.get("heavy"), defaults.heavy),
            archival=_parse_level(levels_raw.get("archival"), defaults.archival),
        ),
        context=ContextOptions(
            max_tokens=ctx_raw.get("max_tokens", ctx_default.max_tokens),
            include_idle_summaries=ctx_raw.get(
                "include_idle_summaries", ctx_default.include_idle_summaries,
            ),
            include_archived_search=ctx_raw.get(
                "include_archived_search", ctx_default.include_archived_search,
            ),
            recent_message_count=ctx_raw.get(
                "recent_message_count", ctx_default.recent_message_count,
            ),
            archived_search_top_k=ctx_raw.get(
                "archived_search_top_k", ctx_default.archived_search_top_k,
            ),
        ),
        embedding_model=raw.get("embedding_model", ""),
    )


def _build_config(raw: dict[str, Any]) -> MetamindConfig:
    """Build a MetamindConfig from a raw dict."""
    orch_raw = raw.get("orchestrator", {})
    cost_raw = raw.get("cost_tracking", {})

    orchestrator = OrchestratorConfig(
        meta_frequency=orch_raw.get("meta_frequency", 5),
        thought_delay=orch_raw.get("thought_delay", 0),
        max_turns=orch_raw.get("max_turns", 100),
        max_tool_retries=orch_raw.get("max_tool_retries", 1),
        model_classes={
            name: list(models)
            for name, models in orch_raw.get("model_classes", {}).items()
        },
        model_scores=dict(orch_raw.get("model_scores", {})),
        meta_model_class=orch_raw.get("meta_model_class", "reasoning"),
        provider=orch_raw.get("provider", ""),
    )

    return MetamindConfig(
        version=str(raw.get("version", "0.1")),
        token_counter=raw.get("token_counter", "estimate"),
        memory=_build_memory(raw.get("memory", {})),
        orchestrator=orchestrator,
        cost_tracking=CostTrackingConfig(
            enabled=cost_raw.get("enabled", True),
            pricing=cost_raw.get("pricing", {}),
        ),
        providers=raw.get("providers", {}),
    )


def validate_config(config: MetamindConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    orch = config.orchestrator
    mem = config.memory

    if orch.meta_frequency not in VALID_META_FREQUENCIES:
        errors.append(
            f"meta_frequency ({orch.meta_frequency}) must be one of {list(VALID_META_FREQUENCIES)}"
        )
    if orch.thought_delay not in VALID_THOUGHT_DELAYS:
        errors.append(
            f"thought_delay ({orch.thought_delay}) must be one of {list(VALID_THOUGHT_DELAYS)}"
        )
    if orch.max_turns < 1:
        errors.append("max_turns must be >= 1")

    for model, score in orch.model_scores.items():
        if not 0 <= score <= 100:
            errors.append(f"Score for model '{model}' must be within 0-100, got {score}")

    for name, models in orch.model_classes.items():
        if not models:
            errors.append(f"Model class '{name}' has no models")

    if mem.sliding_window_size < 1:
        errors.append("sliding_window_size must be >= 1")
    if mem.processing_threshold < 1:
        errors.append("processing_threshold must be >= 1")
    if mem.idle_to_archived_minutes <= mem.active_to_idle_minutes:
        errors.append(
            f"idle_to_archived_minutes ({mem.idle_to_archived_minutes}) must be > "
            f"active_to_idle_minutes ({mem.active_to_idle_minutes})"
        )
    for level_name in ("light", "heavy", "archival"):
        params = getattr(mem.levels, level_name)
        if params.max_tokens < 1 or params.preserve_latest < 0:
            errors.append(f"Invalid {level_name} compaction level parameters")

    for provider_name in (orch.provider, mem.provider):
        if provider_name and provider_name not in config.providers:
            errors.append(f"Provider '{provider_name}' not found in providers section")

    for name, pconfig in config.providers.items():
        ptype = pconfig.get("type", "generic")
        if ptype not in PROVIDER_TYPES:
            errors.append(f"Provider '{name}' has unknown type '{ptype}'")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> MetamindConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
