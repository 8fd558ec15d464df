"""JSON persistence for metamemory snapshots."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from ..types import (
    CompactionLevel,
    CompactionRecord,
    MessageMetadata,
    MetamemorySnapshot,
    TopicState,
    TopicTagRecord,
)

SNAPSHOT_VERSION = 1


def _dt(value: datetime) -> str:
    return value.isoformat()


def _parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(value)


def snapshot_to_dict(snapshot: MetamemorySnapshot) -> dict:
    return {
        "version": SNAPSHOT_VERSION,
        "last_processed_index": snapshot.last_processed_index,
        "topic_tags": {
            name: {
                "type": row.type.value,
                "description": row.description,
                "last_update": _dt(row.last_update),
                "target_compaction_percent": row.target_compaction_percent,
                "created_at": _dt(row.created_at),
                "related": list(row.related),
            }
            for name, row in snapshot.topic_tags.items()
        },
        "tagged_messages": {
            mid: {
                "topics": list(meta.topics),
                "summary": meta.summary,
                "last_update": _dt(meta.last_update),
            }
            for mid, meta in snapshot.tagged_messages.items()
        },
        "compaction_records": {
            name: [
                {
                    "messages_compacted": r.messages_compacted,
                    "tokens_compacted": r.tokens_compacted,
                    "boundary_message_id": r.boundary_message_id,
                    "summary": r.summary,
                    "level": r.level.value,
                    "created_at": _dt(r.created_at),
                }
                for r in records
            ]
            for name, records in snapshot.compaction_records.items()
        },
    }


def snapshot_from_dict(raw: dict) -> MetamemorySnapshot:
    version = raw.get("version", SNAPSHOT_VERSION)
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version: {version}")
    return MetamemorySnapshot(
        topic_tags={
            name: TopicTagRecord(
                type=TopicState(row["type"]),
                description=row.get("description", ""),
                last_update=_parse_dt(row["last_update"]),
                target_compaction_percent=row.get("target_compaction_percent", 80),
                created_at=_parse_dt(row.get("created_at", row["last_update"])),
                related=list(row.get("related", [])),
            )
            for name, row in raw.get("topic_tags", {}).items()
        },
        tagged_messages={
            mid: MessageMetadata(
                message_id=mid,
                topics=list(meta.get("topics", [])),
                summary=meta.get("summary", ""),
                last_update=_parse_dt(meta["last_update"]),
            )
            for mid, meta in raw.get("tagged_messages", {}).items()
        },
        compaction_records={
            name: [
                CompactionRecord(
                    messages_compacted=r["messages_compacted"],
                    tokens_compacted=r["tokens_compacted"],
                    boundary_message_id=r["boundary_message_id"],
                    summary=r["summary"],
                    level=CompactionLevel(r.get("level", "light")),
                    created_at=_parse_dt(r["created_at"]),
                )
                for r in records
            ]
            for name, records in raw.get("compaction_records", {}).items()
        },
        last_processed_index=raw.get("last_processed_index", 0),
    )


def save_snapshot(snapshot: MetamemorySnapshot, path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(snapshot_to_dict(snapshot), indent=2))
    tmp.replace(path)


def load_snapshot(path: str | Path) -> MetamemorySnapshot:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Snapshot not found: {path}")
    return snapshot_from_dict(json.loads(path.read_text()))
