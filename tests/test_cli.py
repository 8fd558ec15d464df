"""Tests for the `metamind` CLI."""

from __future__ import annotations

import json
import subprocess
import sys
from datetime import datetime, timezone

import pytest

from metamind.memory.persistence import save_snapshot
from metamind.types import (
    TARGET_COMPACTION_PERCENT,
    MessageMetadata,
    MetamemorySnapshot,
    TopicState,
    TopicTagRecord,
)


@pytest.fixture()
def tmp_cwd(tmp_path, monkeypatch):
    """Run test in a clean temporary directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


def _run_cli(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "metamind.cli.main", *args],
        capture_output=True,
        text=True,
    )


@pytest.fixture()
def snapshot_path(tmp_cwd):
    ts = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)

    def row(state, summary):
        return TopicTagRecord(
            type=state, description=summary, last_update=ts,
            target_compaction_percent=TARGET_COMPACTION_PERCENT[state], created_at=ts,
        )

    snapshot = MetamemorySnapshot(
        topic_tags={
            "database": row(TopicState.ARCHIVED, "database schema design"),
            "frontend": row(TopicState.ARCHIVED, "React vs Vue frontend"),
            "deploy": row(TopicState.ACTIVE, "database deploy pipeline"),
        },
        tagged_messages={
            "m1": MessageMetadata(message_id="m1", topics=["deploy"], last_update=ts),
            "m2": MessageMetadata(message_id="m2", topics=["deploy", "database"], last_update=ts),
        },
    )
    path = tmp_cwd / "memory.json"
    save_snapshot(snapshot, path)
    return path


def test_no_command_prints_help(tmp_cwd):
    result = _run_cli()
    assert result.returncode == 1
    assert "usage" in result.stdout.lower()


def test_config_validate_defaults(tmp_cwd):
    result = _run_cli("config", "validate")
    assert result.returncode == 0
    assert "Config is valid." in result.stdout


def test_config_validate_reports_errors(tmp_cwd):
    (tmp_cwd / "metamind.yaml").write_text("orchestrator:\n  meta_frequency: 3\n")
    result = _run_cli("config", "validate")
    assert result.returncode == 1
    assert "meta_frequency" in result.stderr


def test_run_without_provider_fails_cleanly(tmp_cwd):
    result = _run_cli("run", "write a haiku")
    assert result.returncode == 1
    assert "orchestrator.provider" in result.stderr


def test_memory_show(snapshot_path):
    result = _run_cli("memory", "show", str(snapshot_path))
    assert result.returncode == 0
    assert "Topics: 3  Tagged messages: 2" in result.stdout
    deploy_line = next(line for line in result.stdout.splitlines() if line.startswith("deploy"))
    assert deploy_line.split()[:3] == ["deploy", "active", "2"]


def test_memory_show_missing_file(tmp_cwd):
    result = _run_cli("memory", "show", str(tmp_cwd / "absent.json"))
    assert result.returncode == 1
    assert "not found" in result.stderr


def test_memory_search_archived_only(snapshot_path):
    result = _run_cli("memory", "search", str(snapshot_path), "database optimization", "-n", "5")
    assert result.returncode == 0
    names = [line.split()[1] for line in result.stdout.splitlines() if not line.startswith(" ")]
    assert names == ["database", "frontend"]


def test_memory_search_all_topics(snapshot_path):
    result = _run_cli("memory", "search", str(snapshot_path), "database", "--all", "-n", "1")
    assert result.returncode == 0
    assert len([line for line in result.stdout.splitlines() if not line.startswith(" ")]) == 1


def test_snapshot_file_is_json(snapshot_path):
    raw = json.loads(snapshot_path.read_text())
    assert set(raw["topic_tags"]) == {"database", "frontend", "deploy"}
