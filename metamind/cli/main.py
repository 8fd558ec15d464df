"""CLI: metamind run, config validate, memory show, memory search."""

from __future__ import annotations

import argparse
import concurrent.futures
import json
import logging
import sys

from ..config import load_config, validate_config
from ..core.orchestrator import TaskOrchestrator
from ..memory.persistence import load_snapshot
from ..memory.vector_index import VectorSearchIndex
from ..types import AgentSpec, MetamindError, TaskStatus, TopicState, TopicThread, ValidationError


def _load_valid_config(path: str | None):
    try:
        config = load_config(path)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)
    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)
    return config


def cmd_run(args):
    """Run a task until it completes, fails, or is interrupted."""
    config = _load_valid_config(args.config)
    if args.max_turns:
        config.orchestrator.max_turns = args.max_turns

    try:
        orchestrator = TaskOrchestrator.from_config(config)
    except (MetamindError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    memory = orchestrator.new_memory()
    if args.memory_state and memory is not None:
        if memory.load_state(args.memory_state):
            print(f"Restored memory from {args.memory_state}", file=sys.stderr)

    agent = AgentSpec(
        name=args.agent,
        instructions=args.instructions or "",
        model=args.model,
        model_class=args.model_class,
    )
    try:
        run = orchestrator.create_run(agent, args.task, memory=memory)
    except ValidationError as e:
        print(f"Invalid task: {e}", file=sys.stderr)
        sys.exit(1)

    # Run on a worker so Ctrl-C can cancel cleanly between turns.
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(orchestrator.execute, run, not args.once)
        while True:
            try:
                result = future.result(timeout=0.5)
                break
            except concurrent.futures.TimeoutError:
                continue
            except KeyboardInterrupt:
                print("\nInterrupted, finishing current turn...", file=sys.stderr)
                run.cancel("interrupted")

    if args.memory_state and memory is not None:
        memory.save_state(args.memory_state)

    if args.json:
        print(json.dumps({
            "status": result.status.value,
            "result": result.result,
            "error": result.error,
            "turns": result.turns,
            "elapsed_seconds": round(result.elapsed_seconds, 3),
            "cost": result.cost,
        }, indent=2))
    else:
        print(f"Status:  {result.status.value}")
        print(f"Turns:   {result.turns}")
        print(f"Elapsed: {result.elapsed_seconds:.1f}s")
        print(f"Cost:    ${result.cost:.4f}")
        if result.result:
            print(f"\n{result.result}")
        if result.error:
            print(f"\nError: {result.error}")

    sys.exit(0 if result.status == TaskStatus.COMPLETE else 1)


def cmd_config_validate(args):
    """Validate config file."""
    config = _load_valid_config(args.config)
    orch = config.orchestrator
    print("Config is valid.")
    print(f"  Provider: {orch.provider or '(none)'}")
    print(f"  Model classes: {', '.join(orch.model_classes) or '(none)'}")
    print(f"  Meta frequency: every {orch.meta_frequency} turns")
    print(f"  Thought delay: {orch.thought_delay}s")
    print(f"  Memory: {'enabled' if config.memory.enabled else 'disabled'}")


def cmd_memory_show(args):
    """Print the topics in a memory snapshot."""
    try:
        snapshot = load_snapshot(args.snapshot)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if not snapshot.topic_tags:
        print("No topics in snapshot.")
        return

    counts: dict[str, int] = {}
    for meta in snapshot.tagged_messages.values():
        for topic in meta.topics:
            counts[topic] = counts.get(topic, 0) + 1

    print(f"Topics: {len(snapshot.topic_tags)}  Tagged messages: {len(snapshot.tagged_messages)}")
    print()
    print(f"{'Topic':<30} {'State':<10} {'Messages':>8} {'Compactions':>11} {'Last Update':>17}")
    print("-" * 80)
    for name, row in sorted(snapshot.topic_tags.items(), key=lambda kv: kv[1].last_update, reverse=True):
        compactions = len(snapshot.compaction_records.get(name, []))
        print(
            f"{name:<30} {row.type.value:<10} {counts.get(name, 0):>8} "
            f"{compactions:>11} {row.last_update.strftime('%Y-%m-%d %H:%M'):>17}"
        )


def cmd_memory_search(args):
    """Similarity search over archived topics in a snapshot."""
    try:
        snapshot = load_snapshot(args.snapshot)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    index = VectorSearchIndex()
    for name, row in snapshot.topic_tags.items():
        if row.type == TopicState.ARCHIVED or args.all:
            index.add_thread(TopicThread(name=name, state=row.type, summary=row.description))

    hits = index.search(args.query, args.limit)
    if not hits:
        print("No archived topics to search.")
        return
    for hit in hits:
        print(f"{hit.score:.3f}  {hit.name}")
        if hit.summary:
            print(f"       {hit.summary[:200]}")


def main():
    parser = argparse.ArgumentParser(
        prog="metamind",
        description="Task orchestration with topic-threaded conversation memory",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="More logging (-vv for debug)")

    subparsers = parser.add_subparsers(dest="command")

    # run
    run_parser = subparsers.add_parser("run", help="Run a task")
    run_parser.add_argument("task", help="Task description")
    run_parser.add_argument("--agent", default="agent", help="Agent name")
    run_parser.add_argument("--instructions", "-i", help="System instructions")
    run_parser.add_argument("--model", "-m", help="Explicit model id")
    run_parser.add_argument("--model-class", default="standard", help="Model class from config")
    run_parser.add_argument("--once", action="store_true", help="Run a single turn")
    run_parser.add_argument("--max-turns", type=int, help="Override orchestrator.max_turns")
    run_parser.add_argument("--memory-state", help="Load/save memory snapshot at this path")
    run_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    # memory
    memory_parser = subparsers.add_parser("memory", help="Inspect memory snapshots")
    memory_sub = memory_parser.add_subparsers(dest="memory_command")
    show_parser = memory_sub.add_parser("show", help="List topics in a snapshot")
    show_parser.add_argument("snapshot", help="Snapshot JSON file")
    search_parser = memory_sub.add_parser("search", help="Search archived topics")
    search_parser.add_argument("snapshot", help="Snapshot JSON file")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--limit", "-n", type=int, default=3, help="Max results")
    search_parser.add_argument("--all", action="store_true", help="Search every topic, not only archived")

    args = parser.parse_args()

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "run":
        cmd_run(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: metamind config validate")
            sys.exit(1)
    elif args.command == "memory":
        if args.memory_command == "show":
            cmd_memory_show(args)
        elif args.memory_command == "search":
            cmd_memory_search(args)
        else:
            print("Usage: metamind memory {show,search} SNAPSHOT")
            sys.exit(1)


if __name__ == "__main__":
    main()
