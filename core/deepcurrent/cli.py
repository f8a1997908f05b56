"""
CLI commands for inspecting and steering strategy evolution.

All commands operate on a file-backed storage directory given by
--storage or DEEPCURRENT_STORAGE_PATH.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

from deepcurrent.config import EngineConfig
from deepcurrent.engine import StrategyEngine, build_engine
from deepcurrent.errors import NotFoundError, VersionConflictError

logger = logging.getLogger(__name__)


def register_topic_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register topic CLI commands."""

    # topic-create
    create_parser = subparsers.add_parser(
        "topic-create",
        help="Create a topic together with its initial strategy (v1)",
    )
    create_parser.add_argument("title", help="Topic title")
    create_parser.add_argument("--description", "-d", help="Topic description")
    create_parser.add_argument("--user", help="Owning user ID")
    create_parser.set_defaults(func=cmd_topic_create)

    # topics
    list_parser = subparsers.add_parser("topics", help="List topics")
    list_parser.set_defaults(func=cmd_topics)


def register_strategy_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register strategy and evolution CLI commands."""

    # strategies
    strategies_parser = subparsers.add_parser(
        "strategies",
        help="List strategy versions of a topic with status and rollout",
    )
    strategies_parser.add_argument("topic_id", help="Topic ID")
    strategies_parser.add_argument(
        "--json", action="store_true", help="Print the full records as JSON"
    )
    strategies_parser.set_defaults(func=cmd_strategies)

    # metrics
    metrics_parser = subparsers.add_parser(
        "metrics",
        help="Aggregate metrics for one strategy version",
    )
    metrics_parser.add_argument("topic_id", help="Topic ID")
    metrics_parser.add_argument("version", type=int, help="Strategy version")
    metrics_parser.add_argument(
        "--window", type=int, default=None, help="Window size (default from config)"
    )
    metrics_parser.set_defaults(func=cmd_metrics)

    # evolutions
    evolutions_parser = subparsers.add_parser(
        "evolutions",
        help="Show the evolution log of a topic, newest first",
    )
    evolutions_parser.add_argument("topic_id", help="Topic ID")
    evolutions_parser.add_argument("--limit", "-n", type=int, default=10)
    evolutions_parser.set_defaults(func=cmd_evolutions)

    # promote
    promote_parser = subparsers.add_parser(
        "promote",
        help="Make a version the sole active strategy at 100%% rollout",
    )
    promote_parser.add_argument("topic_id", help="Topic ID")
    promote_parser.add_argument("version", type=int, help="Strategy version")
    promote_parser.set_defaults(func=cmd_promote)

    # sweep
    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Fail running episodes older than the running TTL",
    )
    sweep_parser.add_argument(
        "--ttl", type=float, default=None, help="TTL in seconds (default from config)"
    )
    sweep_parser.set_defaults(func=cmd_sweep)


def _open_engine(args: argparse.Namespace) -> StrategyEngine | None:
    config: EngineConfig = args.config
    if args.storage:
        config.storage_path = Path(args.storage)
    if config.storage_path is None:
        print("No storage directory: pass --storage or set DEEPCURRENT_STORAGE_PATH")
        return None
    return build_engine(config)


def cmd_topic_create(args: argparse.Namespace) -> int:
    """Create a topic and its initial strategy."""
    engine = _open_engine(args)
    if engine is None:
        return 1
    try:
        topic, strategy = asyncio.run(
            engine.session.create_topic(
                args.title, description=args.description, user_id=args.user
            )
        )
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    print(f"Created topic {topic.topic_id}: {topic.title}")
    print(f"  Strategy v{strategy.version} ({strategy.status.value}, {strategy.rollout_percentage}%)")
    return 0


def cmd_topics(args: argparse.Namespace) -> int:
    """List topics."""
    engine = _open_engine(args)
    if engine is None:
        return 1

    topics = engine.topics.list_topics()
    if not topics:
        print("No topics found")
        return 0
    for topic in topics:
        print(f"{topic.topic_id}  {topic.title}")
    return 0


def cmd_strategies(args: argparse.Namespace) -> int:
    """List strategy versions of a topic."""
    engine = _open_engine(args)
    if engine is None:
        return 1

    strategies = asyncio.run(engine.store.list_strategies(args.topic_id))
    if not strategies:
        print(f"No strategies found for topic {args.topic_id}")
        return 1

    if args.json:
        print(json.dumps([s.model_dump(mode="json") for s in strategies], indent=2))
        return 0

    for s in strategies:
        parent = f"v{s.parent_version}" if s.parent_version else "-"
        print(
            f"v{s.version:<3} {s.status.value:<9} {s.rollout_percentage:>3}%  "
            f"parent={parent}  {json.dumps(s.config.to_config_json(), sort_keys=True)}"
        )
    return 0


def cmd_metrics(args: argparse.Namespace) -> int:
    """Aggregate metrics for a strategy version."""
    engine = _open_engine(args)
    if engine is None:
        return 1

    window = args.window or engine.config.window_size
    try:
        asyncio.run(engine.store.get_strategy(args.topic_id, args.version))
        metrics = asyncio.run(engine.aggregator.aggregate(args.topic_id, args.version, window))
    except (NotFoundError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Topic {args.topic_id} v{args.version} (last {window} finished episodes)")
    print(f"  Episodes:       {metrics.sample_size} ({metrics.failed_count} failed)")
    print(
        f"  Save rate:      {metrics.save_rate:.1%} "
        f"({metrics.total_sources_saved}/{metrics.total_sources_returned})"
    )
    print(f"  Avg follow-ups: {metrics.avg_followups:.2f}")
    print(f"  Failure rate:   {metrics.failure_rate:.1%}")
    if metrics.primary_tool_usage is not None:
        print(f"  {metrics.primary_tool} usage:  {metrics.primary_tool_usage:.1%}")
    return 0


def cmd_evolutions(args: argparse.Namespace) -> int:
    """Show the evolution log of a topic."""
    engine = _open_engine(args)
    if engine is None:
        return 1

    logs = asyncio.run(engine.store.list_evolution_logs(args.topic_id, limit=args.limit))
    if not logs:
        print(f"No evolutions recorded for topic {args.topic_id}")
        return 0

    for log in logs:
        source = f"v{log.from_version}" if log.from_version is not None else "-"
        print(f"{log.created_at.isoformat()}  {source} -> v{log.to_version}  {log.reason}")
        if log.detail:
            print(f"    {log.detail}")
        for key, change in log.changes.get("diff", {}).items():
            print(f"    {key}: {change['before']} -> {change['after']}")
    return 0


def cmd_promote(args: argparse.Namespace) -> int:
    """Promote a strategy version."""
    engine = _open_engine(args)
    if engine is None:
        return 1

    try:
        promoted = asyncio.run(engine.store.promote(args.topic_id, args.version))
    except (NotFoundError, VersionConflictError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Promoted v{promoted.version} of topic {args.topic_id} to 100% rollout")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Fail stale running episodes."""
    engine = _open_engine(args)
    if engine is None:
        return 1

    ttl = args.ttl if args.ttl is not None else engine.config.running_ttl_seconds
    if ttl <= 0:
        print("Error: --ttl must be positive")
        return 1

    async def sweep_and_evolve() -> int:
        swept = await engine.recorder.sweep_stale(timedelta(seconds=ttl))
        for episode in swept:
            await engine.orchestrator.handle(episode.episode_id)
        return len(swept)

    count = asyncio.run(sweep_and_evolve())
    print(f"Swept {count} stale running episodes")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deepcurrent",
        description="Inspect and steer self-evolving research strategies",
    )
    parser.add_argument(
        "--storage",
        "-s",
        help="Storage directory (default: DEEPCURRENT_STORAGE_PATH)",
    )
    parser.add_argument("--log-level", help="Logging level (default: DEEPCURRENT_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_topic_commands(subparsers)
    register_strategy_commands(subparsers)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig.from_env()
        if args.log_level:
            config = replace(config, log_level=args.log_level)
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.config = config
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
