"""Continuity engine entrypoint.

Wires configuration, SQLite stores, and the generation client into a
``ContinuityEngine`` and exposes a small command line for inspection.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from dataclasses import dataclass

from config import AppConfig, get_config
from continuity.brief import BriefGenerator
from continuity.budget import BudgetGatekeeper
from continuity.candidates import CandidateFetcher
from continuity.engine import ContinuityEngine
from continuity.item_store import SqliteItemStore
from continuity.llm import OpenRouterClient
from continuity.normalization import normalize_depth
from continuity.observability import LogContext, get_logger
from continuity.runtime_paths import bootstrap_runtime_paths
from continuity.snapshot_cache import SnapshotCache
from continuity.state import StateResolver
from continuity.store import ContinuityStore
from continuity.unchanged import UnchangedContextBuilder
from models import Depth


@dataclass(frozen=True)
class EngineRuntime:
    """Container for initialized engine dependencies."""

    engine: ContinuityEngine
    continuity_store: ContinuityStore
    item_store: SqliteItemStore


def build_runtime(config: AppConfig) -> EngineRuntime:
    continuity_store, item_store = bootstrap_runtime_paths(config)
    default_depth = normalize_depth(config.default_depth)

    llm_client = OpenRouterClient(config) if config.generation_configured else None
    budget = BudgetGatekeeper(continuity_store, daily_budget_cents=config.daily_budget_cents)

    engine = ContinuityEngine(
        state_resolver=StateResolver(continuity_store, default_depth=default_depth),
        candidate_fetcher=CandidateFetcher(item_store),
        watchlist_source=item_store,
        engagement_source=item_store,
        unchanged_builder=UnchangedContextBuilder(item_store),
        snapshot_cache=SnapshotCache(
            continuity_store,
            ttl_minutes=config.snapshot_ttl_minutes,
            retention_days=config.snapshot_retention_days,
            cleanup_probability=config.cleanup_probability,
        ),
        brief_generator=BriefGenerator(
            llm_client,
            budget,
            failure_dir=config.failure_log_dir,
        ),
        default_depth=default_depth,
        lookback_hours=config.default_lookback_hours,
        io_timeout_seconds=config.io_timeout_seconds,
        logger=get_logger(),
    )
    return EngineRuntime(
        engine=engine,
        continuity_store=continuity_store,
        item_store=item_store,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="continuity",
        description="Inspect or acknowledge a client's since-last-read snapshot.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show = subparsers.add_parser("show", help="Print the since-last-read snapshot as JSON")
    show.add_argument("--client-id", default=None)
    show.add_argument("--depth", choices=[depth.value for depth in Depth], default=None)

    ack = subparsers.add_parser("ack", help="Advance the client's last-read watermark")
    ack.add_argument("--client-id", default=None)
    ack.add_argument("--depth", choices=[depth.value for depth in Depth], default=None)
    ack.add_argument("--until", dest="until_at", default=None, help="ISO-8601 timestamp")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run one CLI command and print its JSON result."""
    args = _build_parser().parse_args(argv)
    config = get_config()
    runtime = build_runtime(config)

    logger = get_logger()
    logger.info(
        "cli_started",
        context=LogContext(client_id=args.client_id),
        command=args.command,
        generation_enabled=config.generation_configured,
    )

    if args.command == "show":
        payload = runtime.engine.get_since_last_read(args.client_id, args.depth)
        print(json.dumps(payload.to_dict(), indent=2))
        return 0

    result = runtime.engine.acknowledge(args.client_id, args.depth, args.until_at)
    print(json.dumps({"success": True, "state": result.to_dict()}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
