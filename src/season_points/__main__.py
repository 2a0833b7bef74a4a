"""Command-line entry point for schedulers.

Usage:
    python -m season_points ingest
    python -m season_points recalc --cursor 0 --limit 250 [--fast] [--all]
    python -m season_points rewards [--address 0x...]
    python -m season_points jobs
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any

from redis.asyncio import Redis

from season_points.config import ConfigurationError, Settings, get_settings
from season_points.pipeline import IngestionPipeline
from season_points.queries import PointsQueryService

logger = logging.getLogger("season_points")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="season_points",
        description="Season points leaderboard jobs.",
        epilog="Example: python -m season_points recalc --fast --all",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("ingest", help="Ingest new swaps and re-score touched wallets.")

    recalc = sub.add_parser("recalc", help="Recompute stored wallets in batches.")
    recalc.add_argument("--cursor", type=int, default=0, help="Batch start offset (default: 0).")
    recalc.add_argument("--limit", type=int, default=None, help="Wallets per batch (default: POINTS_RECALC_LIMIT).")
    recalc.add_argument("--fast", action="store_true", help="Refresh LP only for LP holders and priority ranks.")
    recalc.add_argument("--all", action="store_true", help="Keep going until every batch is done.")

    rewards = sub.add_parser("rewards", help="Preview the season reward table.")
    rewards.add_argument("--address", help="Also print the claim state of this wallet.")

    sub.add_parser("jobs", help="Run one scheduled cycle of ingest and recalc rounds.")

    return parser.parse_args(argv)


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def _run_ingest(settings: Settings) -> dict[str, Any]:
    async with IngestionPipeline(settings) as pipeline:
        summary = await pipeline.run_ingestion_pass()
    return summary.to_dict()


async def _run_recalc(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    batches: list[dict[str, Any]] = []
    async with IngestionPipeline(settings) as pipeline:
        cursor: int | None = args.cursor
        while cursor is not None:
            result = await pipeline.run_recalc_pass(
                cursor=cursor, limit=args.limit, fast_mode=args.fast
            )
            batches.append(result.to_dict())
            cursor = result.next_cursor if args.all else None
    return batches[-1] if len(batches) == 1 else {"batches": batches}


async def _run_jobs(settings: Settings) -> dict[str, Any]:
    async with IngestionPipeline(settings) as pipeline:
        result = await pipeline.run_jobs()
    return result.to_dict()


async def _run_rewards(settings: Settings, args: argparse.Namespace) -> dict[str, Any]:
    redis = Redis.from_url(settings.redis.url)
    try:
        queries = PointsQueryService.from_redis(redis, settings)
        table = await queries.preview_rewards()
        payload: dict[str, Any] = {"season_id": settings.season.season_id, **table.to_dict()}
        if args.address:
            state = await queries.get_claim_state(args.address)
            payload["claim"] = {
                "address": args.address.lower(),
                **state.to_dict(),
                "request": queries.claim_message(args.address).to_dict(),
            }
        return payload
    finally:
        await redis.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings.validate_requirements(command=args.command)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    logger.debug("Settings: %s", settings.redacted_summary())

    if args.command == "ingest":
        payload = asyncio.run(_run_ingest(settings))
    elif args.command == "recalc":
        payload = asyncio.run(_run_recalc(settings, args))
    elif args.command == "jobs":
        payload = asyncio.run(_run_jobs(settings))
    else:
        payload = asyncio.run(_run_rewards(settings, args))
    _print(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
