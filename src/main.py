from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Sequence

from sqlalchemy.orm import Session

from config import AppSettings, config
from db.db import create_session_factory
from db.repositories import RateRepository
from domain.pairs import Pair
from domain.rates import NO_DATA, utcnow
from services.binance_client import BinanceClient
from services.errors import describe_error
from services.health import HealthChecker, http_status, to_payload
from services.ingestion import RateIngestor, RunSummary, run_periodically
from services.rate_cache import RateCache, build_backend
from services.rate_service import RateQueryService

logger = logging.getLogger(__name__)


@dataclass
class Components:
    session: Session
    repository: RateRepository
    cache: RateCache
    client: BinanceClient
    ingestor: RateIngestor
    query_service: RateQueryService


def build_components(settings: AppSettings) -> Components:
    session = create_session_factory(settings.database_url)()
    repository = RateRepository(session)
    cache = RateCache(build_backend(settings.redis_url))
    client = BinanceClient()
    return Components(
        session=session,
        repository=repository,
        cache=cache,
        client=client,
        ingestor=RateIngestor(source=client, store=repository, cache=cache),
        query_service=RateQueryService(repository=repository, cache=cache),
    )


def fetch(components: Components, *, pairs: list[Pair] | None, invalidate_cache: bool) -> int:
    if not components.client.is_available():
        logger.error("Binance API is not available, skipping rate fetch")
        return 1

    summary = components.ingestor.run(pairs, invalidate_cache=invalidate_cache)
    print_summary(summary)
    return 0 if summary.ok else 1


def schedule(components: Components, *, interval_seconds: float, max_runs: int | None) -> int:
    logger.info("Starting rate fetcher (every %.0f seconds)", interval_seconds)
    summaries = run_periodically(components.ingestor, interval_seconds=interval_seconds, max_runs=max_runs)
    return 0 if summaries and all(summary.ok for summary in summaries) else 1


def cleanup(components: Components, *, days: int) -> int:
    cutoff = utcnow() - timedelta(days=days)
    deleted = components.repository.delete_older_than(cutoff)
    print(f"Deleted {deleted} rates recorded before {cutoff.isoformat()}")
    return 0


def print_summary(summary: RunSummary) -> None:
    print(f"Rates recorded at {summary.recorded_at.isoformat()} ({summary.duration_ms:.2f}ms)")
    for pair in summary.succeeded:
        print(f"  saved    {pair}")
    for pair in summary.skipped:
        print(f"  skipped  {pair}")
    for pair, reason in summary.failed.items():
        print(f"  FAILED   {pair}: {reason}")


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def run_command(args: argparse.Namespace, settings: AppSettings) -> int:
    components = build_components(settings)
    try:
        if args.command == "fetch":
            pairs = [Pair.parse(pair) for pair in args.pair] if args.pair else None
            return fetch(components, pairs=pairs, invalidate_cache=not args.no_invalidate)
        if args.command == "schedule":
            return schedule(components, interval_seconds=args.interval, max_runs=args.max_runs)
        if args.command == "cleanup":
            return cleanup(components, days=args.days)
        if args.command == "recent":
            result = components.query_service.get_recent_window(args.pair)
        elif args.command == "day":
            result = components.query_service.get_for_period(args.pair, args.date)
        else:
            health = HealthChecker(query_service=components.query_service, provider=components.client).check()
            print_json(to_payload(health))
            return 0 if http_status(health) == 200 else 1

        if result is NO_DATA:
            print_json({"error": "no_data", "message": f"No rates found for {args.pair}"})
            return 1
        print_json(result.to_payload())
        return 0
    except Exception as exc:
        description = describe_error(exc, debug=settings.debug)
        print_json(description.to_payload())
        return 1
    finally:
        components.session.close()


def main(argv: Sequence[str] | None = None) -> int:
    settings = config()
    parser = argparse.ArgumentParser(description="Ingest and query cryptocurrency rates.")
    parser.add_argument("--log-level", default="INFO")
    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch current rates once and store them.")
    fetch_parser.add_argument("--pair", action="append", help="Pair to fetch (repeatable, default: all).")
    fetch_parser.add_argument("--no-invalidate", action="store_true", help="Keep cached reads for the fetched pairs.")

    schedule_parser = subparsers.add_parser("schedule", help="Fetch rates at a fixed interval.")
    schedule_parser.add_argument("--interval", type=float, default=settings.fetch_interval_seconds)
    schedule_parser.add_argument("--max-runs", type=int, default=None)

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete rates older than the retention period.")
    cleanup_parser.add_argument("--days", type=int, default=settings.retention_days)

    recent_parser = subparsers.add_parser("recent", help="Show the last 24 hours for a pair.")
    recent_parser.add_argument("pair")

    day_parser = subparsers.add_parser("day", help="Show a calendar day for a pair.")
    day_parser.add_argument("pair")
    day_parser.add_argument("date", help="YYYY-MM-DD")

    subparsers.add_parser("health", help="Report data freshness and provider availability.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    return run_command(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
