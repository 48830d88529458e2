#!/usr/bin/env python3
"""Price Oracle.

Fetches asset prices from multiple independent sources, reconciles them into
one price per feed and notifies subscribers of updates.

Start with CLI flags or env vars. Feeds come from --feeds (shared settings) or
a JSON file (--feeds-file) with per-feed settings.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from .src.models import AggregationMethod
from .src.PriceOracle import PriceOracle
from .src.fetchers import get_available_fetchers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: coingecko=abc123,coinmarketcap=xyz789

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys() -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_COINGECKO, API_KEY_COINMARKETCAP, etc.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in os.environ.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def load_feed_definitions(
    feeds: str | None,
    feeds_file: str | None,
    defaults: dict[str, Any],
) -> list[dict[str, Any]]:
    """Build feed definitions from a pair list or a JSON file.

    The file holds a list of objects with ``asset_id``, ``currency`` and
    optionally ``providers``, ``update_interval``, ``aggregation_method``,
    ``deviation_threshold``, ``min_sources``, ``max_consecutive_failures``,
    ``name`` and ``description``. Missing settings come from ``defaults``.

    :param feeds: Comma-separated pairs, e.g. "btc/usd,eth/usd".
    :param feeds_file: Path to a JSON file (takes precedence over ``feeds``).
    :param defaults: Settings shared by all feeds.
    :returns: List of keyword dicts for PriceOracle.create_feed.
    :raises ValueError: If a definition is malformed.
    :raises OSError: If the file cannot be read.
    """
    if feeds_file:
        with open(feeds_file) as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError(f"{feeds_file}: expected a JSON list of feeds")
        definitions = []
        for i, item in enumerate(raw):
            if not isinstance(item, dict) or "asset_id" not in item or "currency" not in item:
                raise ValueError(f"{feeds_file}: feed #{i} needs asset_id and currency")
            definitions.append({**defaults, **item})
        return definitions

    definitions = []
    for pair in (feeds or "").split(","):
        pair = pair.strip()
        if not pair:
            continue
        if pair.count("/") != 1:
            raise ValueError(f"Invalid pair '{pair}', expected asset/currency")
        asset_id, currency = pair.split("/")
        definitions.append({**defaults, "asset_id": asset_id, "currency": currency})
    return definitions


async def serve(oracle: PriceOracle, definitions: list[dict[str, Any]]) -> None:
    """Create the configured feeds and run the oracle."""
    for definition in definitions:
        await oracle.create_feed(**definition)
    await oracle.run()


def main() -> None:
    """Main entry point for the Price Oracle CLI."""
    available_sources = get_available_fetchers()
    methods = [m.value for m in AggregationMethod]

    parser = argparse.ArgumentParser(
        description="Price Oracle: Aggregated multi-source price feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # BTC/USD from three sources
  python -m price_oracle.main --feeds btc/usd --sources coinbase,kraken,coingecko

  # Several feeds, median aggregation, 30s cycles
  python -m price_oracle.main --feeds btc/usd,eth/usd \\
      --sources coinbase,kraken,bitstamp --method median --update-interval 30

  # Per-feed settings from a file, with API keys for premium sources
  python -m price_oracle.main --feeds-file feeds.json \\
      --api-keys coinmarketcap=your-api-key

Environment variables (CLI args take precedence):
  FEEDS, FEEDS_FILE, SOURCES, MIN_SOURCES, DEVIATION_THRESHOLD,
  UPDATE_INTERVAL, AGGREGATION_METHOD, FETCH_TIMEOUT, RATE_LIMIT_PER_MINUTE,
  CYCLE_WORKERS, DELIVERY_WORKERS, SCHEDULER_BATCH_SIZE, TICK_INTERVAL,
  CACHE_TTL, RETENTION_DAYS, API_KEY_COINGECKO, API_KEY_COINMARKETCAP, etc.
""",
    )

    parser.add_argument(
        "--feeds",
        type=str,
        help="Comma-separated feed pairs (e.g., btc/usd,eth/usd)",
        default=os.environ.get("FEEDS") or "btc/usd",
    )

    parser.add_argument(
        "--feeds-file",
        dest="feeds_file",
        type=str,
        help="JSON file with per-feed definitions (overrides --feeds)",
        default=os.environ.get("FEEDS_FILE"),
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
        default=os.environ.get("SOURCES") or "coinbase,kraken,bitstamp,coingecko",
    )

    parser.add_argument(
        "--min-sources",
        dest="min_sources",
        type=int,
        help="Minimum sources required for valid aggregation (default: 2)",
        default=int(os.environ.get("MIN_SOURCES") or "2"),
    )

    parser.add_argument(
        "--deviation-threshold",
        dest="deviation_threshold",
        type=float,
        help="Spread percent above which confidence is reduced (default: 10.0)",
        default=float(os.environ.get("DEVIATION_THRESHOLD") or "10.0"),
    )

    parser.add_argument(
        "--update-interval",
        dest="update_interval",
        type=int,
        help="Seconds between feed updates (minimum: 1, default: 60)",
        default=int(os.environ.get("UPDATE_INTERVAL") or "60"),
    )

    parser.add_argument(
        "--method",
        type=str,
        choices=methods,
        help="Aggregation method (default: weighted_average)",
        default=os.environ.get("AGGREGATION_METHOD") or "weighted_average",
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., coingecko=abc,coinmarketcap=xyz)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual fetch requests in seconds (default: 10.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "10.0"),
    )

    parser.add_argument(
        "--rate-limit",
        dest="rate_limit",
        type=float,
        help="Requests per minute per provider (default: provider specific)",
        default=float(os.environ["RATE_LIMIT_PER_MINUTE"])
        if os.environ.get("RATE_LIMIT_PER_MINUTE")
        else None,
    )

    parser.add_argument(
        "--cycle-workers",
        dest="cycle_workers",
        type=int,
        help="Concurrent feed update cycles (default: 4)",
        default=int(os.environ.get("CYCLE_WORKERS") or "4"),
    )

    parser.add_argument(
        "--delivery-workers",
        dest="delivery_workers",
        type=int,
        help="Concurrent notification deliveries (default: 2)",
        default=int(os.environ.get("DELIVERY_WORKERS") or "2"),
    )

    parser.add_argument(
        "--batch-size",
        dest="batch_size",
        type=int,
        help="Feeds claimed per scheduler tick (default: 10)",
        default=int(os.environ.get("SCHEDULER_BATCH_SIZE") or "10"),
    )

    parser.add_argument(
        "--tick-interval",
        dest="tick_interval",
        type=float,
        help="Seconds between scheduler ticks (default: 1.0)",
        default=float(os.environ.get("TICK_INTERVAL") or "1.0"),
    )

    parser.add_argument(
        "--cache-ttl",
        dest="cache_ttl",
        type=float,
        help="Seconds after which a cached price is stale (default: 300)",
        default=float(os.environ.get("CACHE_TTL") or "300"),
    )

    parser.add_argument(
        "--retention-days",
        dest="retention_days",
        type=int,
        help="Days of raw quote history to keep (default: 30)",
        default=int(os.environ.get("RETENTION_DAYS") or "30"),
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.update_interval < 1:
        parser.error("--update-interval must be at least 1 second")

    if args.min_sources < 1:
        parser.error("--min-sources must be at least 1")

    if args.deviation_threshold <= 0:
        parser.error("--deviation-threshold must be greater than 0")

    if args.fetch_timeout <= 0:
        parser.error("--fetch-timeout must be greater than 0")

    if args.rate_limit is not None and args.rate_limit <= 0:
        parser.error("--rate-limit must be greater than 0")

    if args.cycle_workers < 1 or args.delivery_workers < 1:
        parser.error("--cycle-workers and --delivery-workers must be at least 1")

    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1")

    if args.tick_interval <= 0:
        parser.error("--tick-interval must be greater than 0")

    if args.cache_ttl <= 0:
        parser.error("--cache-ttl must be greater than 0")

    if args.retention_days < 1:
        parser.error("--retention-days must be at least 1")

    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]
    if not sources:
        parser.error("At least one source must be specified")

    # Validate sources
    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    defaults = {
        "providers": sources,
        "update_interval": args.update_interval,
        "aggregation_method": args.method,
        "deviation_threshold": str(args.deviation_threshold),
        "min_sources": args.min_sources,
    }
    try:
        definitions = load_feed_definitions(args.feeds, args.feeds_file, defaults)
    except (OSError, ValueError) as e:
        parser.error(str(e))

    if not definitions:
        parser.error("At least one feed must be specified")

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    # Log configuration
    logger.info("=" * 60)
    logger.info("Price Oracle - Multi-Source Aggregation")
    logger.info("=" * 60)
    feed_names = [f"{d['asset_id']}/{d['currency']}" for d in definitions]
    logger.info(f"Feeds:             {', '.join(feed_names)}")
    logger.info(f"Sources:           {', '.join(sources)}")
    logger.info(f"Min Sources:       {args.min_sources}")
    logger.info(f"Method:            {args.method}")
    logger.info(f"Deviation Limit:   {args.deviation_threshold}%")
    logger.info(f"Update Interval:   {args.update_interval}s")
    logger.info(f"Fetch Timeout:     {args.fetch_timeout}s")
    logger.info(f"Workers:           {args.cycle_workers} cycle / {args.delivery_workers} delivery")
    if api_keys:
        logger.info(f"API Keys:          {', '.join(api_keys.keys())}")
    logger.info("=" * 60)

    try:
        price_oracle = PriceOracle(
            sources=sources,
            api_keys=api_keys,
            fetch_timeout=args.fetch_timeout,
            rate_limit_per_minute=args.rate_limit,
            min_sources=args.min_sources,
            cycle_workers=args.cycle_workers,
            delivery_workers=args.delivery_workers,
            scheduler_batch_size=args.batch_size,
            tick_interval=args.tick_interval,
            cache_ttl=args.cache_ttl,
            retention_days=args.retention_days,
        )
        asyncio.run(serve(price_oracle, definitions))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
