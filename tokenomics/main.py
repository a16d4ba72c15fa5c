#!/usr/bin/env python3
"""Berachain Tokenomics.

Aggregates BERA/BGT supply, prices, emissions and the market data of other
tracked chains from several rate-limited providers, and derives annualized
inflation tables from them.

Run with --once to print a JSON report, or without it to keep the cache
refreshed periodically. See README.md for configuration.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from .src.errors import ConfigError
from .src.fetchers import EMISSIONS, HISTORY, MARKET, PRICE, SUPPLY, get_available_fetchers
from .src.MetricsService import DEFAULT_CHAINS, DUNE_LATEST, MetricsService, ServiceConfig

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
    Example: coingecko=abc123,dune=xyz789

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

    Looks for: API_KEY_COINGECKO, API_KEY_DUNE, etc.

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


def parse_list(value: str) -> list[str]:
    """Split a comma-separated option into lowercase, non-empty items."""
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser. Every option defaults from an environment variable."""
    emission_sources = get_available_fetchers(EMISSIONS) + [DUNE_LATEST]

    parser = argparse.ArgumentParser(
        description="Berachain Tokenomics: resilient multi-source metrics aggregation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available sources:
  price:     {', '.join(get_available_fetchers(PRICE))}
  market:    {', '.join(get_available_fetchers(MARKET))}
  history:   {', '.join(get_available_fetchers(HISTORY))}
  supply:    {', '.join(get_available_fetchers(SUPPLY))}
  emissions: {', '.join(emission_sources)}

Examples:
  # Print one JSON report and exit
  python -m tokenomics.main --once --api-keys dune=your-api-key

  # Keep metrics refreshed every 10 minutes, only tracking a few chains
  python -m tokenomics.main --chains berachain-bera,berachain-bgt,ethereum \\
      --refresh-period 600

Environment variables (CLI args take precedence):
  CHAINS, PRICE_TOKENS, PRICE_SOURCES, SUPPLY_SOURCES, MARKET_SOURCES,
  HISTORY_SOURCES, EMISSION_SOURCES, PRICE_TTL, MARKET_TTL, HISTORY_TTL,
  SUPPLY_TTL, EMISSION_TTL, MAX_RETRIES, RATE_LIMIT_DELAY, FETCH_TIMEOUT,
  POLL_INTERVAL, MAX_POLLS, DUNE_QUERY_ID, BACKUP_PATH, REFRESH_PERIOD,
  API_KEY_DUNE, API_KEY_COINGECKO, etc.
""",
    )

    parser.add_argument(
        "--chains",
        type=str,
        help="Comma-separated CoinGecko ids of tracked chains",
        default=os.environ.get("CHAINS") or ",".join(DEFAULT_CHAINS),
    )

    parser.add_argument(
        "--price-sources",
        dest="price_sources",
        type=str,
        help="Price providers in priority order (default: coingecko,coinpaprika)",
        default=os.environ.get("PRICE_SOURCES") or "coingecko,coinpaprika",
    )

    parser.add_argument(
        "--supply-sources",
        dest="supply_sources",
        type=str,
        help="BERA/BGT supply providers in priority order (default: berachain,coingecko)",
        default=os.environ.get("SUPPLY_SOURCES") or "berachain,coingecko",
    )

    parser.add_argument(
        "--emission-sources",
        dest="emission_sources",
        type=str,
        help=f"Emission providers in priority order (default: dune,{DUNE_LATEST})",
        default=os.environ.get("EMISSION_SOURCES") or f"dune,{DUNE_LATEST}",
    )

    parser.add_argument(
        "--market-sources",
        dest="market_sources",
        type=str,
        help="Chain market data providers in priority order (default: coingecko)",
        default=os.environ.get("MARKET_SOURCES") or "coingecko",
    )

    parser.add_argument(
        "--history-sources",
        dest="history_sources",
        type=str,
        help="Supply history providers in priority order (default: coingecko)",
        default=os.environ.get("HISTORY_SOURCES") or "coingecko",
    )

    parser.add_argument(
        "--price-tokens",
        dest="price_tokens",
        type=str,
        help="Comma-separated tokens to track prices for (default: bera)",
        default=os.environ.get("PRICE_TOKENS") or "bera",
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., dune=abc,coingecko=demo:xyz)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "--price-ttl",
        dest="price_ttl",
        type=float,
        help="Seconds a price stays fresh (default: 300)",
        default=float(os.environ.get("PRICE_TTL") or "300"),
    )

    parser.add_argument(
        "--market-ttl",
        dest="market_ttl",
        type=float,
        help="Seconds chain market data stays fresh (default: 3600)",
        default=float(os.environ.get("MARKET_TTL") or "3600"),
    )

    parser.add_argument(
        "--history-ttl",
        dest="history_ttl",
        type=float,
        help="Seconds a supply history stays fresh (default: 86400)",
        default=float(os.environ.get("HISTORY_TTL") or "86400"),
    )

    parser.add_argument(
        "--supply-ttl",
        dest="supply_ttl",
        type=float,
        help="Seconds BERA/BGT supply stays fresh (default: 300)",
        default=float(os.environ.get("SUPPLY_TTL") or "300"),
    )

    parser.add_argument(
        "--emission-ttl",
        dest="emission_ttl",
        type=float,
        help="Seconds the emission series stays fresh (default: 3600)",
        default=float(os.environ.get("EMISSION_TTL") or "3600"),
    )

    parser.add_argument(
        "--max-retries",
        dest="max_retries",
        type=int,
        help="Attempts per HTTP request (default: 3)",
        default=int(os.environ.get("MAX_RETRIES") or "3"),
    )

    parser.add_argument(
        "--rate-limit-delay",
        dest="rate_limit_delay",
        type=float,
        help="Minimum seconds between requests to a rate-limited provider (default: 2.0)",
        default=float(os.environ.get("RATE_LIMIT_DELAY") or "2.0"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual fetch requests in seconds (default: 10.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "10.0"),
    )

    parser.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=float,
        help="Seconds between query status polls (default: 1.0)",
        default=float(os.environ.get("POLL_INTERVAL") or "1.0"),
    )

    parser.add_argument(
        "--max-polls",
        dest="max_polls",
        type=int,
        help="Status polls before a query times out (default: 30)",
        default=int(os.environ.get("MAX_POLLS") or "30"),
    )

    parser.add_argument(
        "--dune-query-id",
        dest="dune_query_id",
        type=str,
        help="Dune query producing the emission series (default: 4740951)",
        default=os.environ.get("DUNE_QUERY_ID") or "4740951",
    )

    parser.add_argument(
        "--reuse-query-results",
        dest="reuse_query_results",
        action="store_true",
        help="Serve the last completed query result instead of re-executing the query",
    )

    parser.add_argument(
        "--backup-path",
        dest="backup_path",
        type=str,
        help="Fallback snapshot file (default: data/backup.json)",
        default=os.environ.get("BACKUP_PATH") or "data/backup.json",
    )

    parser.add_argument(
        "--refresh-period",
        dest="refresh_period",
        type=int,
        help="Seconds between refresh cycles (minimum: 1, default: 300)",
        default=int(os.environ.get("REFRESH_PERIOD") or "300"),
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh every metric once, print a JSON report and exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


def build_config(parser: argparse.ArgumentParser, args: argparse.Namespace) -> ServiceConfig:
    """Validate parsed arguments and collect them into a ServiceConfig."""
    if args.refresh_period < 1:
        parser.error("--refresh-period must be at least 1 second")

    if args.max_retries < 1:
        parser.error("--max-retries must be at least 1")

    if args.max_polls < 1:
        parser.error("--max-polls must be at least 1")

    if args.poll_interval < 0 or args.rate_limit_delay < 0:
        parser.error("--poll-interval and --rate-limit-delay must not be negative")

    for name in ("price_ttl", "market_ttl", "history_ttl", "supply_ttl", "emission_ttl"):
        if getattr(args, name) <= 0:
            parser.error(f"--{name.replace('_', '-')} must be positive")

    chains = parse_list(args.chains)
    if not chains:
        parser.error("At least one chain must be specified")

    price_tokens = parse_list(args.price_tokens)
    if not price_tokens:
        parser.error("At least one price token must be specified")

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    return ServiceConfig(
        chains=chains,
        price_tokens=price_tokens,
        price_sources=parse_list(args.price_sources),
        supply_sources=parse_list(args.supply_sources),
        market_sources=parse_list(args.market_sources),
        history_sources=parse_list(args.history_sources),
        emission_sources=parse_list(args.emission_sources),
        api_keys=api_keys,
        price_ttl=args.price_ttl,
        market_ttl=args.market_ttl,
        history_ttl=args.history_ttl,
        supply_ttl=args.supply_ttl,
        emission_ttl=args.emission_ttl,
        max_retries=args.max_retries,
        rate_limit_delay=args.rate_limit_delay,
        fetch_timeout=args.fetch_timeout,
        poll_interval=args.poll_interval,
        max_polls=args.max_polls,
        dune_query_id=args.dune_query_id,
        reuse_query_results=args.reuse_query_results,
        backup_path=args.backup_path,
        refresh_period=args.refresh_period,
    )


async def run_once(service: MetricsService) -> dict:
    """Refresh every metric once and return the report."""
    try:
        return await service.build_report(force=True)
    finally:
        await service.close()


def main() -> None:
    """Main entry point for the Berachain Tokenomics CLI."""
    parser = build_parser()
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = build_config(parser, args)

    try:
        service = MetricsService(config)
    except ConfigError as e:
        parser.error(str(e))

    # Log configuration
    logger.info("=" * 60)
    logger.info("Berachain Tokenomics - Metrics Aggregation")
    logger.info("=" * 60)
    logger.info(f"Chains:            {', '.join(config.chains)}")
    logger.info(f"Price Sources:     {', '.join(config.price_sources)}")
    logger.info(f"Price Tokens:      {', '.join(config.price_tokens)}")
    logger.info(f"Supply Sources:    {', '.join(config.supply_sources)}")
    logger.info(f"Market Sources:    {', '.join(config.market_sources)}")
    logger.info(f"History Sources:   {', '.join(config.history_sources)}")
    logger.info(f"Emission Sources:  {', '.join(config.emission_sources)}")
    logger.info(f"Dune Query:        {config.dune_query_id}")
    logger.info(f"TTLs:              price={config.price_ttl}s, market={config.market_ttl}s, "
                f"history={config.history_ttl}s")
    logger.info(f"Retries:           {config.max_retries} (spacing {config.rate_limit_delay}s)")
    logger.info(f"Polling:           {config.max_polls} x {config.poll_interval}s")
    logger.info(f"Backup Path:       {config.backup_path}")
    if config.api_keys:
        logger.info(f"API Keys:          {', '.join(config.api_keys.keys())}")
    logger.info("=" * 60)

    try:
        if args.once:
            report = asyncio.run(run_once(service))
            print(json.dumps(report, indent=2))
        else:
            asyncio.run(service.run(config.refresh_period))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
