# nyaa_crawler/__main__.py

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from nyaa_crawler.config import AppConfig, DEFAULT_CONFIG_FILE, load_configuration, logger
from nyaa_crawler.exceptions import CrawlerError
from nyaa_crawler.models import DestinationKind
from nyaa_crawler.services.dispatch import Destination, DispatchService, parse_destination
from nyaa_crawler.services.extractor import NYAA_LAYOUT, ListingExtractor, load_layout
from nyaa_crawler.services.fetcher import PageFetcher
from nyaa_crawler.services.scraping_service import ScrapeService
from nyaa_crawler.services.storage import TorrentStore
from nyaa_crawler.ui.report import (
    format_dispatch_report,
    format_scrape_summary,
    format_statistics,
    format_torrent_table,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nyaa_crawler",
        description="Scrape torrent listings into SQLite and push magnets to download daemons",
    )
    parser.add_argument(
        "--config", default=DEFAULT_CONFIG_FILE, help="Path to the INI configuration file"
    )
    parser.add_argument("--db", dest="db_path", help="Path to the SQLite database file")

    # Also accepted after the sub-command; SUPPRESS keeps an earlier --db intact.
    db_option = argparse.ArgumentParser(add_help=False)
    db_option.add_argument(
        "--db", dest="db_path", default=argparse.SUPPRESS,
        help="Path to the SQLite database file",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    scrape = sub.add_parser(
        "scrape", parents=[db_option], help="Scrape one listing page into the database"
    )
    source = scrape.add_mutually_exclusive_group()
    source.add_argument("--url", help="URL to scrape data from")
    source.add_argument("--file", help="Local HTML file to scrape instead of a URL")
    scrape.add_argument("--proxy", dest="proxy_url", help="http(s):// or socks5:// proxy")
    scrape.add_argument(
        "--layout", dest="layout_file", help="YAML file overriding the listing layout"
    )

    query = sub.add_parser(
        "query", parents=[db_option], help="List stored torrents and push unsent magnets"
    )
    query.add_argument(
        "--pattern", "--regex", dest="pattern", default="",
        help="Text to match anywhere in torrent names",
    )
    query.add_argument("--limit", type=int, default=10, help="Number of results to show")
    query.add_argument(
        "--transmission", dest="transmission_url",
        help="Transmission RPC URL, e.g. user:pass@http://localhost:9091/transmission/rpc",
    )
    query.add_argument(
        "--aria2", dest="aria2_url",
        help="aria2 RPC URL, e.g. token@http://localhost:6800/jsonrpc",
    )
    query.add_argument(
        "--dry-run", action="store_true",
        help="Show what would be sent without actually sending",
    )
    return parser


def build_destinations(config: AppConfig) -> list[Destination]:
    """Parses the configured destination URLs, failing before any work starts."""
    destinations = []
    if config.transmission_url:
        destinations.append(
            parse_destination(DestinationKind.TRANSMISSION, config.transmission_url)
        )
    if config.aria2_url:
        destinations.append(parse_destination(DestinationKind.ARIA2, config.aria2_url))
    return destinations


async def run_scrape(config: AppConfig, store: TorrentStore, file: str | None) -> None:
    layout = load_layout(config.layout_file) if config.layout_file else NYAA_LAYOUT
    fetcher = PageFetcher(
        config.proxy_url,
        max_attempts=config.max_attempts,
        timeout=config.timeout,
        backoff_unit=config.backoff_unit,
    )
    service = ScrapeService(store, fetcher, ListingExtractor(layout))

    if file:
        report = service.scrape_file(file)
    else:
        report = await service.scrape_url(config.url)

    print(format_scrape_summary(report))
    total, with_magnet = store.statistics()
    print(format_statistics(total, with_magnet))


async def run_query(
    config: AppConfig,
    store: TorrentStore,
    destinations: list[Destination],
    pattern: str,
    limit: int,
    dry_run: bool,
) -> None:
    if pattern:
        torrents = store.query_by_name(pattern, limit)
        print(f"Torrents matching pattern '{pattern}' (limit {limit}):")
    else:
        torrents = store.query_latest(limit)
        print(f"Latest {limit} torrents:")
    print(format_torrent_table(torrents))

    total, with_magnet = store.statistics()
    matching = store.count_matching(pattern) if pattern else None
    print()
    print(format_statistics(total, with_magnet, matching))

    if not destinations:
        return

    service = DispatchService(
        store, destinations, proxy_url=config.rpc_proxy_url, timeout=config.timeout
    )
    for report in await service.dispatch(torrents, dry_run=dry_run):
        print()
        print(format_dispatch_report(report))


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        overrides = {"db_path": args.db_path}
        if args.command == "scrape":
            overrides.update(
                url=args.url, proxy_url=args.proxy_url, layout_file=args.layout_file
            )
        else:
            overrides.update(
                transmission_url=args.transmission_url, aria2_url=args.aria2_url
            )
        config = load_configuration(args.config, **overrides)

        if args.command == "scrape":
            store = TorrentStore(config.db_path)
            asyncio.run(run_scrape(config, store, args.file))
        else:
            if not os.path.exists(config.db_path):
                logger.critical(f"Database file does not exist: {config.db_path}")
                return 1
            destinations = build_destinations(config)
            store = TorrentStore(config.db_path)
            asyncio.run(
                run_query(
                    config, store, destinations, args.pattern, args.limit, args.dry_run
                )
            )
    except CrawlerError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
