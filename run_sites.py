#!/usr/bin/env python3
"""Scrape every enabled catalog site in sequence and sync accepted records."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from core.deduplicator import Deduplicator, DedupResult
from core.orchestrator import ExtractionOrchestrator, SiteScrapeResult
from core.site_registry import SiteRegistry
from core.types import ProductRecord
from network.image_validator import ImageValidator
from network.record_store import JsonRecordStore
from utils.config_loader import load_config
from utils.error_handling import ConfigurationError, PersistenceError
from utils.logger import configure_from_settings, create_progress_bar, get_logger

logger = get_logger(__name__)
console = Console()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract product listings from registered catalog sites")
    parser.add_argument(
        "--config",
        default="config/settings.json",
        help="Path to engine settings JSON (default: config/settings.json)",
    )
    parser.add_argument(
        "--sites",
        default="config/sites.json",
        help="Path to the site registry (default: config/sites.json)",
    )
    parser.add_argument(
        "--site",
        action="append",
        dest="only",
        help="Scrape only this site (repeatable; disabled sites allowed)",
    )
    parser.add_argument(
        "--no-sync",
        action="store_true",
        help="Skip writing accepted records to the record store",
    )
    return parser.parse_args(argv)


def sync_records(
    store: JsonRecordStore,
    results: List[SiteScrapeResult],
    image_validator: Optional[ImageValidator] = None,
) -> DedupResult:
    """Split the run's records against history and write new/changed ones."""
    records: List[ProductRecord] = [record for result in results for record in result.records]
    if image_validator is not None:
        records = image_validator.validate_records(records)
    deduplicator = Deduplicator()
    deduplicator.load(store)
    dedup = deduplicator.categorize(records)
    created = store.create_many(dedup.new)
    updated = store.update_many(dedup.updated)
    logger.info(f"Record store sync: {created} created, {updated} updated, {len(dedup.unchanged)} unchanged")
    return dedup


def render_summary(results: List[SiteScrapeResult], dedup: Optional[DedupResult] = None) -> None:
    table = Table(title="Extraction summary", show_lines=False)
    table.add_column("Site")
    table.add_column("Category")
    table.add_column("Products", justify="right")
    table.add_column("Method")
    table.add_column("Renderer")
    table.add_column("Time", justify="right")
    table.add_column("Status")

    for result in results:
        status = "[green]ok[/green]" if result.success else f"[red]{result.error_category}[/red]"
        table.add_row(
            result.site,
            result.category or "-",
            str(len(result.records)),
            result.method or "-",
            result.renderer,
            f"{result.duration:.1f}s",
            status,
        )

    console.print(table)
    if dedup is not None:
        summary = dedup.summary()
        console.print(
            f"[cyan]Store:[/cyan] {summary['new']} new, {summary['updated']} updated, "
            f"{summary['unchanged']} unchanged, {summary['skipped']} without URL"
        )


async def run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2
    configure_from_settings(config.get("logging", {}))

    try:
        sites = SiteRegistry.load(args.sites).select(args.only)
    except ConfigurationError as exc:
        logger.error(str(exc))
        return 2

    if not sites:
        logger.warning("No enabled sites to scrape")
        return 0

    orchestrator = ExtractionOrchestrator.from_config(config)
    orchestrator.initialize()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
        except NotImplementedError:
            logger.debug(f"Signal handler for {sig} not supported on this platform")

    total = sum(len(site.categories) for site in sites)
    progress = create_progress_bar(None, desc="Sites", unit="page", total=total)
    try:
        results = await orchestrator.run(sites, progress=progress)
    finally:
        progress.close()
        await orchestrator.shutdown()

    dedup = None
    if not args.no_sync:
        try:
            dedup = sync_records(
                JsonRecordStore(config.get("record_store", {})),
                results,
                ImageValidator(config.get("image_validation", {})),
            )
        except PersistenceError as exc:
            logger.error(f"Record store sync failed: {exc}")

    render_summary(results, dedup)
    stats = orchestrator.get_statistics()
    logger.info(f"Run statistics: {stats}")

    if results and all(not result.success for result in results):
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
