"""Command-line entrypoint for running a single source crawl."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Sequence

from .config import load_settings
from .crawler import RUN_MODES, CrawlerConfigurationError, CrawlerInitializationError, run_mode
from .sources import get_source, list_sources
from .util import parse_date

LOGGER = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _date_argument(value: str) -> str:
    try:
        return parse_date(value).isoformat()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}; expected YYYY-MM-DD") from exc


def build_arg_parser() -> argparse.ArgumentParser:
    available_sources = list_sources()
    if not available_sources:
        raise RuntimeError("No sources registered for crawling")

    parser = argparse.ArgumentParser(description="Crawl a price source and push records to the configured sink")
    parser.add_argument(
        "--source",
        choices=available_sources,
        default=available_sources[0],
        help="Source slug to crawl",
    )
    parser.add_argument(
        "--mode",
        choices=RUN_MODES,
        default="once",
        help="What to crawl: a single run, a relative date, a date range or the whole history",
    )
    parser.add_argument("--start", type=_date_argument, default=None, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=_date_argument, default=None, help="End date for --mode range (YYYY-MM-DD)")
    parser.add_argument("--step", type=int, default=1, help="Days between crawled dates in range modes")
    parser.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Abort a range once more than this many consecutive dates yield nothing",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.step < 1:
        parser.error("--step must be a positive number of days")
    if args.mode == "range" and (not args.start or not args.end):
        parser.error("--mode range requires --start and --end")

    settings = load_settings()
    entry = get_source(args.source)
    try:
        crawler = entry.build_crawler(settings, install_signal_handlers=True)
    except CrawlerConfigurationError as exc:
        parser.error(str(exc))

    try:
        result = asyncio.run(
            run_mode(
                crawler,
                args.mode,
                start=args.start,
                end=args.end,
                step=args.step,
                threshold=args.threshold,
            )
        )
    except CrawlerConfigurationError as exc:
        parser.error(str(exc))
    except CrawlerInitializationError as exc:
        LOGGER.error("%s", exc)
        return 1

    LOGGER.info("Crawl of %s (%s) finished: %s", entry.slug, args.mode, result)
    if result is None:
        return 1
    return 0


__all__ = ["build_arg_parser", "configure_logging", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
