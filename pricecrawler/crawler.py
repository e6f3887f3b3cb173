"""Crawl orchestration: one queue run per crawl, date ranges with a failure breaker."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Protocol, Sequence

from .browser import launch_browser
from .config import QueueOptions
from .jobs import BrowserLauncher, JobQueue, StatsEmitter
from .pusher import Pusher, Sink
from .records import RecordKind
from .util import (
    date_range,
    format_date,
    format_duration,
    format_number,
    last_month,
    last_week,
    snake_case,
    yesterday,
)

if TYPE_CHECKING:
    from .api import SourceIdentity
    from .notifications import RunNotifier
    from .storage import FilesystemArchive

LOGGER = logging.getLogger(__name__)

DEFAULT_FIRST_DATE = "1970-01-01"
DEFAULT_RANGE_THRESHOLD = 14
DEFAULT_RANGE_DELAY = 1.0


class CrawlerInitializationError(RuntimeError):
    """Raised when the source identity cannot be resolved before a crawl."""


class CrawlerConfigurationError(RuntimeError):
    """Raised when a crawler is asked to do something its configuration forbids."""


class IterationMode(str, Enum):
    SINGLE = "single"
    DATE_RANGE = "date_range"


class SourceRegistry(Protocol):
    async def create_or_update_source(
        self, metadata: Mapping[str, Any], kind: RecordKind = RecordKind.WHOLESALE
    ) -> Optional["SourceIdentity"]:
        ...


class AlarmSink(Protocol):
    async def create_alarm(self, source_id: Any, message: str, url: str) -> Any:
        ...


@dataclass(slots=True)
class SourceDefinition:
    """Static metadata describing a crawled source."""

    name: str
    country: str
    language: str
    currency: str
    description: str
    url: str
    frequency: str = "d"
    is_history_supported: bool = False
    method: str = "a"

    def metadata(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "country": self.country,
            "language": self.language,
            "currency": self.currency,
            "description": self.description,
            "url": self.url,
            "frequency": self.frequency,
            "is_history_supported": self.is_history_supported,
            "method": self.method,
        }

    @property
    def flag(self) -> str:
        return f":flag-{self.country.lower()}:"


@dataclass(slots=True)
class RunContext:
    """Everything a worker may use during one crawl run."""

    crawler: "Crawler"
    source: "SourceIdentity"
    pusher: Pusher
    date: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    async def archive(
        self,
        document: str | bytes,
        sequence: int = 1,
        date: str | None = None,
        extension: str = "html",
        version: int = 1,
    ) -> Any:
        return await self.crawler.archive(document, sequence, date, extension, version)

    async def assert_conditions(self, conditions: Iterable[tuple[bool, str]], url: str) -> bool:
        return await self.crawler.assert_conditions(conditions, url)

    async def list_archived(self, date: str | None = None, extension: str = "html", version: int = 1) -> list:
        return await self.crawler.list_archived(date or self.date, extension, version)


class Crawler:
    """Runs a fresh queue per crawl and reports the outcome.

    In ``IterationMode.DATE_RANGE`` the crawler can also walk a range of
    dates, stopping early once too many consecutive dates yield nothing.
    """

    def __init__(
        self,
        definition: SourceDefinition,
        queue_options: QueueOptions,
        *,
        timezone: str,
        registry: SourceRegistry,
        sink: Sink,
        notifier: Optional["RunNotifier"] = None,
        archive: Optional["FilesystemArchive"] = None,
        alarms: Optional[AlarmSink] = None,
        kind: RecordKind = RecordKind.WHOLESALE,
        mode: IterationMode = IterationMode.SINGLE,
        first_date: str | date = DEFAULT_FIRST_DATE,
        threshold: int = DEFAULT_RANGE_THRESHOLD,
        delay: float = DEFAULT_RANGE_DELAY,
        pusher_threshold: int = 100,
        browser_launcher: BrowserLauncher = launch_browser,
        install_signal_handlers: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        if not timezone:
            raise CrawlerConfigurationError("Timezone is required")
        self.definition = definition
        self.queue_options = queue_options
        self.timezone = timezone
        self.registry = registry
        self.sink = sink
        self.notifier = notifier
        self._archive = archive
        self.alarms = alarms
        self.kind = kind
        self.mode = mode
        self.first_date = format_date(first_date)
        self.threshold = threshold
        self.delay = delay
        self.pusher_threshold = pusher_threshold
        self.browser_launcher = browser_launcher
        self.install_signal_handlers = install_signal_handlers
        self.logger = logger or LOGGER.getChild(snake_case(definition.name))
        self.source: Optional["SourceIdentity"] = None
        self.pusher: Optional[Pusher] = None

    @property
    def name(self) -> str:
        return self.definition.name

    async def aclose(self) -> None:
        """Release network clients owned by the registry, sink or alarm collaborators."""

        closed: set[int] = set()
        for collaborator in (self.registry, self.sink, self.alarms):
            if collaborator is None or id(collaborator) in closed or not hasattr(collaborator, "aclose"):
                continue
            closed.add(id(collaborator))
            await collaborator.aclose()

    async def initialize(self) -> "SourceIdentity":
        source = await self.registry.create_or_update_source(self.definition.metadata(), self.kind)
        if source is None:
            raise CrawlerInitializationError(f"Failed to resolve source '{self.name}'")
        self.source = source
        return source

    def build_pusher(self, *, last_month_only: bool = False) -> Pusher:
        return Pusher(
            self.name,
            self.source,
            self.sink,
            threshold=self.pusher_threshold,
            kind=self.kind,
            frequency=self.definition.frequency,
            last_month_only=last_month_only,
            timezone=self.timezone,
            logger=self.logger.getChild("pusher"),
        )

    def build_queue(self, pusher: Pusher, run_date: str | None) -> JobQueue:
        options = self.queue_options
        return JobQueue(
            name=self.name,
            producer_factory=options.producer_factory,
            consumer_factory=options.consumer_factory,
            producer_count=options.producer_count,
            consumer_count=options.consumer_count,
            producer_context=RunContext(self, self.source, pusher, run_date, dict(options.producer_extra)),
            consumer_context=RunContext(self, self.source, pusher, run_date, dict(options.consumer_extra)),
            browser=options.browser,
            stats=options.stats,
            stats_reporter=self.stats_reporter(),
            poll_interval=options.poll_interval,
            max_consecutive_failures=options.max_consecutive_failures,
            job_timeout=options.job_timeout,
            browser_launcher=self.browser_launcher,
            install_signal_handlers=self.install_signal_handlers,
            logger=self.logger.getChild("queue"),
        )

    def stats_reporter(self) -> Optional[StatsEmitter]:
        """Where periodic queue snapshots go when ``stats.report_interval`` is set.

        An explicit ``QueueOptions.stats_reporter`` wins; otherwise the run
        notifier receives them.
        """

        options = self.queue_options
        if options.stats_reporter is not None:
            return options.stats_reporter
        if self.notifier is None or not options.stats.report_interval:
            return None
        notifier = self.notifier

        async def report_stats(line: str) -> None:
            await notifier.report(f"{self.definition.flag} {self.name}: {line}")

        return report_stats

    async def crawl(self, date: str | date | None = None, *, last_month_only: bool = False) -> int | None:
        """Run one crawl; returns the pushed record count, or None if completion was not delivered."""

        await self.initialize()
        run_date = format_date(date) if date else None
        if run_date:
            self.logger.info("Start crawling %s for %s", self.name, run_date)
        else:
            self.logger.info("Start crawling %s", self.name)

        started = time.monotonic()
        pusher = self.build_pusher(last_month_only=last_month_only)
        self.pusher = pusher
        queue = self.build_queue(pusher, run_date)
        try:
            await queue.run()
        except Exception:
            self.logger.exception("Failed to run a queue")

        delivered = await pusher.complete(run_date)
        if pusher.count and not delivered:
            self.logger.error("Run %s for %s was not completed", pusher.hash, self.name)
            return None

        if pusher.count and self.notifier is not None:
            await self.report(pusher.count, time.monotonic() - started, pusher.dates, run_date=run_date)
        return pusher.count

    async def crawl_range(
        self,
        start: str | date,
        end: str | date,
        step: int = 1,
        threshold: int | None = None,
    ) -> dict[str, int | None]:
        """Crawl each date in turn; a missing or zero ``threshold`` uses the crawler default.

        Undelivered dates (``None``) break the empty streak like successful ones.
        """

        if self.mode is not IterationMode.DATE_RANGE:
            raise CrawlerConfigurationError(f"{self.name} doesn't support crawling by date")

        start, end = format_date(start), format_date(end)
        threshold = threshold or self.threshold
        self.logger.info("Start crawling %s from %s to %s", self.name, start, end)

        results: dict[str, int | None] = {}
        failures = 0
        for day in date_range(start, end, step):
            count = await self.crawl(day)
            results[format_date(day)] = count
            failures = failures + 1 if count == 0 else 0
            self.logger.debug("Consecutive failure count as of now: %d", failures)

            if threshold and failures > threshold:
                self.logger.warning("Failed more than %d times, so stopping here", threshold)
                break
            if count is not None and self.delay:
                await self.wait_between_dates()
        return results

    async def wait_between_dates(self) -> None:
        await asyncio.sleep(self.delay)

    async def crawl_all(self, step: int = 1) -> dict[str, int | None]:
        return await self.crawl_range(yesterday(self.timezone), self.first_date, step)

    async def crawl_yesterday(self) -> int | None:
        return await self.crawl(yesterday(self.timezone))

    async def crawl_last_week(self) -> int | None:
        return await self.crawl(last_week(self.timezone))

    async def crawl_last_month(self) -> int | None:
        return await self.crawl(last_month(self.timezone))

    async def assert_conditions(self, conditions: Iterable[tuple[bool, str]], url: str) -> bool:
        """Raise one UI-drift alarm listing every failed condition; returns whether any failed."""

        failed = [message for ok, message in conditions if not ok]
        if not failed:
            return False

        message = "\n".join(failed)
        self.logger.warning("The UI seems to be changed. [%s] | %s", "; ".join(failed), url)
        alarms = self.alarms or self.registry
        if self.source is None:
            self.logger.error("Source is not set; cannot raise an alarm")
        elif hasattr(alarms, "create_alarm"):
            try:
                await alarms.create_alarm(self.source.id, message, url)
            except Exception as exc:
                self.logger.error("Failed to raise an alarm: %s", exc)
        return True

    async def archive(
        self,
        document: str | bytes,
        sequence: int = 1,
        date: str | None = None,
        extension: str = "html",
        version: int = 1,
    ) -> Any:
        if self._archive is None:
            return None
        return await asyncio.to_thread(
            self._archive.archive,
            self.name,
            document,
            sequence=sequence,
            date=date,
            extension=extension,
            version=version,
        )

    async def list_archived(self, date: str | None, extension: str = "html", version: int = 1) -> list:
        if self._archive is None or not date:
            return []
        return await asyncio.to_thread(
            self._archive.list_documents, self.name, date, extension=extension, version=version
        )

    def report_text(self, count: int, elapsed: float, dates: Sequence[str], run_date: str | None = None) -> str:
        source = f" (#{self.source.id})" if self.source is not None else ""
        subject = f"A crawler *{self.name}{source}* {self.definition.flag} has processed *{format_number(count)}* *{self.kind.label}* prices"
        took = f"`{format_duration(elapsed)}`"
        if run_date:
            if not dates:
                return f"{subject} for *{run_date}*, and it took {took}."
            coverage = f"{dates[0]} ~ {dates[-1]}" if len(dates) > 1 else dates[0]
            return f"{subject} for *{run_date}* and actual date coverage was {coverage}, it took {took}."
        if not dates:
            return f"{subject}, and it took {took}."
        covered = ", ".join(dates) if len(dates) <= 2 else f"{dates[0]}, {dates[1]}, ..., {dates[-1]}"
        return f"{subject} for *{covered}*, and it took {took}."

    async def report(self, count: int, elapsed: float, dates: Sequence[str], *, run_date: str | None = None) -> None:
        if self.notifier is None:
            return
        fields = [
            ("Country", self.definition.flag),
            ("Currency", self.definition.currency),
            ("Timezone", self.timezone),
        ]
        try:
            await self.notifier.report(
                self.report_text(count, elapsed, dates, run_date),
                fields,
                title=self.name,
                title_link=self.definition.url,
                description=self.definition.description,
            )
        except Exception as exc:
            self.logger.warning("Failed to send run report: %s", exc)


RUN_MODES = ("once", "yesterday", "last-week", "last-month", "range", "all")


async def run_mode(
    crawler: Crawler,
    mode: str,
    *,
    start: str | None = None,
    end: str | None = None,
    step: int = 1,
    threshold: int | None = None,
) -> int | None | dict[str, int | None]:
    """Run ``crawler`` in one of :data:`RUN_MODES` and close its collaborators afterwards."""

    try:
        if mode == "once":
            return await crawler.crawl(start)
        if mode == "yesterday":
            return await crawler.crawl_yesterday()
        if mode == "last-week":
            return await crawler.crawl_last_week()
        if mode == "last-month":
            return await crawler.crawl_last_month()
        if mode == "range":
            if not start or not end:
                raise CrawlerConfigurationError("Range mode requires both a start and an end date")
            return await crawler.crawl_range(start, end, step, threshold)
        if mode == "all":
            return await crawler.crawl_all(step)
        raise CrawlerConfigurationError(f"Unknown run mode '{mode}'")
    finally:
        await crawler.aclose()
