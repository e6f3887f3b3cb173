"""Producer/consumer queue engine shared by every crawler.

A :class:`JobQueue` owns an in-memory FIFO of opaque jobs and one lazily
launched browser. ``run()`` starts every producer and every consumer as
concurrent tasks on the running event loop. Producers append jobs while
consumers poll the queue until :meth:`JobQueue.is_done` reports that the
queue was stopped, or that it is empty and every producer has returned.

Worker failures are contained at each worker's own task boundary so one
crashing producer or consumer never leaves the aggregate wait unresolved.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Iterable, Optional

from .browser import BrowserLaunchError, BrowserSession, launch_browser
from .config import BrowserConfig, StatsOptions
from .util import format_duration, snake_case

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_MAX_CONSECUTIVE_FAILURES = 100

WorkerFactory = Callable[["JobQueue", int, int, Any], "Worker"]
BrowserLauncher = Callable[[BrowserConfig], Awaitable[BrowserSession]]
StatsEmitter = Callable[[str], Any]


class _WorkerLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['worker']}] {msg}", kwargs


class Worker:
    """Base for producers and consumers: browser and page lifecycle."""

    role = "worker"

    def __init__(
        self,
        queue: "JobQueue",
        index: int,
        count: int,
        context: Any = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.index = index
        self.count = count
        self.context = context
        self.page: Any = None
        self.logger = _WorkerLoggerAdapter(logger or queue.logger, {"worker": f"{self.role}-{index}"})

    @property
    def tally(self) -> int:
        return 0

    async def get_browser(self) -> BrowserSession:
        return await self.queue.get_browser()

    async def get_page(
        self,
        *,
        viewport: tuple[int, int] | None = None,
        user_agent: str | None = None,
    ) -> Any:
        if self.page is None:
            self.logger.info("Opening a new page")
            session = await self.get_browser()
            self.page = await session.new_page(viewport=viewport, user_agent=user_agent)
        return self.page

    async def close_page(self) -> None:
        if self.page is None:
            return

        page, self.page = self.page, None
        self.logger.info("Closing a page")
        session = self.queue.browser
        try:
            if session is not None:
                await session.close_page(page)
            else:
                await page.close()
        except Exception as exc:
            self.logger.warning("Failed to properly close a page: %s", exc)

    async def get_new_tab(self) -> Any:
        session = await self.get_browser()
        return await session.new_page()

    async def get_tab(self, tab_index: int) -> Any | None:
        session = await self.get_browser()
        pages = session.pages()
        if 0 <= tab_index < len(pages):
            return pages[tab_index]
        self.logger.warning("Page with tab index %d doesn't exist", tab_index)
        return None

    async def initialize(self) -> None:
        """Hook executed before the worker starts its main loop."""

    async def finalize(self) -> None:
        """Hook executed after the worker's main loop, before the page is released."""

    async def run(self) -> int:  # pragma: no cover - interface only
        raise NotImplementedError


class Producer(Worker):
    """Enumerates jobs and appends them to the shared queue."""

    role = "producer"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.produced = 0

    @property
    def tally(self) -> int:
        return self.produced

    async def run(self) -> int:
        try:
            await self.initialize()
            try:
                await self.produce()
            except Exception:
                self.logger.exception("Failed to produce")
            await self.finalize()
        finally:
            await self.close_page()
        return self.produced

    def push(self, *jobs: Any) -> bool:
        if not jobs:
            return False
        if self.queue.push(*jobs):
            self.produced += len(jobs)
            return True
        return False

    def is_stopped(self) -> bool:
        return self.queue.is_stopped()

    async def on_queue_complete(self) -> None:
        """Hook executed once every consumer of the queue has finished."""

    async def produce(self) -> None:
        raise NotImplementedError("Producers must implement produce()")


class Consumer(Worker):
    """Pulls jobs from the shared queue one at a time and processes them."""

    role = "consumer"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.processed = 0
        self.consecutive_failures = 0
        self.poll_interval = self.queue.poll_interval
        self.max_consecutive_failures = self.queue.max_consecutive_failures
        self.job_timeout = self.queue.job_timeout

    @property
    def tally(self) -> int:
        return self.processed

    async def run(self) -> int:
        self.consecutive_failures = 0
        try:
            await self.initialize()
            while not self.queue.is_done():
                if not self.queue.is_empty():
                    job = self.queue.shift()
                    if not await self._consume_one(job) and (
                        self.consecutive_failures > self.max_consecutive_failures
                    ):
                        self.logger.error(
                            "Too many consecutive failures (%d); giving up",
                            self.consecutive_failures,
                        )
                        break
                await asyncio.sleep(self.poll_interval)
            await self.finalize()
        finally:
            await self.close_page()
        return self.processed

    async def _consume_one(self, job: Any) -> bool:
        try:
            if self.job_timeout:
                await asyncio.wait_for(self.consume(job), timeout=self.job_timeout)
            else:
                await self.consume(job)
        except asyncio.TimeoutError:
            self.logger.error("Timed out after %.1fs consuming job %r", self.job_timeout, job)
        except Exception:
            self.logger.exception("Failed to consume a job %r", job)
        else:
            self.processed += 1
            self.consecutive_failures = 0
            return True
        self.consecutive_failures += 1
        return False

    def push(self, job: Any) -> int:
        return self.queue.push(job)

    async def consume(self, job: Any) -> None:
        raise NotImplementedError("Consumers must implement consume()")


class ArchiveProducer(Producer):
    """Replays previously archived documents for the run date instead of fetching live."""

    extension = "html"
    version = 1

    async def produce(self) -> None:
        run_date = self.context.date
        documents = await self.context.list_archived(run_date, self.extension, self.version)
        for document in documents:
            self.push({"response": document, "date": run_date})


@dataclass(slots=True)
class QueueStats:
    consumed: int
    elapsed: float
    speed: float
    remaining: int
    etc: float

    def describe(self) -> str:
        return (
            f"Total {self.consumed} consumed (Elapsed: {format_duration(self.elapsed)}, "
            f"Speed: {self.speed}/s, Remaining: {self.remaining}, ETC: {format_duration(self.etc)})"
        )


class JobQueue:
    """Shared job sequence plus the producer and consumer pools working on it."""

    def __init__(
        self,
        *,
        name: str,
        producer_factory: WorkerFactory,
        consumer_factory: WorkerFactory,
        producer_count: int = 1,
        consumer_count: int = 1,
        producer_context: Any = None,
        consumer_context: Any = None,
        browser: BrowserConfig | None = None,
        stats: StatsOptions | None = None,
        stats_reporter: StatsEmitter | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        job_timeout: float | None = None,
        browser_launcher: BrowserLauncher = launch_browser,
        install_signal_handlers: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        if producer_count < 1 or consumer_count < 1:
            raise ValueError("A queue needs at least one producer and one consumer")

        self.name = name
        self.logger = logger or LOGGER.getChild(snake_case(name) or "queue")
        self.producer_factory = producer_factory
        self.consumer_factory = consumer_factory
        self.producer_count = producer_count
        self.consumer_count = consumer_count
        self.producer_context = producer_context
        self.consumer_context = consumer_context
        self.browser_config = browser or BrowserConfig()
        self.stats_options = stats or StatsOptions()
        self.stats_reporter = stats_reporter
        self.poll_interval = max(0.0, poll_interval)
        self.max_consecutive_failures = max_consecutive_failures
        self.job_timeout = job_timeout

        self.producers: list[Producer] = []
        self.consumers: list[Consumer] = []
        self.all_produced = False

        self._jobs: Deque[Any] = deque()
        self._stopped = False
        self._browser: Optional[BrowserSession] = None
        self._browser_lock = asyncio.Lock()
        self._browser_launcher = browser_launcher
        self._install_signal_handlers = install_signal_handlers
        self._signal_tasks: set[asyncio.Task] = set()
        self._started_at: float | None = None

    # Job sequence --------------------------------------------------------------
    def push(self, *jobs: Any) -> int:
        """Append jobs in order; returns how many were accepted.

        Once the queue is done, no job is accepted, so ``is_done()`` never
        turns false again within a run.
        """

        if not self._accepts(jobs):
            return 0
        self._jobs.extend(jobs)
        return len(jobs)

    def unshift(self, *jobs: Any) -> int:
        if not self._accepts(jobs):
            return 0
        self._jobs.extendleft(reversed(jobs))
        return len(jobs)

    def _accepts(self, jobs: tuple) -> bool:
        if self._stopped:
            return False
        if jobs and self.is_done():
            self.logger.warning("Queue %s is done; rejecting %d jobs", self.name, len(jobs))
            return False
        return True

    def shift(self) -> Any:
        return self._jobs.popleft()

    def clear(self) -> None:
        self._jobs.clear()

    def is_empty(self) -> bool:
        return not self._jobs

    def is_stopped(self) -> bool:
        return self._stopped

    def is_done(self) -> bool:
        return self._stopped or (self.is_empty() and self.all_produced)

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def produced(self) -> int:
        return sum(producer.produced for producer in self.producers)

    @property
    def processed(self) -> int:
        return sum(consumer.processed for consumer in self.consumers)

    # Browser -------------------------------------------------------------------
    @property
    def browser(self) -> Optional[BrowserSession]:
        return self._browser

    async def get_browser(self) -> BrowserSession:
        async with self._browser_lock:
            if self._browser is None:
                if self._stopped:
                    raise BrowserLaunchError(f"Queue {self.name} has been stopped")
                self.logger.info("Launching browser")
                self._browser = await self._browser_launcher(self.browser_config)
            return self._browser

    async def close_browser(self) -> None:
        async with self._browser_lock:
            browser, self._browser = self._browser, None
        if browser is None:
            return
        self.logger.info("Closing browser")
        try:
            await browser.close()
        except Exception as exc:
            self.logger.warning("Failed to properly close browser: %s", exc)

    # Lifecycle -----------------------------------------------------------------
    async def stop(self) -> None:
        """Stop cooperatively: drop pending jobs and release the browser."""

        if not self._stopped:
            self.logger.info("Stopping queue with %d pending jobs", len(self._jobs))
        self._stopped = True
        self.clear()
        await self.close_browser()

    async def run(self) -> int:
        """Run every producer and consumer concurrently; returns the total consumed."""

        self.producers = [
            self.producer_factory(self, index, self.producer_count, self.producer_context)
            for index in range(self.producer_count)
        ]
        self.consumers = [
            self.consumer_factory(self, index, self.consumer_count, self.consumer_context)
            for index in range(self.consumer_count)
        ]
        self.all_produced = False
        self._started_at = time.monotonic()
        self._add_signal_handlers()
        stats_tasks = self._start_stats()

        self.logger.debug("Creating %d producers and %d consumers", self.producer_count, self.consumer_count)
        producer_tasks = [
            asyncio.create_task(self._run_worker(producer), name=f"{self.name}-producer-{producer.index}")
            for producer in self.producers
        ]
        consumer_tasks = [
            asyncio.create_task(self._run_worker(consumer), name=f"{self.name}-consumer-{consumer.index}")
            for consumer in self.consumers
        ]
        production = asyncio.create_task(self._await_production(producer_tasks))

        try:
            counts = await asyncio.gather(*consumer_tasks)
            total = sum(counts)
            self.logger.debug("Total %d jobs were consumed", total)
            await self._finish_production(production, producer_tasks)
            for producer in self.producers:
                await self._notify_complete(producer)
            return total
        finally:
            pending = [task for task in (*producer_tasks, *consumer_tasks, production) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self._stop_stats(stats_tasks)
            self._remove_signal_handlers()
            await self.close_browser()

    async def _run_worker(self, worker: Worker) -> int:
        try:
            return await worker.run()
        except Exception:
            worker.logger.exception("Worker terminated unexpectedly")
            return worker.tally

    async def _await_production(self, producer_tasks: Iterable[asyncio.Task]) -> int:
        counts = await asyncio.gather(*producer_tasks)
        self.all_produced = True
        total = sum(counts)
        self.logger.debug("Total %d jobs were produced", total)
        return total

    async def _finish_production(self, production: asyncio.Task, producer_tasks: list[asyncio.Task]) -> None:
        if production.done():
            return
        self.logger.warning("All consumers finished before the producers; stopping the remaining producers")
        self._stopped = True
        self.clear()
        for task in producer_tasks:
            task.cancel()
        await asyncio.gather(*producer_tasks, return_exceptions=True)
        production.cancel()
        await asyncio.gather(production, return_exceptions=True)

    async def _notify_complete(self, producer: Producer) -> None:
        try:
            await producer.on_queue_complete()
        except Exception:
            producer.logger.exception("on_queue_complete hook failed")

    # Stats ---------------------------------------------------------------------
    def get_stats(self) -> QueueStats:
        consumed = self.processed
        elapsed = time.monotonic() - self._started_at if self._started_at is not None else 0.0
        rate = consumed / elapsed if elapsed else 0.0
        remaining = len(self._jobs)
        etc = remaining / rate if rate else 0.0
        return QueueStats(consumed=consumed, elapsed=elapsed, speed=round(rate, 2), remaining=remaining, etc=etc)

    def _start_stats(self) -> list[tuple[asyncio.Task, StatsEmitter]]:
        tasks: list[tuple[asyncio.Task, StatsEmitter]] = []
        if self.stats_options.interval:
            tasks.append((self._spawn_stats_loop(self.stats_options.interval, self.logger.info), self.logger.info))
        if self.stats_reporter is not None and self.stats_options.report_interval:
            tasks.append(
                (
                    self._spawn_stats_loop(self.stats_options.report_interval, self.stats_reporter),
                    self.stats_reporter,
                )
            )
        return tasks

    def _spawn_stats_loop(self, interval: float, emit: StatsEmitter) -> asyncio.Task:
        return asyncio.create_task(self._stats_loop(interval, emit), name=f"{self.name}-stats")

    async def _stats_loop(self, interval: float, emit: StatsEmitter) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._emit_stats(emit)

    async def _emit_stats(self, emit: StatsEmitter) -> None:
        try:
            result = emit(self.get_stats().describe())
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.logger.warning("Failed to emit queue stats: %s", exc)

    async def _stop_stats(self, stats_tasks: list[tuple[asyncio.Task, StatsEmitter]]) -> None:
        for task, emit in stats_tasks:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await self._emit_stats(emit)

    # Signals -------------------------------------------------------------------
    def _add_signal_handlers(self) -> None:
        if not self._install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - platform guard
                LOGGER.debug("Signal handlers are not supported on this platform")
                return

    def _remove_signal_handlers(self) -> None:
        if not self._install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - platform guard
                return

    def _on_signal(self, sig: signal.Signals) -> None:
        self.logger.warning("Received %s; stopping queue", sig.name)
        task = asyncio.ensure_future(self.stop())
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)
