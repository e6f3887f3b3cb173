import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from pricecrawler.api import SinkError, SourceIdentity
from pricecrawler.config import QueueOptions, StatsOptions
from pricecrawler.crawler import (
    Crawler,
    CrawlerConfigurationError,
    CrawlerInitializationError,
    IterationMode,
    SourceDefinition,
    run_mode,
)
from pricecrawler.jobs import Consumer, Producer
from pricecrawler.storage import FilesystemArchive

DEFINITION = SourceDefinition(
    name="Example Market",
    country="TW",
    language="zh",
    currency="TWD",
    description="Example wholesale market",
    url="https://market.example.com",
)


class FakeRegistry:
    def __init__(self, identity=SourceIdentity(id=42, name="Example Market")) -> None:
        self.identity = identity
        self.calls = []
        self.alarms = []

    async def create_or_update_source(self, metadata, kind):
        self.calls.append((metadata, kind))
        return self.identity

    async def create_alarm(self, source_id, message, url):
        self.alarms.append((source_id, message, url))


class FakeSink:
    def __init__(self, *, fail_complete_on: set[str] | None = None) -> None:
        self.batches = []
        self.completions = []
        self._fail_complete_on = fail_complete_on or set()

    async def push_batch(self, source_id, run_hash, records):
        self.batches.append(list(records))
        return len(records)

    async def complete(self, source_id, run_hash, date=None):
        if date in self._fail_complete_on:
            raise SinkError("rejected")
        self.completions.append((source_id, run_hash, date))


class FakeNotifier:
    def __init__(self) -> None:
        self.reports = []

    async def report(self, text, fields=(), *, title=None, title_link=None, description=None):
        self.reports.append({"text": text, "fields": list(fields), "title": title, "title_link": title_link})


class DateProducer(Producer):
    async def produce(self) -> None:
        self.push({"date": self.context.date})


class CountingConsumer(Consumer):
    """Pushes as many records as the run's ``counts`` extra maps the date to."""

    async def consume(self, job) -> None:
        counts = self.context.extra["counts"]
        run_date = job["date"] or "2021-01-10"
        records = [
            {
                "product": f"item-{number}",
                "country": "TW",
                "date": run_date,
                "type": "w",
                "page_url": "https://market.example.com",
                "unit": "kg",
                "currency": "TWD",
                "price_avg": 5,
            }
            for number in range(counts.get(run_date, 0))
        ]
        await self.context.pusher.push(records)


class RecordingDelayCrawler(Crawler):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.delays = 0

    async def wait_between_dates(self) -> None:
        self.delays += 1


def build_crawler(counts, *, registry=None, sink=None, mode=IterationMode.DATE_RANGE, **kwargs) -> RecordingDelayCrawler:
    options = QueueOptions(
        producer_factory=DateProducer,
        consumer_factory=CountingConsumer,
        consumer_extra={"counts": counts},
        stats=StatsOptions(interval=None),
        poll_interval=0,
    )
    return RecordingDelayCrawler(
        DEFINITION,
        options,
        timezone="Asia/Taipei",
        registry=registry or FakeRegistry(),
        sink=sink or FakeSink(),
        mode=mode,
        **kwargs,
    )


class CrawlerCrawlTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_crawl_returns_pushed_count_and_completes_run(self) -> None:
        sink = FakeSink()
        crawler = build_crawler({"2021-01-05": 3}, sink=sink)

        count = await crawler.crawl("2021-01-05")

        self.assertEqual(count, 3)
        self.assertEqual(len(sink.batches), 1)
        self.assertEqual(sink.completions, [(42, crawler.pusher.hash, "2021-01-05")])

    async def test_each_crawl_uses_a_fresh_run_hash(self) -> None:
        crawler = build_crawler({"2021-01-05": 1})
        await crawler.crawl("2021-01-05")
        first = crawler.pusher.hash
        await crawler.crawl("2021-01-05")
        self.assertNotEqual(first, crawler.pusher.hash)

    async def test_registers_source_metadata_before_crawling(self) -> None:
        registry = FakeRegistry()
        crawler = build_crawler({}, registry=registry)

        await crawler.crawl("2021-01-05")

        metadata, kind = registry.calls[0]
        self.assertEqual(metadata["name"], "Example Market")
        self.assertEqual(metadata["url"], "https://market.example.com")
        self.assertEqual(kind.value, "data")

    async def test_unresolved_source_raises(self) -> None:
        crawler = build_crawler({}, registry=FakeRegistry(identity=None))
        with self.assertRaises(CrawlerInitializationError):
            await crawler.crawl("2021-01-05")

    async def test_undelivered_completion_returns_none(self) -> None:
        crawler = build_crawler({"2021-01-05": 2}, sink=FakeSink(fail_complete_on={"2021-01-05"}))
        with self.assertLogs("pricecrawler", level="ERROR"):
            count = await crawler.crawl("2021-01-05")
        self.assertIsNone(count)

    async def test_empty_run_returns_zero_without_report(self) -> None:
        notifier = FakeNotifier()
        crawler = build_crawler({}, notifier=notifier)
        count = await crawler.crawl("2021-01-05")
        self.assertEqual(count, 0)
        self.assertEqual(notifier.reports, [])

    async def test_report_describes_the_run(self) -> None:
        notifier = FakeNotifier()
        crawler = build_crawler({"2021-01-05": 1234}, notifier=notifier)

        await crawler.crawl("2021-01-05")

        self.assertEqual(len(notifier.reports), 1)
        report = notifier.reports[0]
        self.assertIn("*Example Market (#42)*", report["text"])
        self.assertIn(":flag-tw:", report["text"])
        self.assertIn("*1,234* *wholesale* prices for *2021-01-05*", report["text"])
        self.assertIn("actual date coverage was 2021-01-05", report["text"])
        self.assertEqual(
            report["fields"],
            [("Country", ":flag-tw:"), ("Currency", "TWD"), ("Timezone", "Asia/Taipei")],
        )
        self.assertEqual(report["title_link"], "https://market.example.com")

    async def test_queue_options_reporter_receives_stats(self) -> None:
        lines = []

        async def reporter(line: str) -> None:
            lines.append(line)

        crawler = build_crawler({"2021-01-05": 2})
        crawler.queue_options.stats = StatsOptions(interval=None, report_interval=60)
        crawler.queue_options.stats_reporter = reporter

        await crawler.crawl("2021-01-05")

        self.assertEqual(len(lines), 1)
        self.assertTrue(lines[0].startswith("Total 1 consumed"))

    async def test_notifier_receives_stats_when_report_interval_is_set(self) -> None:
        notifier = FakeNotifier()
        crawler = build_crawler({"2021-01-05": 2}, notifier=notifier)
        crawler.queue_options.stats = StatsOptions(interval=None, report_interval=60)

        await crawler.crawl("2021-01-05")

        texts = [report["text"] for report in notifier.reports]
        self.assertEqual(len(texts), 2)
        self.assertTrue(texts[0].startswith(":flag-tw: Example Market: Total 1 consumed"))
        self.assertIn("*2* *wholesale* prices", texts[1])

    def test_no_reporter_without_report_interval(self) -> None:
        crawler = build_crawler({}, notifier=FakeNotifier())
        self.assertIsNone(crawler.stats_reporter())

    def test_timezone_is_required(self) -> None:
        with self.assertRaises(CrawlerConfigurationError):
            Crawler(DEFINITION, QueueOptions(DateProducer, CountingConsumer), timezone="", registry=FakeRegistry(), sink=FakeSink())


class CrawlerRangeTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_consecutive_empty_dates_abort_the_range(self) -> None:
        crawler = build_crawler({"2021-01-04": 9, "2021-01-05": 9})

        with self.assertLogs("pricecrawler", level="WARNING"):
            results = await crawler.crawl_range("2021-01-01", "2021-01-05", threshold=2)

        self.assertEqual(list(results), ["2021-01-01", "2021-01-02", "2021-01-03"])

    async def test_productive_date_resets_the_failure_streak(self) -> None:
        counts = {"2021-01-03": 1, "2021-01-06": 1}
        crawler = build_crawler(counts)

        results = await crawler.crawl_range("2021-01-01", "2021-01-06", threshold=2)

        self.assertEqual(len(results), 6)
        self.assertEqual(results["2021-01-03"], 1)
        self.assertEqual(crawler.delays, 6)

    async def test_range_can_walk_backwards_with_step(self) -> None:
        crawler = build_crawler({})
        results = await crawler.crawl_range("2021-01-10", "2021-01-01", step=3, threshold=0)
        self.assertEqual(list(results), ["2021-01-10", "2021-01-07", "2021-01-04", "2021-01-01"])

    async def test_undelivered_dates_skip_delay_and_reset_the_streak(self) -> None:
        counts = {"2021-01-02": 1}
        sink = FakeSink(fail_complete_on={"2021-01-02"})
        crawler = build_crawler(counts, sink=sink)

        with self.assertLogs("pricecrawler", level="WARNING") as logs:
            results = await crawler.crawl_range("2021-01-01", "2021-01-05", threshold=2)

        self.assertEqual(
            results,
            {"2021-01-01": 0, "2021-01-02": None, "2021-01-03": 0, "2021-01-04": 0, "2021-01-05": 0},
        )
        self.assertEqual(crawler.delays, 3)
        self.assertTrue(any("Failed more than 2 times" in line for line in logs.output))

    async def test_zero_threshold_falls_back_to_crawler_default(self) -> None:
        crawler = build_crawler({}, threshold=1)

        with self.assertLogs("pricecrawler", level="WARNING"):
            results = await crawler.crawl_range("2021-01-01", "2021-01-05", threshold=0)

        self.assertEqual(list(results), ["2021-01-01", "2021-01-02"])

    async def test_single_mode_rejects_ranges(self) -> None:
        crawler = build_crawler({}, mode=IterationMode.SINGLE)
        with self.assertRaises(CrawlerConfigurationError):
            await crawler.crawl_range("2021-01-01", "2021-01-02")

    async def test_crawl_all_walks_back_to_first_date(self) -> None:
        crawler = build_crawler({}, first_date="2000-01-01")
        crawled = []

        async def fake_range(start, end, step=1, threshold=None):
            crawled.append((start, end, step))
            return {}

        crawler.crawl_range = fake_range
        await crawler.crawl_all(step=2)

        self.assertEqual(crawled[0][1], "2000-01-01")
        self.assertEqual(crawled[0][2], 2)


class CrawlerAssertionTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_failed_conditions_raise_one_alarm(self) -> None:
        registry = FakeRegistry()
        crawler = build_crawler({}, registry=registry)
        await crawler.initialize()

        with self.assertLogs("pricecrawler", level="WARNING"):
            drifted = await crawler.assert_conditions(
                [(True, "ok"), (False, "品名 -> 名稱"), (False, "上價 -> 高價")],
                "https://market.example.com",
            )

        self.assertTrue(drifted)
        self.assertEqual(registry.alarms, [(42, "品名 -> 名稱\n上價 -> 高價", "https://market.example.com")])

    async def test_passing_conditions_raise_nothing(self) -> None:
        registry = FakeRegistry()
        crawler = build_crawler({}, registry=registry)
        await crawler.initialize()

        drifted = await crawler.assert_conditions([(True, "a"), (True, "b")], "https://market.example.com")

        self.assertFalse(drifted)
        self.assertEqual(registry.alarms, [])


class CrawlerArchiveTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_archive_round_trip_through_context(self) -> None:
        with TemporaryDirectory() as tmpdir:
            archive = FilesystemArchive(Path(tmpdir), enabled=True)
            crawler = build_crawler({}, archive=archive)

            path = await crawler.archive("<html>prices</html>", 2, "2021-01-05")
            documents = await crawler.list_archived("2021-01-05")

        self.assertEqual(path.name, "s2.html")
        self.assertEqual(documents, ["<html>prices</html>"])

    async def test_archive_without_store_is_a_no_op(self) -> None:
        crawler = build_crawler({})
        self.assertIsNone(await crawler.archive("<html></html>"))
        self.assertEqual(await crawler.list_archived("2021-01-05"), [])


class RunModeTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_range_mode_requires_both_dates(self) -> None:
        crawler = build_crawler({})
        with self.assertRaises(CrawlerConfigurationError):
            await run_mode(crawler, "range", start="2021-01-01")

    async def test_unknown_mode_is_rejected(self) -> None:
        crawler = build_crawler({})
        with self.assertRaises(CrawlerConfigurationError):
            await run_mode(crawler, "weekly")

    async def test_once_mode_crawls_the_given_date(self) -> None:
        crawler = build_crawler({"2021-01-05": 2})
        self.assertEqual(await run_mode(crawler, "once", start="2021-01-05"), 2)


if __name__ == "__main__":  # pragma: no cover - convenience runner
    unittest.main()
