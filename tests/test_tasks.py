import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from pricecrawler.celery_app import build_beat_schedule
from pricecrawler.tasks import crawl_source_task


class CrawlSourceTaskTestCase(unittest.TestCase):
    def test_unknown_source_is_skipped(self) -> None:
        result = crawl_source_task.run("missing-source")
        self.assertEqual(result, {"status": "skipped", "reason": "unknown_source"})

    def test_unknown_mode_is_skipped(self) -> None:
        result = crawl_source_task.run("tapm", mode="weekly")
        self.assertEqual(result, {"status": "skipped", "reason": "unknown_mode"})

    @patch("pricecrawler.tasks.run_mode", new_callable=AsyncMock)
    @patch("pricecrawler.tasks.load_settings")
    @patch("pricecrawler.tasks.get_source")
    def test_successful_crawl_reports_result(
        self,
        get_source: MagicMock,
        load_settings: MagicMock,
        run_mode: AsyncMock,
    ) -> None:
        entry = get_source.return_value
        run_mode.return_value = 12

        result = crawl_source_task.run("tapm", mode="yesterday")

        entry.build_crawler.assert_called_once_with(load_settings.return_value)
        run_mode.assert_awaited_once_with(entry.build_crawler.return_value, "yesterday", start=None, end=None)
        self.assertEqual(result, {"status": "ok", "source": "tapm", "mode": "yesterday", "result": 12})

    @patch("pricecrawler.tasks.run_mode", new_callable=AsyncMock)
    @patch("pricecrawler.tasks.load_settings")
    @patch("pricecrawler.tasks.get_source")
    def test_undelivered_completion_is_reported_incomplete(
        self,
        get_source: MagicMock,
        load_settings: MagicMock,
        run_mode: AsyncMock,
    ) -> None:
        run_mode.return_value = None

        result = crawl_source_task.run("tapm")

        self.assertEqual(result, {"status": "incomplete", "source": "tapm", "mode": "once"})


class BeatScheduleTestCase(unittest.TestCase):
    def test_only_scheduled_sources_are_registered(self) -> None:
        schedule = build_beat_schedule()

        self.assertIn("crawl-tapm", schedule)
        self.assertNotIn("crawl-tapm-archive", schedule)
        self.assertEqual(schedule["crawl-tapm"]["task"], "pricecrawler.crawl_source")
        self.assertEqual(schedule["crawl-tapm"]["args"], ("tapm", "once"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
