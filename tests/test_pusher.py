import re
import unittest
from datetime import date, timedelta

from pricecrawler.api import SinkError, SourceIdentity
from pricecrawler.pusher import Pusher
from pricecrawler.records import PriceRecord, RecordKind


class RecordingSink:
    def __init__(self, *, fail_batches: set[int] | None = None, fail_complete: bool = False) -> None:
        self.batches = []
        self.completions = []
        self.attempts = 0
        self._fail_batches = fail_batches or set()
        self._fail_complete = fail_complete

    async def push_batch(self, source_id, run_hash, records):
        self.attempts += 1
        if self.attempts in self._fail_batches:
            raise SinkError("sink unavailable")
        self.batches.append((source_id, run_hash, list(records)))
        return len(records)

    async def complete(self, source_id, run_hash, date=None):
        if self._fail_complete:
            raise SinkError("completion rejected")
        self.completions.append((source_id, run_hash, date))
        return {"id": "batch-1"}


def make_records(count: int, *, day: str = "2021-05-01") -> list[dict]:
    return [
        {
            "product": f"product-{number}",
            "country": "TW",
            "date": day,
            "type": "w",
            "page_url": "https://example.com/prices",
            "unit": "kg",
            "currency": "TWD",
            "price_avg": 10 + number,
        }
        for number in range(count)
    ]


SOURCE = SourceIdentity(id=7, name="Example")


class PusherTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_count_is_sum_of_pushes_regardless_of_flushing(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink, threshold=4)

        await pusher.push(make_records(3))
        await pusher.push(make_records(6))
        await pusher.push(make_records(2))

        self.assertEqual(pusher.count, 11)

    async def test_threshold_triggers_single_flush_in_fixed_batches(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink, threshold=30)

        await pusher.push(make_records(10))
        await pusher.push(make_records(10))
        self.assertEqual(sink.batches, [])

        await pusher.push(make_records(15))

        self.assertEqual([len(batch) for _, _, batch in sink.batches], [30, 5])
        self.assertEqual(pusher.buffer, [])

    async def test_flush_preserves_push_order(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink, threshold=2)
        records = make_records(5)

        await pusher.push(records, force=True)

        flushed = [payload["productRaw"] for _, _, batch in sink.batches for payload in batch]
        self.assertEqual(flushed, [record["product"] for record in records])
        self.assertEqual([len(batch) for _, _, batch in sink.batches], [2, 2, 1])

    async def test_failed_batch_does_not_block_following_batches(self) -> None:
        sink = RecordingSink(fail_batches={1})
        pusher = Pusher("Example", SOURCE, sink, threshold=2)

        with self.assertLogs("pricecrawler.pusher", level="ERROR"):
            await pusher.push(make_records(5))

        self.assertEqual(sink.attempts, 3)
        self.assertEqual([len(batch) for _, _, batch in sink.batches], [2, 1])
        self.assertEqual(pusher.count, 5)
        self.assertEqual(pusher.buffer, [])

    async def test_complete_without_records_does_nothing(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink)

        with self.assertLogs("pricecrawler.pusher", level="WARNING"):
            delivered = await pusher.complete("2021-05-01")

        self.assertFalse(delivered)
        self.assertEqual(sink.attempts, 0)
        self.assertEqual(sink.completions, [])

    async def test_complete_flushes_then_signals_once(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink, threshold=100)
        await pusher.push(make_records(3))

        delivered = await pusher.complete("2021-05-01")

        self.assertTrue(delivered)
        self.assertEqual(len(sink.batches), 1)
        self.assertEqual(sink.completions, [(7, pusher.hash, "2021-05-01")])

    async def test_complete_reports_undelivered_signal(self) -> None:
        sink = RecordingSink(fail_complete=True)
        pusher = Pusher("Example", SOURCE, sink)
        await pusher.push(make_records(1))

        with self.assertLogs("pricecrawler.pusher", level="ERROR"):
            delivered = await pusher.complete()

        self.assertFalse(delivered)

    async def test_every_batch_carries_the_same_hash(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink, threshold=1)
        await pusher.push(make_records(3))

        self.assertRegex(pusher.hash, re.compile(r"^[0-9a-f]{40}$"))
        self.assertEqual({run_hash for _, run_hash, _ in sink.batches}, {pusher.hash})
        self.assertTrue(all(payload["hash"] == pusher.hash for _, _, batch in sink.batches for payload in batch))
        self.assertNotEqual(pusher.hash, Pusher("Example", SOURCE, sink).hash)

    async def test_payloads_are_normalized_for_the_sink(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink)
        record = PriceRecord(
            product="Cabbage",
            country="TW",
            date="2021-05-01",
            type="w",
            page_url="https://example.com/prices/leaf veg",
            unit="kg",
            currency="TWD",
            prices={"price_avg": 1.23456789012, "price_min": 1, "price_max": 2},
            region="Taipei",
        )

        await pusher.push([record], force=True)

        payload = sink.batches[0][2][0]
        self.assertEqual(payload["priceAvg"], 1.23456789)
        self.assertEqual(payload["priceMin"], 1)
        self.assertEqual(payload["pageUrl"], "https://example.com/prices/leaf%20veg")
        self.assertEqual(payload["productRaw"], "Cabbage")
        self.assertEqual(payload["regionRaw"], "Taipei")
        self.assertEqual(payload["countryId"], "TW")
        self.assertEqual(payload["sourceId"], 7)

    async def test_retail_records_use_retail_schema(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Shop", SOURCE, sink, kind=RecordKind.RETAIL)

        await pusher.push(
            [{"name": "Apple", "country": "KR", "price": 1200.5, "date": "2021-05-01", "page_url": "https://shop.example.com/a"}],
            force=True,
        )

        payload = sink.batches[0][2][0]
        self.assertEqual(payload["name"], "Apple")
        self.assertEqual(payload["countryId"], "KR")
        self.assertEqual(payload["price"], 1200.5)
        self.assertNotIn("productRaw", payload)

    async def test_monthly_sources_move_dates_to_month_end(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Monthly", SOURCE, sink, frequency="m")

        await pusher.push(make_records(1, day="2020-02-10"), force=True)

        self.assertEqual(sink.batches[0][2][0]["date"], "2020-02-29")
        self.assertEqual(pusher.dates, ["2020-02-29"])

    async def test_monthly_dates_are_capped_at_yesterday(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Monthly", SOURCE, sink, frequency="m")
        today = date.today()

        await pusher.push(make_records(1, day=today.isoformat()), force=True)

        self.assertEqual(sink.batches[0][2][0]["date"], (today - timedelta(days=1)).isoformat())

    async def test_last_month_filter_drops_older_records(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", SOURCE, sink, last_month_only=True)
        recent = (date.today() - timedelta(days=2)).isoformat()
        stale = (date.today() - timedelta(days=90)).isoformat()

        await pusher.push(make_records(2, day=recent) + make_records(3, day=stale))

        self.assertEqual(pusher.count, 2)
        self.assertEqual(pusher.dates, [recent])

    async def test_dates_are_sorted_and_distinct(self) -> None:
        pusher = Pusher("Example", SOURCE, RecordingSink())
        await pusher.push(make_records(2, day="2021-05-03") + make_records(1, day="2021-05-01"))
        await pusher.push(make_records(1, day="2021-05-03"))
        self.assertEqual(pusher.dates, ["2021-05-01", "2021-05-03"])

    async def test_push_without_source_is_dropped(self) -> None:
        sink = RecordingSink()
        pusher = Pusher("Example", None, sink)

        with self.assertLogs("pricecrawler.pusher", level="ERROR"):
            await pusher.push(make_records(2), force=True)

        self.assertEqual(pusher.count, 0)
        self.assertEqual(sink.attempts, 0)

    def test_threshold_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            Pusher("Example", SOURCE, RecordingSink(), threshold=0)


if __name__ == "__main__":  # pragma: no cover - convenience runner
    unittest.main()
