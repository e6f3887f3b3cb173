"""Taipei Agricultural Products Marketing daily wholesale prices."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date

from bs4 import BeautifulSoup, Tag

from ..config import DEFAULT_USER_AGENT, QueueOptions, StatsOptions
from ..crawler import IterationMode, SourceDefinition
from ..http_client import HttpFetcher
from ..jobs import ArchiveProducer, Consumer, Producer
from ..records import PriceRecord, RecordFactory

BASE_URL = "http://www.tapmc.com.taipei/Pages/Index"
TIMEZONE = "Asia/Taipei"

PRODUCT_HEADER = "品名"
VARIETY_HEADER = "品種"
PRICE_MAX_HEADER = "上價"
PRICE_AVG_HEADER = "中價"
PRICE_MIN_HEADER = "下價"
EXPECTED_HEADERS = (PRODUCT_HEADER, VARIETY_HEADER, PRICE_MAX_HEADER, PRICE_AVG_HEADER, PRICE_MIN_HEADER)

DEFINITION = SourceDefinition(
    name="Tapm",
    country="TW",
    language="zh",
    currency="TWD",
    description="Taipei Agricultural Products Marketing",
    url=BASE_URL,
    frequency="d",
    is_history_supported=False,
)

MODE = IterationMode.SINGLE

RECORD_DEFAULTS = {
    "country": "TW",
    "currency": "TWD",
    "page_url": BASE_URL,
    "region": "Taipei",
    "unit": "kg",
    "type": "w",
}

_DIGITS_RE = re.compile(r"\d+")


class TapmParseError(RuntimeError):
    """Raised when the market page lacks the elements needed to read prices."""


@dataclass(slots=True)
class TapmPage:
    date: str | None
    is_holiday: bool
    headers: list[str]
    records: list[PriceRecord] = field(default_factory=list)

    def header_conditions(self) -> list[tuple[bool, str]]:
        headers = list(self.headers) + [""] * (len(EXPECTED_HEADERS) - len(self.headers))
        return [
            (actual == expected, f"{expected} -> {actual}")
            for expected, actual in zip(EXPECTED_HEADERS, headers)
        ]


def _number(value: str) -> float | None:
    try:
        return float(value.replace(",", ""))
    except (AttributeError, ValueError):
        return None


def _cell_text(cells: list[Tag], index: int) -> str:
    if index < 0 or index >= len(cells):
        return ""
    return cells[index].get_text(strip=True)


def _parse_date(soup: BeautifulSoup) -> str:
    day_node = soup.select_one(".today-day")
    title_cells = soup.select("table .title td")
    if day_node is None or len(title_cells) < 2:
        raise TapmParseError("Market date not found")

    year_month = _DIGITS_RE.findall(title_cells[1].get_text())
    day_digits = _DIGITS_RE.findall(day_node.get_text())
    if len(year_month) < 2 or not day_digits:
        raise TapmParseError("Market date is malformed")
    try:
        return date(int(year_month[0]), int(year_month[1]), int(day_digits[0])).isoformat()
    except ValueError as exc:
        raise TapmParseError(f"Market date is invalid: {exc}") from exc


def parse_price_page(html: str, *, reference: date | None = None) -> TapmPage:
    """Parse the market index page into validated price records."""

    soup = BeautifulSoup(html, "html.parser")
    is_holiday = soup.select_one(".selected-day.seletected-today-day") is not None
    headers = [node.get_text(strip=True) for node in soup.select(".price-head > div")]
    if is_holiday:
        return TapmPage(date=None, is_holiday=True, headers=headers)

    market_date = _parse_date(soup)
    factory = RecordFactory({**RECORD_DEFAULTS, "date": market_date})
    columns = {name: headers.index(name) if name in headers else -1 for name in EXPECTED_HEADERS}

    records: list[PriceRecord] = []
    for row in soup.select(".price-table tbody tr"):
        cells = row.find_all("td")
        price_max = _cell_text(cells, columns[PRICE_MAX_HEADER])
        price_avg = _cell_text(cells, columns[PRICE_AVG_HEADER])
        raw_min = _cell_text(cells, columns[PRICE_MIN_HEADER])
        min_value = _number(raw_min)
        if min_value is not None and min_value > 0:
            price_min: str | float | None = raw_min
        else:
            candidates = [value for value in (_number(price_avg), _number(price_max)) if value is not None]
            price_min = min(candidates) if candidates else None

        record = factory.create(
            product=_cell_text(cells, columns[PRODUCT_HEADER]),
            variety=_cell_text(cells, columns[VARIETY_HEADER]) or None,
            price_max=price_max,
            price_avg=price_avg,
            price_min=price_min,
        )
        if record.is_valid(reference=reference):
            records.append(record)

    return TapmPage(date=market_date, is_holiday=False, headers=headers, records=records)


class TapmProducer(Producer):
    async def produce(self) -> None:
        self.push({"url": BASE_URL})


class TapmConsumer(Consumer):
    """Fetches the market page over plain HTTP; no browser page is opened."""

    async def initialize(self) -> None:
        extra = self.context.extra
        self.fetcher: HttpFetcher = extra.get("fetcher")
        self._owns_fetcher = self.fetcher is None
        if self.fetcher is None:
            self.fetcher = HttpFetcher(
                user_agent=extra.get("user_agent", DEFAULT_USER_AGENT),
                timeout=extra.get("timeout", 30.0),
            )

    async def finalize(self) -> None:
        if self._owns_fetcher:
            await self.fetcher.aclose()

    async def consume(self, job: dict) -> None:
        url = job.get("url") or BASE_URL
        html, _response = await self.fetcher.fetch_html(url)
        await self.context.archive(html, 1)

        page = parse_price_page(html)
        if page.is_holiday:
            self.logger.info("Today is a market holiday")
            return

        await self.context.assert_conditions(page.header_conditions(), url)
        await self.context.pusher.push(page.records)


def queue_options(*, user_agent: str = DEFAULT_USER_AGENT, timeout: float = 30.0) -> QueueOptions:
    return QueueOptions(
        producer_factory=TapmProducer,
        consumer_factory=TapmConsumer,
        consumer_extra={"user_agent": user_agent, "timeout": timeout},
        stats=StatsOptions(interval=None),
    )


class TapmArchiveConsumer(Consumer):
    """Re-parses archived market pages handed over by :class:`ArchiveProducer`."""

    async def consume(self, job: dict) -> None:
        page = parse_price_page(job["response"])
        if page.is_holiday:
            return
        if page.date != job.get("date"):
            self.logger.warning("Archived page for %s reports market date %s", job.get("date"), page.date)
        await self.context.pusher.push(page.records)


def archive_queue_options() -> QueueOptions:
    return QueueOptions(
        producer_factory=ArchiveProducer,
        consumer_factory=TapmArchiveConsumer,
        stats=StatsOptions(interval=None),
    )
