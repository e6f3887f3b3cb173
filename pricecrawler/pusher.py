"""Buffered delivery of crawled records to a sink in fixed-size batches."""

from __future__ import annotations

import dataclasses
import logging
from datetime import date
from typing import Any, Iterable, Mapping, Protocol, Sequence, Union

from .records import PriceRecord, RecordKind, normalize_for_sink, record_date
from .util import format_date, last_date_of_month, last_month, parse_date, random_sha1, yesterday

LOGGER = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 100
MONTHLY = "m"

Record = Union[PriceRecord, Mapping[str, Any]]


class Sink(Protocol):
    """Destination for flushed batches and the per-run completion signal."""

    async def push_batch(self, source_id: Any, run_hash: str, records: Sequence[Mapping[str, Any]]) -> Any:
        ...

    async def complete(self, source_id: Any, run_hash: str, date: str | None = None) -> Any:
        ...


class Pusher:
    """Accumulates records for a single crawl run and flushes them to ``sink``."""

    def __init__(
        self,
        name: str,
        source: Any,
        sink: Sink,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        kind: RecordKind = RecordKind.WHOLESALE,
        frequency: str = "d",
        last_month_only: bool = False,
        timezone: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.name = name
        self.source = source
        self.sink = sink
        self.threshold = threshold
        self.kind = kind
        self.frequency = frequency
        self.last_month_only = last_month_only
        self.timezone = timezone
        self.logger = logger or LOGGER
        self.hash = random_sha1()
        self.count = 0
        self.buffer: list[Record] = []
        self._dates: set[str] = set()

    @property
    def dates(self) -> list[str]:
        return sorted(self._dates)

    @property
    def source_id(self) -> Any:
        return getattr(self.source, "id", None)

    async def push(self, records: Iterable[Record], force: bool = False) -> None:
        if self.source is None:
            self.logger.error("Source is not set; dropping pushed records")
            return

        batch = list(records)
        self.logger.debug("Buffering %d records", len(batch))
        if self.last_month_only:
            batch = self._filter_last_month(batch)
        if self.frequency == MONTHLY:
            batch = [self._move_to_month_end(record) for record in batch]

        self.count += len(batch)
        for record in batch:
            value = record_date(record)
            if value:
                self._dates.add(value)
        self.buffer.extend(batch)

        if force or len(self.buffer) >= self.threshold:
            await self.flush()

    async def flush(self) -> int:
        """Send buffered records in threshold-sized batches; returns how many were delivered."""

        if self.source is None:
            self.logger.error("Source is not set; cannot flush")
            return 0
        if not self.buffer:
            return 0

        pending, self.buffer = self.buffer, []
        self.logger.info("Flushing %d buffered records", len(pending))
        delivered = 0
        for offset in range(0, len(pending), self.threshold):
            chunk = pending[offset : offset + self.threshold]
            payloads = [normalize_for_sink(record, self.source_id, self.hash, self.kind) for record in chunk]
            try:
                result = await self.sink.push_batch(self.source_id, self.hash, payloads)
            except Exception as exc:
                self.logger.error("Failed to flush a batch of %d records: %s", len(chunk), exc)
                continue
            delivered += len(chunk)
            self.logger.info("Successfully flushed %d records (%s)", len(chunk), result)
        return delivered

    async def complete(self, date: str | None = None) -> bool:
        """Flush the remainder and signal run completion; returns True once delivered."""

        if not self.count:
            self.logger.warning("Nothing to complete")
            return False
        if self.source is None:
            self.logger.error("Source is not set; cannot complete")
            return False

        await self.flush()
        try:
            await self.sink.complete(self.source_id, self.hash, date)
        except Exception as exc:
            self.logger.error("Failed to complete run %s: %s", self.hash, exc)
            return False
        return True

    def _filter_last_month(self, records: list[Record]) -> list[Record]:
        cutoff = last_month(self.timezone)
        kept: list[Record] = []
        for record in records:
            value = record_date(record)
            try:
                if value and parse_date(value) >= cutoff:
                    kept.append(record)
            except ValueError:
                self.logger.debug("Dropping record with unparsable date %r", value)
        return kept

    def _move_to_month_end(self, record: Record) -> Record:
        value = record_date(record)
        if not value:
            return record
        try:
            month_end = last_date_of_month(value)
        except ValueError:
            return record
        cap: date = yesterday(self.timezone)
        moved = format_date(min(month_end, cap))
        if isinstance(record, PriceRecord):
            return dataclasses.replace(record, date=moved)
        return {**record, "date": moved}
