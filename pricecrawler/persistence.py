"""SQLAlchemy-backed source registry and record sink."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from models import Alarm, Base, RawPrice, Source, SourceBatch, generate_uuid7

from .api import ALARM_TYPE_UI_CHANGE, SinkError, SourceIdentity
from .records import RecordKind
from .util import parse_date

LOGGER = logging.getLogger(__name__)

_ENGINE_OPTIONS = {
    "pool_pre_ping": True,
    "pool_recycle": 1800,
}


def build_session_factory(db_url: str, *, create_tables: bool = False) -> sessionmaker:
    engine = create_engine(db_url, **_ENGINE_OPTIONS)
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _jsonable(record: Mapping[str, Any]) -> dict[str, Any]:
    return {key: str(value) if isinstance(value, UUID) else value for key, value in record.items()}


def _optional_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        return None


class SqlSink:
    """Stores sources, batches and raw records in a relational database.

    Every public method is a coroutine; the blocking ORM work runs in a worker
    thread via :func:`asyncio.to_thread`.
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def create_or_update_source(
        self,
        metadata: Mapping[str, Any],
        kind: RecordKind = RecordKind.WHOLESALE,
    ) -> SourceIdentity | None:
        try:
            return await asyncio.to_thread(self._upsert_source, dict(metadata), kind)
        except Exception as exc:
            LOGGER.error("Failed to create/update source '%s': %s", metadata.get("name"), exc)
            return None

    async def push_batch(self, source_id: Any, run_hash: str, records: Sequence[Mapping[str, Any]]) -> int:
        if not records:
            return 0
        try:
            return await asyncio.to_thread(self._insert_records, source_id, run_hash, list(records))
        except Exception as exc:
            raise SinkError(f"Failed to store {len(records)} records: {exc}") from exc

    async def complete(self, source_id: Any, run_hash: str, date: str | None = None) -> Mapping[str, Any]:
        try:
            return await asyncio.to_thread(self._complete_batch, source_id, run_hash, date)
        except Exception as exc:
            raise SinkError(f"Failed to complete batch {run_hash}: {exc}") from exc

    async def create_alarm(self, source_id: Any, message: str, url: str) -> Mapping[str, Any] | None:
        try:
            return await asyncio.to_thread(self._insert_alarm, source_id, message, url)
        except Exception as exc:
            LOGGER.error("Failed to store alarm for source '%s': %s", source_id, exc)
            return None

    def _upsert_source(self, metadata: dict[str, Any], kind: RecordKind) -> SourceIdentity:
        name = metadata.get("name")
        if not name:
            raise ValueError("Source metadata requires a name")

        with self._session_factory() as session:
            source = (
                session.query(Source)
                .filter(Source.name == name, Source.kind == kind.value)
                .one_or_none()
            )
            if source is None:
                source = Source(id=generate_uuid7(), name=name, kind=kind.value)
                session.add(source)
                LOGGER.info("Registering new source '%s'", name)

            source.country = metadata.get("country")
            source.language = metadata.get("language")
            source.currency = metadata.get("currency")
            source.website = metadata.get("url")
            source.description = metadata.get("description")
            source.frequency = metadata.get("frequency") or "d"
            source.is_history_supported = bool(metadata.get("is_history_supported"))
            source.method = metadata.get("method") or "a"
            session.flush()
            identity = SourceIdentity(id=source.id, name=source.name)
            session.commit()
            return identity

    def _get_or_create_batch(self, session: Session, source_id: Any, run_hash: str) -> SourceBatch:
        batch = session.query(SourceBatch).filter(SourceBatch.hash == run_hash).one_or_none()
        if batch is None:
            batch = SourceBatch(id=generate_uuid7(), source_id=_as_uuid(source_id), hash=run_hash, record_count=0)
            session.add(batch)
            session.flush()
        return batch

    def _insert_records(self, source_id: Any, run_hash: str, records: list[Mapping[str, Any]]) -> int:
        with self._session_factory() as session:
            batch = self._get_or_create_batch(session, source_id, run_hash)
            for record in records:
                session.add(
                    RawPrice(
                        batch_id=batch.id,
                        date=_optional_date(record.get("date")),
                        product_raw=record.get("productRaw") or record.get("name"),
                        country_id=record.get("countryId"),
                        currency=record.get("currency"),
                        page_url=record.get("pageUrl"),
                        payload=_jsonable(record),
                    )
                )
            batch.record_count = (batch.record_count or 0) + len(records)
            session.commit()
        return len(records)

    def _complete_batch(self, source_id: Any, run_hash: str, run_date: str | None) -> Mapping[str, Any]:
        with self._session_factory() as session:
            batch = self._get_or_create_batch(session, source_id, run_hash)
            batch.date = _optional_date(run_date)
            batch.completed_at = datetime.utcnow()
            batch_id = batch.id
            session.commit()
        LOGGER.info("Completed batch %s for source '%s'", run_hash, source_id)
        return {"id": str(batch_id)}

    def _insert_alarm(self, source_id: Any, message: str, url: str) -> Mapping[str, Any]:
        with self._session_factory() as session:
            alarm = Alarm(
                id=generate_uuid7(),
                source_id=_as_uuid(source_id),
                type=ALARM_TYPE_UI_CHANGE,
                date=date.today(),
                description=message,
                detail_url=url,
            )
            session.add(alarm)
            session.commit()
            return {"id": str(alarm.id)}
