"""Celery application setup for scheduled crawls."""

from __future__ import annotations

import os
from typing import Optional

from celery import Celery
from celery.schedules import crontab

from .config import _env_bool


def _sqla_broker_from_db(db_url: Optional[str]) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith("sqla+") else f"sqla+{db_url}"


def _db_backend_from_db(db_url: Optional[str]) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith("db+") else f"db+{db_url}"


def build_beat_schedule() -> dict[str, dict]:
    """One daily crawl entry per source that declares a schedule."""

    from .sources import get_source, list_sources

    schedule: dict[str, dict] = {}
    for slug in list_sources():
        entry = get_source(slug)
        if not entry.schedule:
            continue
        schedule[f"crawl-{slug}"] = {
            "task": "pricecrawler.crawl_source",
            "schedule": crontab(**entry.schedule),
            "args": (slug, "once"),
        }
    return schedule


def create_celery_app() -> Celery:
    """Instantiate the Celery app with environment driven configuration."""

    db_url = os.getenv("CRAWLER_DATABASE_URL")
    broker_url = os.getenv("CRAWLER_CELERY_BROKER_URL")
    backend_url = os.getenv("CRAWLER_CELERY_RESULT_BACKEND")

    if broker_url is None:
        broker_url = _sqla_broker_from_db(db_url)
    if backend_url is None:
        backend_url = _db_backend_from_db(db_url)

    if broker_url is None:
        broker_url = "memory://"
    if backend_url is None:
        backend_url = "cache+memory://"

    app = Celery("pricecrawler", broker=broker_url, backend=backend_url, include=["pricecrawler.tasks"])
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_always_eager=_env_bool("CRAWLER_CELERY_TASK_ALWAYS_EAGER", True),
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        # Crawls are long and browser-heavy; one at a time per worker process.
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        beat_schedule=build_beat_schedule(),
    )
    return app


celery_app = create_celery_app()


__all__ = ["build_beat_schedule", "celery_app", "create_celery_app"]
