"""Celery tasks dispatching source crawls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import Task

from .celery_app import celery_app
from .config import load_settings
from .crawler import RUN_MODES, CrawlerInitializationError, run_mode
from .sources import get_source

LOGGER = logging.getLogger(__name__)


@celery_app.task(
    name="pricecrawler.crawl_source",
    bind=True,
    autoretry_for=(CrawlerInitializationError,),
    retry_backoff=True,
    max_retries=3,
)
def crawl_source_task(
    self: Task,
    slug: str,
    mode: str = "once",
    start: str | None = None,
    end: str | None = None,
) -> dict[str, Any]:
    if mode not in RUN_MODES:
        LOGGER.warning("Skipping crawl of %s: unknown mode %r", slug, mode)
        return {"status": "skipped", "reason": "unknown_mode"}

    try:
        entry = get_source(slug)
    except KeyError:
        LOGGER.warning("Skipping crawl of unknown source %s", slug)
        return {"status": "skipped", "reason": "unknown_source"}

    crawler = entry.build_crawler(load_settings())
    result = asyncio.run(run_mode(crawler, mode, start=start, end=end))
    LOGGER.info("Crawl of %s (%s) finished: %s", slug, mode, result)

    if result is None:
        return {"status": "incomplete", "source": slug, "mode": mode}
    return {"status": "ok", "source": slug, "mode": mode, "result": result}


__all__ = ["crawl_source_task"]
