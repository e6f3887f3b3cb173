"""Source registry and crawler assembly from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from ..api import DataApiClient, GraphQLSink
from ..config import CrawlerSettings, QueueOptions
from ..crawler import (
    DEFAULT_FIRST_DATE,
    AlarmSink,
    Crawler,
    CrawlerConfigurationError,
    IterationMode,
    SourceDefinition,
    SourceRegistry,
)
from ..notifications import RunNotifier, build_notifier
from ..persistence import SqlSink, build_session_factory
from ..pusher import Sink
from ..records import RecordKind
from ..storage import FilesystemArchive
from . import tapm

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Collaborators:
    """External systems a crawler talks to."""

    registry: SourceRegistry
    sink: Sink
    alarms: Optional[AlarmSink] = None
    notifier: Optional[RunNotifier] = None
    archive: Optional[FilesystemArchive] = None


@dataclass(slots=True)
class SourceEntry:
    """Configuration for a supported source."""

    slug: str
    definition: SourceDefinition
    timezone: str
    queue_options_factory: Callable[[CrawlerSettings], QueueOptions]
    mode: IterationMode = IterationMode.SINGLE
    kind: RecordKind = RecordKind.WHOLESALE
    first_date: str = DEFAULT_FIRST_DATE
    schedule: Mapping[str, str] = field(default_factory=dict)

    def build_crawler(
        self,
        settings: CrawlerSettings,
        collaborators: Collaborators | None = None,
        **overrides: Any,
    ) -> Crawler:
        """Instantiate the crawler for this source."""

        collaborators = collaborators or build_collaborators(settings, self.kind)
        options = self.queue_options_factory(settings)
        options.browser = settings.browser_config()
        kwargs: Dict[str, Any] = {
            "timezone": self.timezone,
            "registry": collaborators.registry,
            "sink": collaborators.sink,
            "alarms": collaborators.alarms,
            "notifier": collaborators.notifier,
            "archive": collaborators.archive,
            "kind": self.kind,
            "mode": self.mode,
            "first_date": self.first_date,
            "pusher_threshold": settings.pusher_threshold,
        }
        kwargs.update(overrides)
        return Crawler(self.definition, options, **kwargs)


def build_collaborators(settings: CrawlerSettings, kind: RecordKind = RecordKind.WHOLESALE) -> Collaborators:
    """Wire the registry and sink from settings; the data API wins over a database."""

    notifier = build_notifier(settings) if settings.is_production else None
    archive = FilesystemArchive(settings.archive_root, enabled=settings.is_production)

    if settings.data_endpoint:
        client = DataApiClient(
            settings.data_endpoint,
            token=settings.data_token,
            timeout=settings.request_timeout,
        )
        return Collaborators(
            registry=client,
            sink=GraphQLSink(client, kind),
            alarms=client,
            notifier=notifier,
            archive=archive,
        )

    if settings.database_url:
        store = SqlSink(build_session_factory(settings.database_url, create_tables=True))
        return Collaborators(registry=store, sink=store, alarms=store, notifier=notifier, archive=archive)

    raise CrawlerConfigurationError(
        "No sink configured; set CRAWLER_DATA_ENDPOINT or CRAWLER_DATABASE_URL"
    )


_SOURCE_REGISTRY: Dict[str, SourceEntry] = {
    "tapm": SourceEntry(
        slug="tapm",
        definition=tapm.DEFINITION,
        timezone=tapm.TIMEZONE,
        queue_options_factory=lambda settings: tapm.queue_options(
            user_agent=settings.user_agent,
            timeout=settings.request_timeout,
        ),
        mode=tapm.MODE,
        schedule={"minute": "30", "hour": "6"},
    ),
    "tapm-archive": SourceEntry(
        slug="tapm-archive",
        definition=tapm.DEFINITION,
        timezone=tapm.TIMEZONE,
        queue_options_factory=lambda settings: tapm.archive_queue_options(),
        mode=IterationMode.DATE_RANGE,
    ),
}


def get_source(slug: str) -> SourceEntry:
    """Return the registered source entry for the given slug."""

    try:
        return _SOURCE_REGISTRY[slug]
    except KeyError as exc:
        raise KeyError(f"Unknown source '{slug}'") from exc


def list_sources() -> list[str]:
    """Return a sorted list of supported source slugs."""

    return sorted(_SOURCE_REGISTRY)


__all__ = [
    "Collaborators",
    "SourceEntry",
    "build_collaborators",
    "get_source",
    "list_sources",
]
