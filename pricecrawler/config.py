"""Configuration utilities shared by all crawlers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_ARCHIVE_ROOT = Path("storage")
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/103.0.0.0 Safari/537.36"
)
PRODUCTION_ENVIRONMENTS = frozenset({"prod", "production"})


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return max(0, parsed)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return max(0.0, parsed)


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(slots=True)
class BrowserConfig:
    """Launch options for the headless browser shared by a queue."""

    headless: bool = True
    stealth: bool = False
    timeout: float = 30.0
    args: tuple[str, ...] = ()
    viewport: tuple[int, int] = (1400, 900)
    user_agent: str = DEFAULT_USER_AGENT

    # Chromium refuses to start inside most containers without it.
    REQUIRED_ARGS = ("--no-sandbox",)

    def launch_args(self) -> list[str]:
        merged = list(self.args)
        for arg in self.REQUIRED_ARGS:
            if arg not in merged:
                merged.append(arg)
        return merged

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout * 1000)


@dataclass(slots=True)
class StatsOptions:
    """Periodic queue statistics emission."""

    interval: float | None = 10.0
    report_interval: float | None = None


@dataclass(slots=True)
class QueueOptions:
    """Per-crawler queue wiring: worker factories, counts and tuning."""

    producer_factory: Any
    consumer_factory: Any
    producer_count: int = 1
    consumer_count: int = 1
    producer_extra: Dict[str, Any] = field(default_factory=dict)
    consumer_extra: Dict[str, Any] = field(default_factory=dict)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    stats: StatsOptions = field(default_factory=StatsOptions)
    poll_interval: float = 0.1
    max_consecutive_failures: int = 100
    job_timeout: float | None = None
    stats_reporter: Any = None


@dataclass(slots=True)
class CrawlerSettings:
    """Environment driven settings for building crawlers and collaborators."""

    environment: str = "local"
    data_endpoint: Optional[str] = None
    data_token: Optional[str] = None
    database_url: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    archive_root: Path = DEFAULT_ARCHIVE_ROOT
    user_agent: str = DEFAULT_USER_AGENT
    browser_headless: bool = True
    browser_timeout: float = 30.0
    request_timeout: float = 30.0
    pusher_threshold: int = 100

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in PRODUCTION_ENVIRONMENTS

    def browser_config(self, **overrides: Any) -> BrowserConfig:
        config = BrowserConfig(
            headless=self.browser_headless,
            timeout=self.browser_timeout,
            user_agent=self.user_agent,
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config


def load_settings() -> CrawlerSettings:
    """Load crawler settings from ``CRAWLER_*`` environment variables."""

    defaults = CrawlerSettings()
    archive_root_raw = _env_str("CRAWLER_ARCHIVE_ROOT")
    return CrawlerSettings(
        environment=_env_str("CRAWLER_ENV") or defaults.environment,
        data_endpoint=_env_str("CRAWLER_DATA_ENDPOINT"),
        data_token=_env_str("CRAWLER_DATA_TOKEN"),
        database_url=_env_str("CRAWLER_DATABASE_URL"),
        slack_webhook_url=_env_str("CRAWLER_SLACK_WEBHOOK_URL"),
        archive_root=Path(archive_root_raw).expanduser() if archive_root_raw else defaults.archive_root,
        user_agent=_env_str("CRAWLER_USER_AGENT") or defaults.user_agent,
        browser_headless=_env_bool("CRAWLER_BROWSER_HEADLESS", defaults.browser_headless),
        browser_timeout=_env_float("CRAWLER_BROWSER_TIMEOUT", defaults.browser_timeout),
        request_timeout=_env_float("CRAWLER_REQUEST_TIMEOUT", defaults.request_timeout),
        pusher_threshold=max(1, _env_int("CRAWLER_PUSHER_THRESHOLD", defaults.pusher_threshold)),
    )
