"""Run reports delivered to a Slack incoming webhook."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

import httpx

from .config import CrawlerSettings

LOGGER = logging.getLogger(__name__)

_WEBHOOK_SECRET_RE = re.compile(r"(hooks\.slack\.com/services/)[^\s'\"]+")


def _mask_webhook(text: str) -> str:
    return _WEBHOOK_SECRET_RE.sub(r"\1<redacted>", text)


class RunNotifier(Protocol):
    """Observer told about the outcome of every crawl run."""

    async def report(
        self,
        text: str,
        fields: Sequence[tuple[str, str]] = (),
        *,
        title: str | None = None,
        title_link: str | None = None,
        description: str | None = None,
    ) -> None:
        ...


@dataclass(slots=True)
class SlackNotifier:
    """Post crawl reports to Slack."""

    webhook_url: str
    timeout: float = 10.0
    transport: Optional[httpx.AsyncBaseTransport] = None

    def build_payload(
        self,
        text: str,
        fields: Sequence[tuple[str, str]] = (),
        *,
        title: str | None = None,
        title_link: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        attachment: dict[str, Any] = {
            "fields": [{"title": name, "value": value, "short": True} for name, value in fields],
        }
        if title:
            attachment["title"] = title
        if title_link:
            attachment["title_link"] = title_link
        if description:
            attachment["text"] = description
        return {"text": text, "attachments": [attachment]}

    async def report(
        self,
        text: str,
        fields: Sequence[tuple[str, str]] = (),
        *,
        title: str | None = None,
        title_link: str | None = None,
        description: str | None = None,
    ) -> None:
        if not text.strip():
            LOGGER.warning("Skipping Slack report because message text is empty")
            return

        payload = self.build_payload(text, fields, title=title, title_link=title_link, description=description)
        kwargs: dict[str, Any] = {"timeout": self.timeout}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Failed to send Slack report: %s", _mask_webhook(str(exc)))


def build_notifier(settings: CrawlerSettings | Mapping[str, Any] | None) -> RunNotifier | None:
    if not settings:
        return None
    webhook_url = (
        settings.get("slack_webhook_url") if isinstance(settings, Mapping) else settings.slack_webhook_url
    )
    if webhook_url:
        return SlackNotifier(webhook_url=webhook_url)
    return None
