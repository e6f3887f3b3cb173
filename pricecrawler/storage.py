"""Raw document archive kept on the local filesystem."""

from __future__ import annotations

import logging
import re
from datetime import date
from pathlib import Path

from .util import format_date, snake_case

LOGGER = logging.getLogger(__name__)

ARCHIVE_PREFIX = Path("archive") / "crawl-data"
_SEQUENCE_RE = re.compile(r"^s(?P<sequence>\d+)\.")


def _sequence_key(path: Path) -> tuple[int, str]:
    match = _SEQUENCE_RE.match(path.name)
    return (int(match.group("sequence")) if match else 0, path.name)


class FilesystemArchive:
    """Writes raw crawled documents under ``root`` for later replay.

    Layout: ``archive/crawl-data/<name>/v<version>/[<date>/]<crawl day>/s<seq>.<ext>``.
    Writes are skipped when the archive is disabled, which is the case
    outside of production.
    """

    def __init__(self, root: Path, *, enabled: bool = True) -> None:
        self._root = Path(root)
        self._enabled = enabled

    @property
    def root(self) -> Path:
        return self._root

    @property
    def enabled(self) -> bool:
        return self._enabled

    def document_path(
        self,
        name: str,
        *,
        sequence: int = 1,
        date: str | date | None = None,
        extension: str = "html",
        version: int = 1,
        crawled_on: date | None = None,
    ) -> Path:
        base = self._root / ARCHIVE_PREFIX / snake_case(name) / f"v{version}"
        if date:
            base = base / format_date(date)
        crawl_day = format_date(crawled_on or _today())
        return base / crawl_day / f"s{sequence}.{extension}"

    def archive(
        self,
        name: str,
        document: str | bytes,
        *,
        sequence: int = 1,
        date: str | date | None = None,
        extension: str = "html",
        version: int = 1,
    ) -> Path | None:
        if not document:
            raise ValueError("Document is required")
        if not isinstance(document, (str, bytes)):
            raise ValueError("Document must be str or bytes")
        if not self._enabled:
            return None

        path = self.document_path(name, sequence=sequence, date=date, extension=extension, version=version)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = document.encode("utf-8") if isinstance(document, str) else document
        path.write_bytes(payload)
        LOGGER.debug("Archived %d bytes to %s", len(payload), path)
        return path

    def list_documents(
        self,
        name: str,
        date: str | date,
        *,
        extension: str = "html",
        version: int = 1,
    ) -> list[str | bytes]:
        """Return archived documents for ``date`` from the most recent crawl day."""

        base = self._root / ARCHIVE_PREFIX / snake_case(name) / f"v{version}" / format_date(date)
        if not base.is_dir():
            LOGGER.info("No archived documents under %s", base)
            return []

        entries = sorted(base.iterdir(), key=lambda entry: entry.name, reverse=True)
        if not entries:
            return []

        latest = entries[0]
        if latest.is_dir():
            files = [entry for entry in latest.iterdir() if entry.is_file()]
        else:
            files = [entry for entry in entries if entry.is_file()]

        documents: list[str | bytes] = []
        for path in sorted(files, key=_sequence_key):
            if path.suffix != f".{extension}":
                continue
            if extension == "html":
                documents.append(path.read_text(encoding="utf-8"))
            else:
                documents.append(path.read_bytes())
        return documents


def _today() -> date:
    return date.today()
