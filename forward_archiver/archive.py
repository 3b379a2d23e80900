"""Archive file naming and temporary file handling."""

from __future__ import annotations

import asyncio
import email.parser
import email.utils
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import structlog

logger = structlog.get_logger()

ARCHIVE_CONTENT_TYPE = "message/rfc822"

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")


def sanitize_name(name: str, max_length: int = 50) -> str:
    """Make *name* safe as a container or file name.

    Drops ``<>:"/\\|?*`` and control characters, turns whitespace runs into
    ``-``, cuts to *max_length*, strips leading dots. Falls back to
    ``unnamed`` when nothing is left.
    """
    cleaned = _INVALID_CHARS.sub("", name)
    cleaned = _WHITESPACE.sub("-", cleaned)
    cleaned = cleaned[:max_length].lstrip(".").strip()
    return cleaned or "unnamed"


def subject_slug(subject: str | None) -> str:
    return sanitize_name(subject) if subject else "No-Subject"


def item_date(raw_bytes: bytes) -> datetime:
    """The item's ``Date`` header in UTC, or now when missing or unparseable."""
    headers = email.parser.BytesHeaderParser().parsebytes(raw_bytes)
    value = headers.get("Date")
    if value:
        try:
            parsed = email.utils.parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    return datetime.now(UTC)


def leaf_container_name(moment: datetime, subject: str | None) -> str:
    """``YYYY-MM-DDTHH-MM-SS_<slug>``."""
    stamp = moment.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{stamp}_{subject_slug(subject)}"


def archive_filename(moment: datetime, subject: str | None) -> str:
    """``YYYY-MM-DD_<slug>.eml``."""
    return f"{moment.astimezone(UTC).strftime('%Y-%m-%d')}_{subject_slug(subject)}.eml"


@dataclass
class ArchiveFile:
    path: Path
    file_name: str
    size_bytes: int
    content_type: str = ARCHIVE_CONTENT_TYPE


async def write_archive_file(temp_dir: str | Path, uid: int, file_name: str, raw_bytes: bytes) -> ArchiveFile:
    """Write the raw source to ``<temp_dir>/<uid>-<file_name>``."""
    directory = Path(temp_dir)
    path = directory / f"{uid}-{file_name}"

    def _write() -> None:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(raw_bytes)

    await asyncio.to_thread(_write)
    logger.debug("archive_file_written", uid=uid, path=str(path), size_bytes=len(raw_bytes))
    return ArchiveFile(path=path, file_name=file_name, size_bytes=len(raw_bytes))


async def remove_archive_file(path: Path) -> bool:
    """Delete a temp file. Failures are logged, never raised."""
    try:
        await asyncio.to_thread(path.unlink, True)
    except OSError as exc:
        logger.warning("archive_file_cleanup_failed", path=str(path), error=str(exc))
        return False
    return True
