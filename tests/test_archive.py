"""Tests for forward_archiver.archive."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest

from tests.conftest import _build_plain_email

from forward_archiver.archive import (
    ARCHIVE_CONTENT_TYPE,
    archive_filename,
    item_date,
    leaf_container_name,
    remove_archive_file,
    sanitize_name,
    subject_slug,
    write_archive_file,
)


class TestSanitizeName:
    def test_replaces_whitespace_and_invalid_chars(self):
        assert sanitize_name('Re: Q1 "report" / final?') == "Re-Q1-report-final"

    def test_truncates(self):
        assert len(sanitize_name("x" * 200)) == 50
        assert sanitize_name("abcdef", max_length=3) == "abc"

    def test_strips_leading_dots(self):
        assert sanitize_name("..hidden") == "hidden"

    def test_empty_fallback(self):
        assert sanitize_name("???") == "unnamed"

    def test_subject_slug_empty(self):
        assert subject_slug("") == "No-Subject"
        assert subject_slug(None) == "No-Subject"


class TestNaming:
    def test_leaf_container_name(self):
        moment = datetime(2025, 3, 10, 9, 30, 5, tzinfo=UTC)
        assert leaf_container_name(moment, "Invoice March") == "2025-03-10T09-30-05_Invoice-March"

    def test_leaf_container_name_converts_to_utc(self):
        moment = datetime(2025, 3, 11, 1, 30, tzinfo=timezone(timedelta(hours=2)))
        assert leaf_container_name(moment, "") == "2025-03-10T23-30-00_No-Subject"

    def test_archive_filename(self):
        moment = datetime(2025, 3, 10, 9, 30, tzinfo=UTC)
        assert archive_filename(moment, "Invoice") == "2025-03-10_Invoice.eml"


class TestItemDate:
    def test_uses_date_header_in_utc(self):
        raw = _build_plain_email(date="Mon, 10 Mar 2025 11:30:00 +0200")
        assert item_date(raw) == datetime(2025, 3, 10, 9, 30, tzinfo=UTC)

    def test_falls_back_to_now(self):
        raw = _build_plain_email(date="not a date")
        before = datetime.now(UTC)
        assert item_date(raw) >= before


class TestArchiveFile:
    @pytest.mark.asyncio
    async def test_write_and_remove(self, tmp_path: Path):
        archive = await write_archive_file(tmp_path / "scratch", 42, "2025-03-10_Invoice.eml", b"raw source")
        assert archive.path == tmp_path / "scratch" / "42-2025-03-10_Invoice.eml"
        assert archive.path.read_bytes() == b"raw source"
        assert archive.size_bytes == 10
        assert archive.content_type == ARCHIVE_CONTENT_TYPE

        assert await remove_archive_file(archive.path) is True
        assert not archive.path.exists()

    @pytest.mark.asyncio
    async def test_remove_missing_file_is_ok(self, tmp_path: Path):
        assert await remove_archive_file(tmp_path / "gone.eml") is True
