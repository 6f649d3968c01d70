"""Tests for timestamp helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from collection_sync.services.datetime_service import format_iso, now_iso, now_utc


class TestTimestamps:
    def test_now_is_aware_utc(self) -> None:
        assert now_utc().utcoffset() == timedelta(0)

    def test_naive_is_treated_as_utc(self) -> None:
        assert format_iso(datetime(2026, 2, 2, 22, 21, 29)) == "2026-02-02T22:21:29+00:00"

    def test_offset_is_kept(self) -> None:
        dt = datetime(2026, 2, 2, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_iso(dt) == "2026-02-02T10:00:00+02:00"

    def test_now_iso_parses_back(self) -> None:
        parsed = datetime.fromisoformat(now_iso())
        assert parsed.tzinfo is not None
        assert abs(now_utc() - parsed) < timedelta(minutes=1)
        assert parsed.astimezone(UTC).tzinfo == UTC
