from datetime import datetime, timezone

from parser_utils import parse_date


def test_parse_date_without_weekday():
    assert parse_date("17 Nov 2025 00:00:00 +0000") == datetime(2025, 11, 17, tzinfo=timezone.utc)


def test_parse_rfc2822_with_weekday_and_offset():
    assert parse_date("Sat, 15 Nov 2025 18:00:00 +0200") == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)


def test_parse_iso8601_zulu():
    assert parse_date("2025-11-15T16:00:00Z") == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)


def test_parse_iso8601_with_offset():
    assert parse_date("2025-11-15T11:00:00-05:00") == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)


def test_timezone_abbreviation_substitution():
    assert parse_date("Sat, 15 Nov 2025 08:00:00 PST") == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)
    assert parse_date("Sat, 15 Nov 2025 12:00:00 EDT") == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)


def test_european_and_asian_abbreviations():
    assert parse_date("Mon, 15 Jan 2024 10:30:00 CEST") == datetime(2024, 1, 15, 8, 30, tzinfo=timezone.utc)
    assert parse_date("Mon, 15 Jan 2024 10:30:00 BST") == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
    assert parse_date("Mon, 15 Jan 2024 18:30:00 JST") == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
    assert parse_date("Mon, 15 Jan 2024 16:00:00 IST") == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def test_naive_date_is_utc():
    parsed = parse_date("2025-11-15 16:00:00")
    assert parsed == datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc)
    assert parsed.tzinfo is not None


def test_garbage_returns_none():
    assert parse_date("not a date") is None
    assert parse_date("") is None
    assert parse_date(None) is None
