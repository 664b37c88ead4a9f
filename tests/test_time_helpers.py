import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import maia  # noqa: E402


@pytest.mark.parametrize(
    "start,end,expected",
    [
        ("2017-07-13T20:00:00Z", "2017-07-13T20:04:30Z", timedelta(seconds=30)),
        ("2017-07-13T20:00:00Z", "2017-07-13T20:01:00Z", timedelta(seconds=15)),
        ("2017-07-13T20:00:00Z", "2017-07-13T21:00:00Z", timedelta(minutes=10)),
        ("2017-07-13T18:00:00Z", "2017-07-13T21:00:00Z", timedelta(minutes=20)),
        ("2017-07-12T21:00:00Z", "2017-07-13T21:00:00Z", timedelta(hours=3)),
        ("2017-06-13T21:00:00Z", "2017-07-13T21:00:00Z", timedelta(days=7)),
    ],
)
def test_select_step_picks_next_ladder_value(start, end, expected):
    assert maia.select_step(start, end) == expected


def test_select_step_beyond_ladder_uses_tenth_of_range():
    assert maia.select_step("2014-01-01T00:00:00Z", "2016-09-27T00:00:00Z") == timedelta(days=100)


def test_select_step_is_strictly_greater():
    # a tenth of 10 minutes is exactly 60s, so the next rung wins
    assert maia.select_step("2017-07-13T20:00:00Z", "2017-07-13T20:10:00Z") == timedelta(seconds=90)


def test_format_seconds():
    assert maia.format_seconds(timedelta(minutes=5)) == "300s"
    assert maia.format_seconds(timedelta(seconds=90.7)) == "90s"
    assert maia.format_seconds(None) == ""
    assert maia.format_seconds(timedelta(0)) == ""


def test_parse_time_rfc3339_and_unix_date():
    assert maia.parse_time("2017-07-13T20:10:00Z") == datetime(2017, 7, 13, 20, 10, tzinfo=timezone.utc)
    assert maia.parse_time("2017-07-13T22:10:00+02:00") == datetime(
        2017, 7, 13, 20, 10, tzinfo=timezone.utc
    )
    assert maia.parse_time("Thu Jul 13 20:10:00 UTC 2017") == datetime(
        2017, 7, 13, 20, 10, tzinfo=timezone.utc
    )
    assert maia.parse_time("Mon Jan  2 15:04:05 MST 2006") == datetime(
        2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc
    )


@pytest.mark.parametrize("raw", ["", "yesterday", "2017-07-13", "2017-07-13T20:10:00", "1499976630"])
def test_parse_time_rejects_other_formats(raw):
    with pytest.raises(maia.ConfigurationError):
        maia.parse_time(raw)


def test_default_time_range_fills_missing_bounds():
    now = datetime(2017, 7, 13, 21, 0, tzinfo=timezone.utc)
    assert maia.default_time_range("", "", now=now) == ("2017-07-13T18:00:00Z", "2017-07-13T21:00:00Z")
    assert maia.default_time_range("", "2017-07-13T12:00:00Z", now=now) == (
        "2017-07-13T09:00:00Z",
        "2017-07-13T12:00:00Z",
    )
    assert maia.default_time_range("2017-07-13T00:00:00Z", "", now=now) == (
        "2017-07-13T00:00:00Z",
        "2017-07-13T21:00:00Z",
    )
    assert maia.default_time_range(
        "Thu Jul 13 20:10:00 UTC 2017", "2017-07-13T21:00:00.5Z", now=now
    ) == ("Thu Jul 13 20:10:00 UTC 2017", "2017-07-13T21:00:00.5Z")


def test_default_time_range_rejects_garbage():
    with pytest.raises(maia.ConfigurationError):
        maia.default_time_range("last tuesday", "")
    with pytest.raises(maia.ConfigurationError):
        maia.default_time_range("2017-07-13T20:00:00Z", "soon")


def test_format_rfc3339_zones_and_fractions():
    ts = datetime(2017, 7, 3, 7, 26, 23, 997000, tzinfo=timezone.utc)
    assert maia.format_rfc3339(ts, timezone.utc) == "2017-07-03T07:26:23Z"
    assert maia.format_rfc3339(ts, timezone.utc, fractional=True) == "2017-07-03T07:26:23.997Z"
    assert (
        maia.format_rfc3339(ts, timezone(timedelta(hours=2)), fractional=True)
        == "2017-07-03T09:26:23.997+02:00"
    )
    assert maia.format_rfc3339(ts, timezone(timedelta(hours=-5, minutes=-30))) == "2017-07-03T01:56:23-05:30"


def test_redact_sensitive_text_masks_tokens_and_passwords():
    raw = (
        "X-Auth-Token: gAAAAABtoken "
        '{"password": "hunter2", "secret": "s3cr3t"} '
        "https://maia.example.com/?token=abc123&query=up"
    )
    cooked = maia.redact_sensitive_text(raw)
    assert "gAAAAABtoken" not in cooked
    assert "hunter2" not in cooked
    assert "s3cr3t" not in cooked
    assert "abc123" not in cooked
    assert "query=up" in cooked
    assert "[REDACTED]" in cooked


def test_configure_logging_levels(monkeypatch):
    monkeypatch.delenv("MAIA_DEBUG", raising=False)
    maia.configure_logging("info", force=True)
    assert maia.logger.level == logging.INFO
    assert maia.logger.propagate is False
    assert len(maia.logger.handlers) == 1

    monkeypatch.setenv("MAIA_DEBUG", "1")
    maia.configure_logging("WARNING")
    assert maia.logger.level == logging.DEBUG
    assert len(maia.logger.handlers) == 1


def test_configure_logging_rejects_unknown_level(monkeypatch):
    monkeypatch.delenv("MAIA_DEBUG", raising=False)
    with pytest.raises(maia.ConfigurationError, match="invalid log level"):
        maia.configure_logging("LOUD")
