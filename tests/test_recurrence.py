"""Recurrence calendar tests."""

from datetime import datetime, timezone

import pytest

from walletqueue.recurrence import Calendar, is_calendar, parse_calendar


def ts(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class TestParseCalendar:
    def test_adjectives(self):
        assert parse_calendar("monthly") == Calendar("month")
        assert parse_calendar(" Weekly ") == Calendar("week")

    def test_every_n_units(self):
        assert parse_calendar("every 3 days") == Calendar("day", 3)
        assert parse_calendar("every 1 year") == Calendar("year")

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_calendar("fortnightly-ish")

    def test_string_round_trip(self):
        for text in ("daily", "every 2 weeks", "yearly"):
            assert parse_calendar(text).to_calendar_string() == text


class TestCalendar:
    def test_invalid_unit(self):
        with pytest.raises(ValueError):
            Calendar("decade")

    def test_human_readable(self):
        assert Calendar("month").to_human_readable() == "Monthly"
        assert Calendar("day", 3).to_human_readable() == "Every 3 days"
        assert Calendar("day", 3).to_human_readable(abbreviated=True) == "3d"

    def test_next_occurrence_fixed_step(self):
        assert Calendar("day").next_occurrence(ts(2024, 1, 1)) == ts(2024, 1, 2)
        assert Calendar("week", 2).next_occurrence(ts(2024, 1, 1)) == ts(2024, 1, 15)

    def test_next_occurrence_month_clamps_day(self):
        assert Calendar("month").next_occurrence(ts(2024, 1, 31)) == ts(2024, 2, 29)

    def test_next_occurrence_year(self):
        assert Calendar("year").next_occurrence(ts(2023, 6, 1)) == ts(2024, 6, 1)

    def test_is_calendar(self):
        assert is_calendar(Calendar("day"))
        assert not is_calendar(Calendar)
        assert not is_calendar("daily")
