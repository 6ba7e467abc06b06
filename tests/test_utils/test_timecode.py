"""Tests for timestamp parsing and formatting."""

import math

import pytest

from cutflow.utils.timecode import (
    format_ass_time,
    format_timestamp,
    normalize_timestamp,
    parse_timestamp,
)


class TestParseTimestamp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("00:01:23.456", 83.456),
            ("01:00:00", 3600.0),
            ("01:30.5", 90.5),
            ("01:30", 90.0),
            ("12.250", 12.25),
            ("42", 42.0),
            (7, 7.0),
            (2.5, 2.5),
            ("01:30,500", 90.5),
            ("00:06:500", 6.5),
            ("01:02:75", 62.075),
            ("  00:00:01.2  ", 1.2),
        ],
    )
    def test_accepted_formats(self, value, expected):
        assert parse_timestamp(value) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "value",
        ["", "   ", "abc", "1:2:3:4", "00:75.000", "-5", -1.0, math.inf, True, "01:60:00"],
    )
    def test_rejected(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)

    def test_fraction_truncated_to_milliseconds(self):
        assert parse_timestamp("00:00:01.23456") == 1.234


class TestFormatting:
    def test_format_timestamp(self):
        assert format_timestamp(3725.5) == "01:02:05.500"
        assert format_timestamp(0) == "00:00:00.000"

    def test_format_timestamp_rounds_milliseconds(self):
        assert format_timestamp(59.9996) == "00:01:00.000"

    def test_format_timestamp_rejects_negative(self):
        with pytest.raises(ValueError):
            format_timestamp(-0.1)

    def test_format_ass_time(self):
        assert format_ass_time(3725.456) == "1:02:05.46"
        assert format_ass_time(-2.0) == "0:00:00.00"

    def test_normalize(self):
        assert normalize_timestamp("1:30,25") == "00:01:30.250"
        assert normalize_timestamp(61) == "00:01:01.000"
