"""Tests for the utils module."""

import pytest

from mediarenderer.utils import format_time, parse_time, prettify


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (0, "00:00:00"),
        (59, "00:00:59"),
        (61, "00:01:01"),
        (3723, "01:02:03"),
        (3723.9, "01:02:03"),
        (360000, "100:00:00"),
    ],
)
def test_format_time(seconds, expected):
    assert format_time(seconds) == expected


@pytest.mark.parametrize(
    "time_string, expected",
    [
        ("0:00:00", 0),
        ("0:03:00", 180),
        ("01:02:03", 3723),
        ("1:02:03.500", 3723.5),
        ("02:30", 150),
    ],
)
def test_parse_time(time_string, expected):
    result = parse_time(time_string)
    assert result == expected
    assert isinstance(result, type(expected))


@pytest.mark.parametrize("bad_time", ["NOT_IMPLEMENTED", "", "12", "1:xx:00"])
def test_parse_time_invalid(bad_time):
    with pytest.raises(ValueError):
        parse_time(bad_time)


def test_prettify():
    assert prettify("<a><b>c</b></a>") == (
        '<?xml version="1.0" ?>\n<a>\n  <b>c</b>\n</a>\n'
    )
