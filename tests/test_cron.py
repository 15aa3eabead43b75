from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from evalrunner.cron import CronExpression
from evalrunner.errors import ValidationError


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expression, after, expected",
    [
        ("*/15 * * * *", utc(2024, 1, 1, 10, 7), utc(2024, 1, 1, 10, 15)),
        ("*/15 * * * *", utc(2024, 1, 1, 10, 15), utc(2024, 1, 1, 10, 30)),
        ("0 2 * * *", utc(2024, 1, 1, 3, 0), utc(2024, 1, 2, 2, 0)),
        ("0 */6 * * *", utc(2024, 1, 1, 13, 30), utc(2024, 1, 1, 18, 0)),
        ("0 3 * * 0", utc(2024, 1, 3, 12, 0), utc(2024, 1, 7, 3, 0)),
        ("0 3 * * 7", utc(2024, 1, 3, 12, 0), utc(2024, 1, 7, 3, 0)),
        ("0 0 1 * *", utc(2024, 1, 15), utc(2024, 2, 1)),
        ("0 0 29 2 *", utc(2024, 3, 1), utc(2028, 2, 29)),
        ("5,10-12 * * * *", utc(2024, 1, 1, 10, 6), utc(2024, 1, 1, 10, 10)),
        ("5,10-12 * * * *", utc(2024, 1, 1, 10, 12), utc(2024, 1, 1, 11, 5)),
        ("5/20 * * * *", utc(2024, 1, 1, 10, 30), utc(2024, 1, 1, 10, 45)),
        ("59 23 31 12 *", utc(2024, 6, 1), utc(2024, 12, 31, 23, 59)),
    ],
)
def test_next_after(expression, after, expected):
    assert CronExpression.parse(expression).next_after(after) == expected


def test_day_of_month_or_day_of_week():
    # the 13th or any Friday; 2024-01-05 is a Friday
    cron = CronExpression.parse("0 0 13 * 5")
    assert cron.next_after(utc(2024, 1, 1)) == utc(2024, 1, 5)
    assert cron.next_after(utc(2024, 1, 12, 1)) == utc(2024, 1, 13)


def test_next_after_keeps_timezone():
    berlin = ZoneInfo("Europe/Berlin")
    cron = CronExpression.parse("0 2 * * *")

    nxt = cron.next_after(datetime(2024, 1, 1, 12, 0, tzinfo=berlin))

    assert nxt == datetime(2024, 1, 2, 2, 0, tzinfo=berlin)
    assert nxt.tzinfo is berlin


def test_matches():
    cron = CronExpression.parse("30 9 * * 1-5")
    assert cron.matches(utc(2024, 1, 1, 9, 30))
    assert not cron.matches(utc(2024, 1, 6, 9, 30))
    assert not cron.matches(utc(2024, 1, 1, 9, 31))


def test_impossible_date_has_no_next():
    assert CronExpression.parse("0 0 31 2 *").next_after(utc(2024, 1, 1)) is None


@pytest.mark.parametrize(
    "expression",
    ["* * * *", "60 * * * *", "* 24 * * *", "* * 0 * *", "*/0 * * * *", "a * * * *", "5-1 * * * *", "1,,2 * * * *"],
)
def test_invalid_expressions(expression):
    with pytest.raises(ValidationError):
        CronExpression.parse(expression)
