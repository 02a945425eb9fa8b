from datetime import datetime, timedelta, timezone

import pytest

from deckq import score


def test_pull_max_score_zero_is_none():
    assert score.get_pull_max_score(0.0) is None


def test_pull_max_score_above_max_is_max():
    assert score.get_pull_max_score(score.MAX + 10) == score.MAX


def test_pull_max_score_below_min_is_min():
    assert score.get_pull_max_score(score.MIN - 10) == score.MIN


def test_pull_max_score_in_range():
    assert score.get_pull_max_score(100.0) == 100.0


def test_pull_min_score_zero_is_none():
    assert score.get_pull_min_score(0) is None


def test_pull_min_score_above_max_is_max():
    assert score.get_pull_min_score(score.MAX + 10) == score.MAX


def test_pull_min_score_below_min_is_min():
    assert score.get_pull_min_score(score.MIN - 10) == score.MIN


def test_pull_min_score_in_range():
    assert score.get_pull_min_score(100.0) == 100.0


def test_add_score_zero_is_current_time():
    before = score.score_by_default_algorithm()
    got = score.get_add_score(0.0)
    after = score.score_by_default_algorithm()
    assert before <= got <= after


@pytest.mark.parametrize(
    "requested, expected",
    [(-10.0, score.MIN), (score.MAX + 10, score.MAX), (100.0, 100.0)],
)
def test_add_score_clamps(requested, expected):
    assert score.get_add_score(requested) == expected


def test_default_algorithm_is_a_recent_timestamp():
    got = score.score_by_default_algorithm()
    assert got > 0.0
    assert got > score.score_from_time(datetime(2020, 1, 1, tzinfo=timezone.utc))


def test_default_algorithm_within_times():
    now = datetime.now(timezone.utc)
    before = score.score_from_time(now - timedelta(seconds=1))
    got = score.score_by_default_algorithm()
    after = score.score_from_time(datetime.now(timezone.utc) + timedelta(seconds=1))
    assert before < got < after


def test_score_from_epoch_is_zero():
    assert score.score_from_time(datetime.fromtimestamp(0, tz=timezone.utc)) == 0.0


def test_score_from_time_is_milliseconds():
    moment = datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=432141234)
    assert score.score_from_time(moment) == 432141234.0


def test_score_from_current_time_not_zero():
    assert score.score_from_time(datetime.now()) > 0.0


def test_is_undefined():
    assert score.is_undefined(score.UNDEFINED) is True
    assert score.is_undefined(100) is False