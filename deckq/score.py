"""Score rules that order messages inside a queue."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

MAX: float = 9007199254740992.0
MIN: float = 0.0
UNDEFINED: float = -1.0

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def get_pull_max_score(score: float) -> float | None:
    """Upper score bound for a pull request, or None when the score is zero."""
    if score == 0:
        return None
    if score > MAX:
        return MAX
    if score < MIN:
        return MIN
    return score


def get_pull_min_score(score: float) -> float | None:
    """Lower score bound for a pull request, or None when the score is zero."""
    if score == 0:
        return None
    if score > MAX:
        return MAX
    if score <= MIN:
        return MIN
    return score


def get_add_score(score: float) -> float:
    """Score given to a newly added message.

    A zero score means "now" in milliseconds; other values are clamped
    to the range MIN..MAX.
    """
    if score == 0:
        return score_by_default_algorithm()
    if score < MIN:
        return MIN
    if score > MAX:
        return MAX
    return score


def score_by_default_algorithm() -> float:
    """The default score: the current Unix time in milliseconds."""
    return float(time.time_ns() // 1_000_000)


def score_from_time(moment: datetime) -> float:
    """The score for a moment: its Unix time in milliseconds."""
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return float((moment - _EPOCH) // _MILLISECOND)


def is_undefined(score: float) -> bool:
    """True when the score is the UNDEFINED marker."""
    return score == UNDEFINED