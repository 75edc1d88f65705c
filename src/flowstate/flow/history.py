"""Bounded score / state history used for hysteresis and trend queries."""

from __future__ import annotations

from collections import deque
from typing import Callable, Generic, Iterable, TypeVar

from flowstate.flow.models import ScoreTrend

S = TypeVar("S")

DEFAULT_HISTORY_SIZE = 10

# Minimum swing between the recent and the older moving average
TREND_THRESHOLD = 5.0


class SessionHistory(Generic[S]):
    """Rolling window of the last *maxlen* scores and states.

    One instance belongs to exactly one engine; callers reset it at
    session boundaries.
    """

    def __init__(self, maxlen: int = DEFAULT_HISTORY_SIZE) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be at least 1")
        self._scores: deque[float] = deque(maxlen=maxlen)
        self._states: deque[S] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._states)

    @property
    def scores(self) -> list[float]:
        return list(self._scores)

    @property
    def states(self) -> list[S]:
        return list(self._states)

    def append(self, score: float, state: S) -> None:
        self._scores.append(score)
        self._states.append(state)

    def clear(self) -> None:
        self._scores.clear()
        self._states.clear()

    def recent_states(self, n: int) -> list[S]:
        if n <= 0:
            return []
        return list(self._states)[-n:]

    def count_recent(self, n: int, accepted: Iterable[S] | Callable[[S], bool]) -> int:
        """How many of the last *n* states satisfy *accepted*."""
        if callable(accepted):
            predicate = accepted
        else:
            allowed = set(accepted)
            predicate = allowed.__contains__
        return sum(1 for s in self.recent_states(n) if predicate(s))

    def consecutive_tail(self, state: S) -> int:
        """Length of the run of *state* at the end of the history."""
        count = 0
        for s in reversed(self._states):
            if s != state:
                break
            count += 1
        return count

    def trend(self) -> ScoreTrend:
        """Compare the last 3 scores with the oldest (up to 5) scores."""
        scores = list(self._scores)
        if len(scores) < 3:
            return ScoreTrend.STABLE
        recent = scores[-3:]
        older = scores[: min(5, len(scores))]
        diff = sum(recent) / len(recent) - sum(older) / len(older)
        if diff > TREND_THRESHOLD:
            return ScoreTrend.IMPROVING
        if diff < -TREND_THRESHOLD:
            return ScoreTrend.DECLINING
        return ScoreTrend.STABLE
