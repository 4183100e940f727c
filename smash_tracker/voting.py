"""
Rolling-window aggregators that turn repeated noisy observations into one value.

Each battle field is read many times across consecutive frames. These
classes hold the reconciliation policy so the state machine only decides
*when* to trust a field, never *how*.
"""

from collections import Counter, deque
from typing import Any, Hashable, List, Optional

import numpy as np


class DiscreteVote:
    """
    Vote over a discrete field (rule, player count, character, rank).

    A value is resolved when the last `min_run` observations agree, or
    when the window is full and one value holds at least `majority` of it.
    None observations (illegible reads) are ignored.
    """

    def __init__(self, window: int = 9, min_run: int = 3, majority: float = 0.6):
        if min_run > window:
            raise ValueError(f"min_run ({min_run}) cannot exceed window ({window})")
        self.window = window
        self.min_run = min_run
        self.majority = majority
        self._values = deque(maxlen=window)

    def add(self, value: Optional[Hashable]):
        if value is not None:
            self._values.append(value)

    @property
    def count(self) -> int:
        return len(self._values)

    @property
    def leader(self) -> Optional[Hashable]:
        """Most frequent value in the window, resolved or not."""
        if not self._values:
            return None
        return Counter(self._values).most_common(1)[0][0]

    @property
    def value(self) -> Optional[Hashable]:
        if len(self._values) >= self.min_run:
            tail = list(self._values)[-self.min_run:]
            if all(v == tail[0] for v in tail):
                return tail[0]

        if len(self._values) == self.window:
            top, votes = Counter(self._values).most_common(1)[0]
            if votes / self.window >= self.majority:
                return top

        return None

    @property
    def resolved(self) -> bool:
        return self.value is not None

    def __repr__(self):
        return f"DiscreteVote(value={self.value!r}, leader={self.leader!r}, n={self.count})"


class NumericConsensus:
    """
    Outlier-rejecting average for continuous fields (skill rating).

    Observations deviating from the median of the window by more than
    `tolerance` (relative) are discarded; the value is the median of
    what remains.
    """

    def __init__(self, window: int = 15, tolerance: float = 0.1, minimum: Optional[float] = None):
        self.window = window
        self.tolerance = tolerance
        self.minimum = minimum
        self._values = deque(maxlen=window)

    def add(self, value: Optional[float]):
        if value is None:
            return
        if self.minimum is not None and value < self.minimum:
            return
        self._values.append(value)

    @property
    def count(self) -> int:
        return len(self._values)

    def _split(self):
        if not self._values:
            return [], []
        median = float(np.median(self._values))
        limit = abs(median) * self.tolerance
        kept, rejected = [], []
        for v in self._values:
            (kept if abs(v - median) <= limit else rejected).append(v)
        return kept, rejected

    def inliers(self) -> List[float]:
        return self._split()[0]

    def rejected(self) -> List[float]:
        return self._split()[1]

    @property
    def value(self) -> Optional[int]:
        kept = self.inliers()
        if not kept:
            return None
        return int(round(float(np.median(kept))))

    @property
    def resolved(self) -> bool:
        return self.value is not None

    def __repr__(self):
        return f"NumericConsensus(value={self.value}, n={self.count}, rejected={self.rejected()})"


class DecreasingCounter:
    """
    Count that can only go down (stocks during a match).

    A reading must repeat `min_run` times in a row before it is taken; after
    the first value, only lower readings are accepted.
    """

    def __init__(self, min_run: int = 2):
        self.min_run = min_run
        self.value: Optional[int] = None
        self._candidate = None
        self._run = 0

    def add(self, value: Optional[int]):
        if value is None:
            return
        if value == self._candidate:
            self._run += 1
        else:
            self._candidate = value
            self._run = 1

        if self._run >= self.min_run and (self.value is None or value < self.value):
            self.value = value

    @property
    def resolved(self) -> bool:
        return self.value is not None


class RunDebounce:
    """
    Fire once when the same key has been seen on `min_run` consecutive samples.

    feed() returns the key exactly on the sample that completes the run;
    `started_at` holds the timestamp of the first sample of the current run.
    """

    def __init__(self, min_run: int = 3):
        self.min_run = min_run
        self.reset()

    def reset(self):
        self.current: Any = None
        self.run = 0
        self.started_at: Optional[float] = None

    def feed(self, key: Any, timestamp: Optional[float] = None) -> Any:
        if key is None:
            self.reset()
            return None

        if key == self.current:
            self.run += 1
        else:
            self.current = key
            self.run = 1
            self.started_at = timestamp

        return key if self.run == self.min_run else None

    def sustained(self, key: Any) -> bool:
        return key is not None and key == self.current and self.run >= self.min_run
