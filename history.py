"""History store and blur engine.

Every variable keeps the full sequence of raw values ever assigned to it.
Reading a variable computes a weighted mean of that sequence where the value
of age ``k`` (0 = most recent) carries weight ``factor ** k``, then rounds the
mean according to the variable's type.
"""

from __future__ import annotations
import math
from collections import deque
from typing import Deque, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from lexer import BlurError


DEFAULT_BLUR_FACTOR = 0.9

# Printable ASCII bounds used when a blurred char is not a valid code point.
PRINTABLE_MIN = 32
PRINTABLE_MAX = 126
MAX_CODE_POINT = 0x10FFFF

# Means are rounded to this many decimals before ceiling so float noise such
# as 7.000000000000001 does not round an exact mean up.
_CEIL_DECIMALS = 9

# (length, retained values or None)
HistoryMark = Tuple[int, Optional[Tuple[float, ...]]]


class EmptyHistoryError(BlurError):
    """Raised when a history with no values is blurred."""


class History:
    """Append-only sequence of raw numeric values, most recent last.

    ``limit`` bounds how many values are retained; evicted values drop out
    of the weighted mean entirely.
    """

    __slots__ = ("_values", "limit")

    def __init__(self, values: Iterable[float] = (), limit: Optional[int] = None) -> None:
        if limit is not None and limit <= 0:
            raise ValueError("history limit must be positive")
        self.limit = limit
        self._values: Deque[float] = deque(values, maxlen=limit)

    def append(self, raw: float) -> None:
        self._values.append(raw)

    def values(self) -> List[float]:
        return list(self._values)

    def reset(self) -> None:
        self._values.clear()

    def copy(self) -> "History":
        return History(self._values, self.limit)

    def mark(self) -> HistoryMark:
        """Restore point for ``rollback``; bounded histories save their values since appends evict."""
        return len(self._values), (tuple(self._values) if self.limit is not None else None)

    def rollback(self, mark: HistoryMark) -> None:
        length, saved = mark
        if saved is not None:
            self._values.clear()
            self._values.extend(saved)
            return
        while len(self._values) > length:
            self._values.pop()

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"History({list(self._values)!r})"


def weighted_mean(values: Sequence[float], factor: float) -> float:
    """Exponentially weighted mean favouring the most recent values."""
    raw = np.asarray(values, dtype=np.float64)
    if raw.size == 0:
        raise EmptyHistoryError("Cannot blur an empty history")
    if factor >= 1.0:
        return float(raw.mean())
    ages = np.arange(raw.size - 1, -1, -1, dtype=np.float64)
    # 0 ** 0 == 1, so a factor of 0 keeps only the newest value.
    weights = np.power(float(factor), ages)
    return float(np.dot(weights, raw) / weights.sum())


def ceil_mean(mean: float) -> int:
    return int(math.ceil(round(mean, _CEIL_DECIMALS)))


def blur_float(history: History, factor: float) -> float:
    return weighted_mean(history.values(), factor)


def blur_int(history: History, factor: float) -> int:
    return ceil_mean(weighted_mean(history.values(), factor))


def clamp_code_point(code: int) -> int:
    if 0 <= code <= MAX_CODE_POINT and not 0xD800 <= code <= 0xDFFF:
        return code
    return min(max(code, PRINTABLE_MIN), PRINTABLE_MAX)


def blur_char(history: History, factor: float) -> str:
    return chr(clamp_code_point(ceil_mean(weighted_mean(history.values(), factor))))


def blur_bool(history: History, factor: float) -> bool:
    # Exact ties (ratio == 0.5) resolve to true.
    return round(weighted_mean(history.values(), factor), _CEIL_DECIMALS) >= 0.5


class StringHistory:
    """One independent char history per string position.

    Spaces never append: they leave the history at that position untouched.
    Positions that exist but have never received a character render as a
    space.
    """

    __slots__ = ("positions", "limit")

    def __init__(self, limit: Optional[int] = None) -> None:
        self.limit = limit
        self.positions: List[History] = []

    def feed(self, text: str, times: int = 1) -> None:
        for _ in range(times):
            for index, ch in enumerate(text):
                if ch == " ":
                    continue
                self._ensure(index)
                self.positions[index].append(ord(ch))

    def assign_char(self, index: int, ch: str) -> None:
        if ch == " ":
            return
        self.positions[index].append(ord(ch))

    def char_at(self, index: int, factor: float) -> str:
        position = self.positions[index]
        if len(position) == 0:
            return " "
        return blur_char(position, factor)

    def blur(self, factor: float) -> str:
        return "".join(self.char_at(i, factor) for i in range(len(self.positions)))

    def reset(self) -> None:
        self.positions.clear()

    def copy(self) -> "StringHistory":
        clone = StringHistory(self.limit)
        clone.positions = [position.copy() for position in self.positions]
        return clone

    def mark(self) -> Tuple[int, List[HistoryMark]]:
        return len(self.positions), [position.mark() for position in self.positions]

    def rollback(self, mark: Tuple[int, List[HistoryMark]]) -> None:
        count, marks = mark
        del self.positions[count:]
        for position, position_mark in zip(self.positions, marks):
            position.rollback(position_mark)

    def values(self) -> List[str]:
        return ["".join(chr(int(code)) for code in position.values()) for position in self.positions]

    def __len__(self) -> int:
        return len(self.positions)

    def _ensure(self, index: int) -> None:
        while len(self.positions) <= index:
            self.positions.append(History(limit=self.limit))


def blur_strings(parts: Iterable[tuple], factor: float) -> str:
    """Blur ``(text, times)`` pairs through a throwaway StringHistory."""
    scratch = StringHistory()
    for text, times in parts:
        scratch.feed(text, times)
    return scratch.blur(factor)
