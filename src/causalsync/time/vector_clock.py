"""Fixed-size vector clock used to track causal order between processes.

The clock itself is not thread-safe; the owning node serializes access.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from causalsync.errors import MalformedClock

BEFORE = "before"
AFTER = "after"
EQUAL = "equal"
CONCURRENT = "concurrent"


def validate_clock(entries, size: int) -> Tuple[int, ...]:
    """Return ``entries`` as a tuple after checking its shape.

    Raises MalformedClock unless ``entries`` is a sequence of exactly
    ``size`` non-negative integers.
    """
    if isinstance(entries, (str, bytes)) or not isinstance(entries, (list, tuple)):
        raise MalformedClock(f"clock must be a list, got {type(entries).__name__}")
    if len(entries) != size:
        raise MalformedClock(f"clock has {len(entries)} entries, expected {size}")
    for i, value in enumerate(entries):
        # bool is an int subclass; a clock entry of true/false is a shape error
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedClock(f"clock entry {i} is not an integer: {value!r}")
        if value < 0:
            raise MalformedClock(f"clock entry {i} is negative: {value}")
    return tuple(entries)


def compare_clocks(a: Sequence[int], b: Sequence[int]) -> str:
    """Compare two vectors: 'before', 'after', 'equal' or 'concurrent'."""
    if len(a) != len(b):
        raise MalformedClock(f"cannot compare clocks of size {len(a)} and {len(b)}")

    less = any(x < y for x, y in zip(a, b))
    greater = any(x > y for x, y in zip(a, b))

    if less and not greater:
        return BEFORE
    elif greater and not less:
        return AFTER
    elif not less and not greater:
        return EQUAL
    else:
        return CONCURRENT


def happened_before(a: Sequence[int], b: Sequence[int]) -> bool:
    """True when the event stamped ``a`` causally precedes the one stamped ``b``."""
    return compare_clocks(a, b) == BEFORE


class VectorClock:
    """Vector clock for one process in a fixed-size group."""

    def __init__(self, size: int, index: int, initial: Optional[Iterable[int]] = None):
        if size < 1:
            raise ValueError(f"clock size must be positive, got {size}")
        if not 0 <= index < size:
            raise ValueError(f"clock index {index} out of range for size {size}")
        self.size = size
        self.index = index
        if initial is None:
            self._entries: List[int] = [0] * size
        else:
            self._entries = list(validate_clock(list(initial), size))

    def local_event(self) -> Tuple[int, ...]:
        """Increment own entry and return the new vector."""
        self._entries[self.index] += 1
        return self.snapshot()

    def merge_received(self, remote: Sequence[int]) -> Tuple[int, ...]:
        """Merge a received vector, then count the receipt as a local event.

        The remote vector is validated before anything is applied, so a
        malformed clock leaves this one untouched.
        """
        remote = validate_clock(remote, self.size)
        for i in range(self.size):
            self._entries[i] = max(self._entries[i], remote[i])
        return self.local_event()

    def snapshot(self) -> Tuple[int, ...]:
        """Get an immutable copy of the current vector."""
        return tuple(self._entries)

    def compare(self, other: Sequence[int]) -> str:
        return compare_clocks(self._entries, other)

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return f"VectorClock(index={self.index}, entries={self._entries})"
