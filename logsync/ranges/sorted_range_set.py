"""Sorted, coalesced sets of integer ranges and their string representation.

A SortedRangeSet describes which sequence numbers of a log are present, for
example ``"1-4,6,8,10-20"``. All operations work on whole ranges, so a set
spanning millions of ids costs no more than one spanning ten.
"""

from bisect import bisect_right
from collections.abc import Iterable, Iterator

from ..errors import InvalidFormatError
from .range import Range

MAX_VALUE = 2**63 - 1


def _coalesce(pairs: Iterable[tuple[int, int]]) -> tuple[tuple[int, int], ...]:
    """Sort pairs and merge the ones that overlap or touch."""
    result: list[list[int]] = []
    for low, high in sorted(pairs):
        if result and low <= result[-1][1] + 1:
            if high > result[-1][1]:
                result[-1][1] = high
        else:
            result.append([low, high])
    return tuple((low, high) for low, high in result)


class SortedRangeSet:
    """An ordered set of disjoint, non-adjacent ranges.

    Instances are never mutated after construction; every operation returns a
    new set. Build one with :meth:`parse`, :meth:`from_values` or directly
    from ``Range`` objects / ``(low, high)`` pairs.
    """

    __slots__ = ("_ranges", "_lows")

    def __init__(self, ranges: Iterable[Range | tuple[int, int]] = ()):
        pairs = []
        for r in ranges:
            if isinstance(r, Range):
                pairs.append((r.low, r.high))
            else:
                low, high = r
                if low > high:
                    raise InvalidFormatError(
                        f"Invalid range: low {low} exceeds high {high}"
                    )
                pairs.append((low, high))
        self._ranges = _coalesce(pairs)
        self._lows = [low for low, _ in self._ranges]

    @classmethod
    def parse(cls, representation: str) -> "SortedRangeSet":
        """Create a set from a representation such as ``"1,3,5-8"``.

        The empty string yields the empty set.

        Raises:
            InvalidFormatError: If any token is not a valid range.
        """
        if representation == "":
            return cls()
        return cls(Range.parse(token) for token in representation.split(","))

    @classmethod
    def from_values(cls, values: Iterable[int]) -> "SortedRangeSet":
        """Create a set from individual numbers in any order, duplicates allowed."""
        pairs: list[tuple[int, int]] = []
        low = high = None
        for value in sorted(set(values)):
            if high is not None and value == high + 1:
                high = value
                continue
            if low is not None:
                pairs.append((low, high))
            low = high = value
        if low is not None:
            pairs.append((low, high))
        return cls(pairs)

    def to_representation(self) -> str:
        return ",".join(
            str(low) if low == high else f"{low}-{high}"
            for low, high in self._ranges
        )

    def contains(self, number: int) -> bool:
        """Check whether a number falls inside any range of this set."""
        index = bisect_right(self._lows, number) - 1
        return index >= 0 and number <= self._ranges[index][1]

    def __contains__(self, number: object) -> bool:
        return isinstance(number, int) and self.contains(number)

    def diff_dest(self, dest: "SortedRangeSet") -> "SortedRangeSet":
        """Return the values of ``dest`` that are not in this set.

        In set notation ``result = dest \\ self``: if ``dest = {1, 2}`` and
        ``self = {2, 3}`` the result is ``{1}``. To find what a source holds
        that a destination lacks, call ``destination.diff_dest(source)``.

        Both range lists are swept once; the cost is proportional to the
        number of ranges, not the number of values they cover.
        """
        mine = self._ranges
        result: list[tuple[int, int]] = []
        j = 0
        for low, high in dest._ranges:
            while j < len(mine) and mine[j][1] < low:
                j += 1
            current = low
            k = j
            while k < len(mine) and mine[k][0] <= high:
                if mine[k][0] > current:
                    result.append((current, mine[k][0] - 1))
                current = max(current, mine[k][1] + 1)
                if current > high:
                    break
                k += 1
            if current <= high:
                result.append((current, high))
        return SortedRangeSet(result)

    def union(self, other: "SortedRangeSet") -> "SortedRangeSet":
        """Return the set of values present in either set."""
        return SortedRangeSet(self._ranges + other._ranges)

    def ranges(self) -> Iterator[Range]:
        """Iterate over copies of the ranges in ascending order."""
        for low, high in self._ranges:
            yield Range(low, high)

    def __iter__(self) -> Iterator[int]:
        for low, high in self._ranges:
            yield from range(low, high + 1)

    def __reversed__(self) -> Iterator[int]:
        for low, high in reversed(self._ranges):
            yield from range(high, low - 1, -1)

    @property
    def high(self) -> int:
        """Highest value in the set, or 0 when the set is empty."""
        return self._ranges[-1][1] if self._ranges else 0

    @property
    def low(self) -> int:
        """Lowest value in the set, or 0 when the set is empty."""
        return self._ranges[0][0] if self._ranges else 0

    @property
    def count(self) -> int:
        """Number of values covered by the set."""
        return sum(high - low + 1 for low, high in self._ranges)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SortedRangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def __hash__(self) -> int:
        return hash(self._ranges)

    def __str__(self) -> str:
        return self.to_representation()

    def __repr__(self) -> str:
        return f"SortedRangeSet[{self.to_representation()}]"


class _FullRangeSet(SortedRangeSet):
    """The set of every possible id."""

    __slots__ = ()

    def __init__(self):
        super().__init__([(0, MAX_VALUE)])

    def contains(self, number: int) -> bool:
        return True

    def diff_dest(self, dest: SortedRangeSet) -> SortedRangeSet:
        # Nothing can be missing from a side that claims everything.
        return SortedRangeSet()

    def __repr__(self) -> str:
        return "SortedRangeSet[FULL]"


FULL_SET: SortedRangeSet = _FullRangeSet()
"""Sentinel meaning "everything, unconditionally"."""
