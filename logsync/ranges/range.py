"""Inclusive integer interval, the building block of a SortedRangeSet."""

from ..errors import InvalidFormatError


def _parse_number(token: str, representation: str) -> int:
    if not (token.isascii() and token.isdigit()):
        raise InvalidFormatError(f"Invalid range: {representation!r}")
    return int(token)


class Range:
    """An inclusive interval ``[low, high]``.

    Moving ``low`` past ``high`` drags ``high`` along with it, and moving
    ``high`` below ``low`` drags ``low`` down, so the interval never becomes
    inverted::

        r = Range(5)
        r.low = 8   # r.high is now 8
        r.high = 2  # r.low is now 2
    """

    __slots__ = ("_low", "_high")

    def __init__(self, low: int, high: int | None = None):
        if high is None:
            high = low
        if low > high:
            raise InvalidFormatError(f"Invalid range: low {low} exceeds high {high}")
        self._low = low
        self._high = high

    @classmethod
    def parse(cls, representation: str) -> "Range":
        """Create a range from ``"5"`` or ``"2-6"``."""
        low, sep, high = representation.partition("-")
        low_value = _parse_number(low, representation)
        if not sep:
            return cls(low_value)
        return cls(low_value, _parse_number(high, representation))

    @property
    def low(self) -> int:
        return self._low

    @low.setter
    def low(self, value: int) -> None:
        self._low = value
        if value > self._high:
            self._high = value

    @property
    def high(self) -> int:
        return self._high

    @high.setter
    def high(self, value: int) -> None:
        self._high = value
        if value < self._low:
            self._low = value

    def contains(self, number: int) -> bool:
        return self._low <= number <= self._high

    __contains__ = contains

    def to_representation(self) -> str:
        if self._low == self._high:
            return str(self._low)
        return f"{self._low}-{self._high}"

    @property
    def size(self) -> int:
        """Number of values covered."""
        return self._high - self._low + 1

    def __iter__(self):
        return iter(range(self._low, self._high + 1))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Range):
            return NotImplemented
        return self._low == other._low and self._high == other._high

    def __hash__(self) -> int:
        return hash((self._low, self._high))

    def __str__(self) -> str:
        return self.to_representation()

    def __repr__(self) -> str:
        return f"Range[{self.to_representation()}]"
