"""Per-log summaries exchanged during sync."""

from dataclasses import dataclass

from ..errors import InvalidFormatError
from ..ranges import SortedRangeSet
from . import codec
from .event import parse_int


@dataclass(frozen=True)
class Descriptor:
    """Which ids are present for one owner's log.

    Serialized as ``owner,logID,rangeSet``. The range set may contain commas
    itself, so only the first two fields are split off when parsing.
    """

    owner_id: str | None
    log_id: int
    range_set: SortedRangeSet

    @property
    def key(self) -> tuple[str | None, int]:
        return (self.owner_id, self.log_id)

    def to_representation(self) -> str:
        return (
            f"{codec.encode(self.owner_id)},{self.log_id},"
            f"{self.range_set.to_representation()}"
        )

    @classmethod
    def parse(cls, line: str) -> "Descriptor":
        tokens = line.split(",", 2)
        if len(tokens) != 3:
            raise InvalidFormatError(f"Could not create descriptor from: {line!r}")
        return cls(
            codec.decode(tokens[0]),
            parse_int(tokens[1], "log id", line),
            SortedRangeSet.parse(tokens[2]),
        )


@dataclass(frozen=True)
class LowestID:
    """Retention floor of a log: ids below ``lowest_id`` are gone for good."""

    owner_id: str | None
    log_id: int
    lowest_id: int

    @property
    def key(self) -> tuple[str | None, int]:
        return (self.owner_id, self.log_id)

    def to_representation(self) -> str:
        return f"{codec.encode(self.owner_id)},{self.log_id},{self.lowest_id}"

    @classmethod
    def parse(cls, line: str) -> "LowestID":
        tokens = line.split(",")
        if len(tokens) != 3:
            raise InvalidFormatError(f"Could not create lowest id from: {line!r}")
        return cls(
            codec.decode(tokens[0]),
            parse_int(tokens[1], "log id", line),
            parse_int(tokens[2], "lowest id", line),
        )
