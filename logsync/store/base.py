"""Abstract log store consumed by the sync engine."""

from abc import ABC, abstractmethod

from ..feedback import Descriptor, Event, LowestID
from ..ranges import SortedRangeSet


class LogStore(ABC):
    """Append-only storage of events keyed by ``(owner_id, log_id)``.

    Implementations must make each single event write all-or-nothing and
    must serialize id assignment per log.
    """

    @abstractmethod
    def get_descriptors(self, owner_id: str | None = None) -> list[Descriptor]:
        """Describe every log of ``owner_id``, or of all owners when None."""
        pass

    @abstractmethod
    def find_descriptor(self, owner_id: str | None, log_id: int) -> Descriptor | None:
        """Describe one log, or return None if it holds no events."""
        pass

    def get_descriptor(self, owner_id: str | None, log_id: int) -> Descriptor:
        """Describe one log; a log that does not exist has an empty range."""
        descriptor = self.find_descriptor(owner_id, log_id)
        if descriptor is None:
            return Descriptor(owner_id, log_id, SortedRangeSet())
        return descriptor

    @abstractmethod
    def get(self, descriptor: Descriptor) -> list[Event]:
        """Return the events of the described log whose ids are in its range."""
        pass

    @abstractmethod
    def put(self, events: list[Event]) -> int:
        """Store events that already carry their ids.

        Returns:
            Number of events that were not present before.
        """
        pass

    @abstractmethod
    def append(
        self,
        owner_id: str,
        event_type: int,
        properties: dict[str, str] | None = None,
        log_id: int | None = None,
        time: int | None = None,
    ) -> Event:
        """Record a new event, assigning it the next id of its log."""
        pass

    @abstractmethod
    def get_lowest_id(self, owner_id: str | None, log_id: int) -> int:
        """Return the retention floor of a log (0 when unset)."""
        pass

    @abstractmethod
    def get_lowest_ids(self, owner_id: str | None = None) -> list[LowestID]:
        """Return every recorded retention floor, optionally for one owner."""
        pass

    @abstractmethod
    def set_lowest_id(self, owner_id: str | None, log_id: int, lowest_id: int) -> None:
        """Raise the retention floor of a log; lower values are ignored."""
        pass
