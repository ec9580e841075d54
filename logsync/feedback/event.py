"""A single log entry and its line representation."""

from dataclasses import dataclass, field

from ..errors import InvalidFormatError
from . import codec


def parse_int(token: str, what: str, line: str) -> int:
    """Parse a base-10 integer field, rejecting anything int() would be lenient about."""
    digits = token[1:] if token.startswith("-") else token
    if not (digits.isascii() and digits.isdigit()):
        raise InvalidFormatError(f"Invalid {what} {token!r} in: {line!r}")
    return int(token)


@dataclass(frozen=True)
class Event:
    """An immutable log entry keyed by ``(owner_id, log_id, id)``.

    ``id`` is the per-log sequence number handed out by the store that first
    recorded the event. Property order is kept as inserted and survives a
    round trip through :meth:`to_representation` / :meth:`parse`, but nothing
    relies on it.
    """

    owner_id: str | None
    log_id: int
    id: int
    time: int
    type: int
    properties: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        for key, value in self.properties.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise TypeError(
                    f"Event properties must map str to str, got {key!r}: {value!r}"
                )
        object.__setattr__(self, "properties", dict(self.properties))

    @property
    def key(self) -> tuple[str | None, int, int]:
        return (self.owner_id, self.log_id, self.id)

    def sort_key(self) -> tuple[str, int, int]:
        return (self.owner_id or "", self.log_id, self.id)

    def __hash__(self) -> int:
        return hash(self.key)

    def to_representation(self) -> str:
        """Encode as ``owner,logID,id,time,type[,key,value]*``."""
        parts = [
            codec.encode(self.owner_id),
            str(self.log_id),
            str(self.id),
            str(self.time),
            str(self.type),
        ]
        for key, value in self.properties.items():
            parts.append(codec.encode(key))
            parts.append(codec.encode(value))
        return ",".join(parts)

    @classmethod
    def parse(cls, line: str) -> "Event":
        """Decode a line produced by :meth:`to_representation`.

        Raises:
            InvalidFormatError: If the line is not a complete event.
        """
        tokens = line.split(",")
        if len(tokens) < 5:
            raise InvalidFormatError(f"Could not create event from: {line!r}")
        if (len(tokens) - 5) % 2:
            raise InvalidFormatError(f"Property without value in: {line!r}")

        owner_id = codec.decode(tokens[0])
        log_id = parse_int(tokens[1], "log id", line)
        event_id = parse_int(tokens[2], "event id", line)
        time = parse_int(tokens[3], "time", line)
        event_type = parse_int(tokens[4], "type", line)

        properties = {}
        for i in range(5, len(tokens), 2):
            key = codec.decode(tokens[i])
            value = codec.decode(tokens[i + 1])
            if key is None or value is None:
                raise InvalidFormatError(f"Null property in: {line!r}")
            properties[key] = value

        return cls(owner_id, log_id, event_id, time, event_type, properties)
