"""Escaping that makes arbitrary strings safe inside comma-delimited lines.

``$`` is the escape character. ``None`` has its own marker so that it can be
told apart from the empty string.
"""

from types import MappingProxyType

from ..errors import InvalidFormatError

ESCAPE = "$"
NULL = "$e"

ENCODE_TABLE = MappingProxyType({
    "$": "$$",
    ",": "$k",
    "\n": "$n",
    "\r": "$r",
})

DECODE_TABLE = MappingProxyType({
    "$": "$",
    "k": ",",
    "n": "\n",
    "r": "\r",
})


def encode(value: str | None) -> str:
    """Escape a string (or ``None``) for use as a single field."""
    if value is None:
        return NULL
    return "".join(ENCODE_TABLE.get(char, char) for char in value)


def decode(value: str) -> str | None:
    """Reverse :func:`encode`.

    Raises:
        InvalidFormatError: On a trailing ``$`` or an unknown escape.
    """
    if value == NULL:
        return None

    result = []
    chars = iter(value)
    for char in chars:
        if char != ESCAPE:
            result.append(char)
            continue
        escaped = next(chars, None)
        if escaped is None:
            raise InvalidFormatError(f"Dangling escape at end of {value!r}")
        if escaped not in DECODE_TABLE:
            raise InvalidFormatError(
                f"Unknown escape sequence '${escaped}' in {value!r}"
            )
        result.append(DECODE_TABLE[escaped])
    return "".join(result)


def split_lines(text: str) -> list[str]:
    """Split a body into its non-empty lines.

    Only ``\\n`` ends a line (with an optional ``\\r`` before it). These are
    the only breaks :func:`encode` escapes; other Unicode line separators
    are field content.
    """
    lines = []
    for line in text.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        if line:
            lines.append(line)
    return lines
