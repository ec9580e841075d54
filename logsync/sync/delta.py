"""Per-log difference between two sets of descriptors."""

from ..feedback import Descriptor


def calculate_delta(
    source: list[Descriptor], destination: list[Descriptor]
) -> list[Descriptor]:
    """Work out what ``destination`` lacks of ``source``.

    For each source descriptor the destination descriptor with the same
    ``(owner_id, log_id)`` is looked up; a log the destination does not know
    counts as empty. Only logs with something missing are returned, in source
    order, each carrying the missing ids as its range set.
    """
    known = {d.key: d for d in destination}

    result = []
    for s in source:
        d = known.get(s.key)
        if d is None:
            missing = s.range_set
        else:
            missing = d.range_set.diff_dest(s.range_set)
        if missing:
            result.append(Descriptor(s.owner_id, s.log_id, missing))
    return result
