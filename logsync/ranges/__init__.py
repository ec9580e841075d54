"""Range arithmetic used to describe which ids a log holds."""

from .range import Range
from .sorted_range_set import FULL_SET, MAX_VALUE, SortedRangeSet

__all__ = ["FULL_SET", "MAX_VALUE", "Range", "SortedRangeSet"]
