"""Feedback records (events, descriptors) and their line encoding."""

from . import codec
from .descriptor import Descriptor, LowestID
from .event import Event

__all__ = ["codec", "Descriptor", "Event", "LowestID"]
