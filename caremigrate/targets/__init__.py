"""Targets that migrated rows are written to."""

from .base import LoadResult, TargetSink
from .memory import InMemoryTarget

__all__ = [
    "LoadResult",
    "TargetSink",
    "InMemoryTarget",
]
