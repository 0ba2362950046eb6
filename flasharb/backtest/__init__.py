"""Snapshot recording and offline replay."""

from .recorder import SnapshotRecorder
from .replay import SnapshotReplay

__all__ = [
    'SnapshotRecorder',
    'SnapshotReplay'
]
