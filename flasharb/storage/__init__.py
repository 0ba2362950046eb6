"""Storage components."""

from .db import Database
from .journal import JournalSink, SettlementJournal

__all__ = [
    'Database',
    'JournalSink',
    'SettlementJournal'
]
