"""Local persistence for the play log"""

from .event_store import EventStore

__all__ = ['EventStore']
