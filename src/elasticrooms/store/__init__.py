from elasticrooms.store.base import Notifier, PresenceStore, RoomStore
from elasticrooms.store.memory import InMemoryStore
from elasticrooms.store.models import Base, PresenceRecord, RoomRecord
from elasticrooms.store.repository import SqlStore

__all__ = [
    "Base",
    "InMemoryStore",
    "Notifier",
    "PresenceRecord",
    "PresenceStore",
    "RoomRecord",
    "RoomStore",
    "SqlStore",
]
