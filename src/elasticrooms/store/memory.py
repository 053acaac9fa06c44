from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import datetime

import structlog

from elasticrooms.exceptions import PreconditionStale
from elasticrooms.geo import bounding_box, haversine_km
from elasticrooms.models import GeoPoint, Room, UserPresence, utcnow

logger = structlog.get_logger(__name__)


class InMemoryStore:
    """Dict-backed presence and room store.

    Rooms are copied on the way in and out so callers never share state with
    the store, mirroring a remote document database.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._presences: dict[str, UserPresence] = {}
        self._rooms: dict[str, Room] = {}

    async def initialize(self) -> None:
        logger.info("Using in-memory room store")

    async def close(self) -> None:
        self._presences.clear()
        self._rooms.clear()

    # Presence

    def upsert_presence(self, presence: UserPresence) -> None:
        self._presences[presence.id] = copy.deepcopy(presence)

    def remove_presence(self, user_id: str) -> None:
        self._presences.pop(user_id, None)

    async def query_active_users(
        self, center: GeoPoint, radius_km: float, heartbeat_threshold_seconds: float
    ) -> list[UserPresence]:
        now = self._clock()
        box = bounding_box(center, radius_km)
        users: list[UserPresence] = []
        for presence in self._presences.values():
            if presence.location is None or not box.contains(presence.location):
                continue
            if haversine_km(center, presence.location) > radius_km:
                continue
            if not presence.is_active(now, heartbeat_threshold_seconds):
                continue
            users.append(copy.deepcopy(presence))
        return users

    async def get_presence(self, user_id: str) -> UserPresence | None:
        presence = self._presences.get(user_id)
        return copy.deepcopy(presence) if presence is not None else None

    async def get_presences(self, user_ids: list[str]) -> dict[str, UserPresence]:
        return {
            uid: copy.deepcopy(self._presences[uid]) for uid in user_ids if uid in self._presences
        }

    # Rooms

    async def get_room(self, room_id: str) -> Room | None:
        room = self._rooms.get(room_id)
        return copy.deepcopy(room) if room is not None else None

    async def put_room(self, room: Room) -> Room:
        stored = self._rooms.get(room.id)
        stored_version = stored.version if stored is not None else 0
        if stored_version != room.version:
            raise PreconditionStale(room.id)

        saved = copy.deepcopy(room)
        saved.version = room.version + 1
        self._rooms[room.id] = saved
        logger.debug("Room stored", room_id=room.id, version=saved.version, size=saved.size)
        return copy.deepcopy(saved)

    async def list_active_rooms_near(self, center: GeoPoint, radius_km: float) -> list[Room]:
        return [
            copy.deepcopy(room)
            for room in self._rooms.values()
            if room.is_active and haversine_km(center, room.location) <= radius_km
        ]

    async def list_active_rooms(self) -> list[Room]:
        return [copy.deepcopy(room) for room in self._rooms.values() if room.is_active]

    async def find_active_room_for(self, user_id: str) -> Room | None:
        for room in self._rooms.values():
            if room.is_active and room.has_participant(user_id):
                return copy.deepcopy(room)
        return None
