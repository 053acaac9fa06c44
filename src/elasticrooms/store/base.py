from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from elasticrooms.constants import NotificationKind
    from elasticrooms.models import GeoPoint, Room, UserPresence


class PresenceStore(Protocol):
    """Geospatial and freshness queries over user heartbeats.

    Implementations raise TransientQueryFailure when the backend is unreachable.
    """

    async def query_active_users(
        self, center: GeoPoint, radius_km: float, heartbeat_threshold_seconds: float
    ) -> list[UserPresence]: ...

    async def get_presence(self, user_id: str) -> UserPresence | None: ...

    async def get_presences(self, user_ids: list[str]) -> dict[str, UserPresence]: ...


class RoomStore(Protocol):
    """Room persistence with read-your-writes consistency.

    put_room is version-guarded: it raises PreconditionStale when the stored
    version differs from room.version, and returns the room with its new version.
    """

    async def get_room(self, room_id: str) -> Room | None: ...

    async def put_room(self, room: Room) -> Room: ...

    async def list_active_rooms_near(self, center: GeoPoint, radius_km: float) -> list[Room]: ...

    async def list_active_rooms(self) -> list[Room]: ...

    async def find_active_room_for(self, user_id: str) -> Room | None: ...


class Notifier(Protocol):
    async def notify(
        self, user_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None: ...
