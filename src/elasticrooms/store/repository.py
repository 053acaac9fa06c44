from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from elasticrooms.constants import ConversationStyle, EnergyLevel, RoomState
from elasticrooms.exceptions import PreconditionStale, TransientQueryFailure
from elasticrooms.geo import bounding_box, haversine_km
from elasticrooms.models import GeoPoint, Room, UserPresence, utcnow
from elasticrooms.store.models import Base, PresenceRecord, RoomRecord

logger = structlog.get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _naive(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def _to_presence(record: PresenceRecord) -> UserPresence:
    location = None
    if record.lat is not None and record.lon is not None:
        location = GeoPoint(lat=record.lat, lon=record.lon)
    return UserPresence(
        id=record.id,
        location=location,
        last_heartbeat=_aware(record.last_heartbeat) or datetime.now(UTC),
        interests=frozenset(record.interests or []),
        vibe_vector=tuple(record.vibe_vector) if record.vibe_vector else None,
        activity_score=record.activity_score,
        conversation_style=ConversationStyle(record.conversation_style),
        energy_level=EnergyLevel(record.energy_level),
    )


def _to_room(record: RoomRecord) -> Room:
    return Room(
        id=record.id,
        host_id=record.host_id,
        location=GeoPoint(lat=record.lat, lon=record.lon),
        radius_km=record.radius_km,
        participants=list(record.participants or []),
        vibe_score=record.vibe_score,
        activity_level=record.activity_level,
        topics=list(record.topics or []),
        created_at=_aware(record.created_at) or datetime.now(UTC),
        last_activity=_aware(record.last_activity) or datetime.now(UTC),
        state=RoomState(record.state),
        parent_room_id=record.parent_room_id,
        merged_into_id=record.merged_into_id,
        close_reason=record.close_reason,
        closed_at=_aware(record.closed_at),
        version=record.version,
    )


def _room_values(room: Room) -> dict[str, object]:
    return {
        "host_id": room.host_id,
        "participants": list(room.participants),
        "lat": room.location.lat,
        "lon": room.location.lon,
        "radius_km": room.radius_km,
        "vibe_score": room.vibe_score,
        "activity_level": room.activity_level,
        "topics": list(room.topics),
        "state": room.state.value,
        "parent_room_id": room.parent_room_id,
        "merged_into_id": room.merged_into_id,
        "close_reason": room.close_reason,
        "closed_at": _naive(room.closed_at),
        "created_at": _naive(room.created_at),
        "last_activity": _naive(room.last_activity),
    }


class SqlStore:
    """Presence and room store on SQLAlchemy's async ORM."""

    def __init__(self, database_url: str, clock: Callable[[], datetime] = utcnow) -> None:
        if not database_url.startswith("sqlite"):
            db_type = database_url.split("://")[0] if "://" in database_url else database_url
            raise ValueError(f"Only SQLite databases are supported. Got: {db_type}")
        self._clock = clock
        self._engine = create_async_engine(database_url, echo=False)
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self) -> None:
        logger.info("Initializing room store")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Room store initialization complete")

    async def close(self) -> None:
        await self._engine.dispose()

    def session(self) -> AsyncSession:
        return self._session_factory()

    @asynccontextmanager
    async def _guarded(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session() as session:
                yield session
        except OperationalError as e:
            logger.warning("Store operation failed", operation=operation, error=str(e))
            raise TransientQueryFailure(f"{operation} failed: {e}") from e

    # Presence

    async def upsert_presence(self, presence: UserPresence) -> None:
        async with self._guarded("upsert_presence") as session:
            record = await session.get(PresenceRecord, presence.id)
            if record is None:
                record = PresenceRecord(id=presence.id)
                session.add(record)
            record.lat = presence.location.lat if presence.location else None
            record.lon = presence.location.lon if presence.location else None
            record.last_heartbeat = _naive(presence.last_heartbeat)
            record.interests = sorted(presence.interests)
            record.vibe_vector = list(presence.vibe_vector) if presence.vibe_vector else None
            record.activity_score = presence.activity_score
            record.conversation_style = presence.conversation_style.value
            record.energy_level = presence.energy_level.value
            await session.commit()

    async def query_active_users(
        self, center: GeoPoint, radius_km: float, heartbeat_threshold_seconds: float
    ) -> list[UserPresence]:
        box = bounding_box(center, radius_km)
        cutoff = self._clock().timestamp() - heartbeat_threshold_seconds
        cutoff_dt = datetime.fromtimestamp(cutoff, UTC).replace(tzinfo=None)

        stmt = select(PresenceRecord).where(
            PresenceRecord.lat.is_not(None),
            PresenceRecord.lat >= box.south,
            PresenceRecord.lat <= box.north,
            PresenceRecord.last_heartbeat >= cutoff_dt,
        )
        if not box.wraps:
            stmt = stmt.where(PresenceRecord.lon >= box.west, PresenceRecord.lon <= box.east)

        async with self._guarded("query_active_users") as session:
            result = await session.execute(stmt)
            records = list(result.scalars().all())

        users = [_to_presence(r) for r in records]
        return [
            u for u in users if u.location and haversine_km(center, u.location) <= radius_km
        ]

    async def get_presence(self, user_id: str) -> UserPresence | None:
        async with self._guarded("get_presence") as session:
            record = await session.get(PresenceRecord, user_id)
            return _to_presence(record) if record is not None else None

    async def get_presences(self, user_ids: list[str]) -> dict[str, UserPresence]:
        if not user_ids:
            return {}
        async with self._guarded("get_presences") as session:
            result = await session.execute(
                select(PresenceRecord).where(PresenceRecord.id.in_(user_ids))
            )
            return {r.id: _to_presence(r) for r in result.scalars().all()}

    # Rooms

    async def get_room(self, room_id: str) -> Room | None:
        async with self._guarded("get_room") as session:
            record = await session.get(RoomRecord, room_id)
            return _to_room(record) if record is not None else None

    async def put_room(self, room: Room) -> Room:
        values = _room_values(room)
        async with self._guarded("put_room") as session:
            if room.version == 0:
                session.add(RoomRecord(id=room.id, version=1, **values))
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise PreconditionStale(room.id, f"Room {room.id} already exists") from e
            else:
                result = await session.execute(
                    update(RoomRecord)
                    .where(RoomRecord.id == room.id, RoomRecord.version == room.version)
                    .values(version=room.version + 1, **values)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise PreconditionStale(room.id)
                await session.commit()

        logger.debug("Room stored", room_id=room.id, version=room.version + 1, size=room.size)
        saved = _to_room(RoomRecord(id=room.id, version=room.version + 1, **values))
        return saved

    async def list_active_rooms_near(self, center: GeoPoint, radius_km: float) -> list[Room]:
        box = bounding_box(center, radius_km)
        stmt = select(RoomRecord).where(
            RoomRecord.state != RoomState.CLOSED.value,
            RoomRecord.lat >= box.south,
            RoomRecord.lat <= box.north,
        )
        if not box.wraps:
            stmt = stmt.where(RoomRecord.lon >= box.west, RoomRecord.lon <= box.east)

        async with self._guarded("list_active_rooms_near") as session:
            result = await session.execute(stmt)
            rooms = [_to_room(r) for r in result.scalars().all()]
        return [r for r in rooms if haversine_km(center, r.location) <= radius_km]

    async def list_active_rooms(self) -> list[Room]:
        async with self._guarded("list_active_rooms") as session:
            result = await session.execute(
                select(RoomRecord).where(RoomRecord.state != RoomState.CLOSED.value)
            )
            return [_to_room(r) for r in result.scalars().all()]

    async def find_active_room_for(self, user_id: str) -> Room | None:
        for room in await self.list_active_rooms():
            if room.has_participant(user_id):
                return room
        return None
