from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Float, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from elasticrooms.constants import RoomState


class Base(DeclarativeBase):
    pass


class PresenceRecord(Base):
    __tablename__ = "presences"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_heartbeat: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(UTC), index=True
    )
    interests: Mapped[list[str]] = mapped_column(JSON, default=list)
    vibe_vector: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    activity_score: Mapped[float] = mapped_column(Float, default=50.0)
    conversation_style: Mapped[str] = mapped_column(String(16), default="balanced")
    energy_level: Mapped[str] = mapped_column(String(16), default="moderate")

    def __repr__(self) -> str:
        return f"<PresenceRecord(id={self.id!r}, last_heartbeat={self.last_heartbeat!r})>"


class RoomRecord(Base):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    host_id: Mapped[str] = mapped_column(String(64), nullable=False)
    participants: Mapped[list[str]] = mapped_column(JSON, default=list)
    lat: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_km: Mapped[float] = mapped_column(Float, nullable=False)
    vibe_score: Mapped[float] = mapped_column(Float, default=50.0)
    activity_level: Mapped[float] = mapped_column(Float, default=0.0)
    topics: Mapped[list[str]] = mapped_column(JSON, default=list)
    state: Mapped[str] = mapped_column(String(16), default=RoomState.ACTIVE.value, index=True)
    parent_room_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    merged_into_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    close_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))
    last_activity: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(UTC))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    def __repr__(self) -> str:
        return f"<RoomRecord(id={self.id!r}, state={self.state!r}, version={self.version})>"
