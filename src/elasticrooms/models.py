from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from elasticrooms.constants import (
    DEFAULT_ACTIVITY_SCORE,
    DEFAULT_ROOM_VIBE,
    ConversationStyle,
    EnergyLevel,
    RoomState,
    ScalingEventType,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"Latitude out of range: {self.lat}")
        if not -180.0 <= self.lon <= 180.0:
            raise ValueError(f"Longitude out of range: {self.lon}")


@dataclass
class UserPresence:
    """Read-only snapshot of a user's heartbeat and matching features."""

    id: str
    location: GeoPoint | None = None
    last_heartbeat: datetime = field(default_factory=utcnow)
    interests: frozenset[str] = frozenset()
    vibe_vector: tuple[float, ...] | None = None
    activity_score: float = DEFAULT_ACTIVITY_SCORE
    conversation_style: ConversationStyle = ConversationStyle.BALANCED
    energy_level: EnergyLevel = EnergyLevel.MODERATE

    def __post_init__(self) -> None:
        self.interests = frozenset(self.interests)
        if self.vibe_vector is not None:
            self.vibe_vector = tuple(float(v) for v in self.vibe_vector)
        self.activity_score = max(0.0, min(100.0, float(self.activity_score)))
        self.conversation_style = ConversationStyle(self.conversation_style)
        self.energy_level = EnergyLevel(self.energy_level)

    def is_active(self, now: datetime, threshold_seconds: float) -> bool:
        return (now - self.last_heartbeat).total_seconds() <= threshold_seconds


UserFeatures = UserPresence


@dataclass
class Room:
    id: str
    host_id: str
    location: GeoPoint
    radius_km: float
    participants: list[str] = field(default_factory=list)
    vibe_score: float = DEFAULT_ROOM_VIBE
    activity_level: float = 0.0
    topics: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    state: RoomState = RoomState.ACTIVE
    parent_room_id: str | None = None
    merged_into_id: str | None = None
    close_reason: str | None = None
    closed_at: datetime | None = None
    version: int = 0

    @property
    def size(self) -> int:
        return len(self.participants)

    @property
    def is_active(self) -> bool:
        return self.state != RoomState.CLOSED

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants


@dataclass(frozen=True)
class ScalingEvent:
    type: ScalingEventType
    timestamp: datetime
    source_room_ids: tuple[str, ...]
    result_room_ids: tuple[str, ...]
    reason: str
    affected_user_ids: tuple[str, ...]


@dataclass
class Hotspot:
    id: str
    center: GeoPoint
    user_count: int
    average_activity: float
    distance_km: float


@dataclass
class DiscoveryResult:
    radius_km: float
    target_radius_km: float
    candidates: list[UserPresence] = field(default_factory=list)
    relevance: float = 0.5
    magic_density: float = 0.0
    expanded: bool = False
    steps: int = 0
    degraded: bool = False
    message: str | None = None
    hotspot: Hotspot | None = None

    @property
    def active_user_count(self) -> int:
        return len(self.candidates)


@dataclass
class MatchResult:
    score: int
    breakdown: dict[str, float]


@dataclass
class MatchReason:
    factor: str
    contribution: float


@dataclass
class RoomRanking:
    room: Room
    score: float
    reasons: list[MatchReason] = field(default_factory=list)


@dataclass
class Placement:
    room: Room
    score: float
    is_new_room: bool
    discovery: DiscoveryResult
    reasons: list[MatchReason] = field(default_factory=list)


@dataclass
class LocationCluster:
    center: GeoPoint
    rooms: list[Room]
    total_users: int
    optimal_room_count: int
    needs_rebalancing: bool
