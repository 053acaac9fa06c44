import enum

EARTH_RADIUS_KM: float = 6371.0
KM_PER_DEGREE: float = 111.0

# Elastic radius
R_MIN_KM: float = 5.0
R_MAX_KM: float = 100.0
K_DAMPING: float = 0.15
EXPANSION_STEP_KM: float = 2.5
TARGET_MAGIC_DENSITY: float = 3.0
HEARTBEAT_THRESHOLD_SECONDS: float = 600.0
RELEVANCE_FLOOR: float = 0.5

# Room sizes
OPTIMAL_SIZE: int = 4
MIN_SIZE: int = 2
MAX_SIZE: int = 6
CRITICAL_SIZE: int = 8

# Debounce
SPLIT_DELAY_SECONDS: float = 30.0
MERGE_DELAY_SECONDS: float = 60.0

# Merging and placement
LOCATION_CLUSTER_RADIUS_KM: float = 0.5
MIN_VIBE_FOR_MERGE: float = 40.0
MIN_MATCH_SCORE: float = 45.0
ROOM_VIBE_BONUS: float = 10.0
ROOM_DIVERSITY_FACTOR: float = 0.2
MAX_TOPICS: int = 5
NEW_ROOM_TOPICS: int = 3
MAX_SCORED_PARTICIPANTS: int = 10

# Matching
PROXIMITY_MAX_KM: float = 10.0
PROXIMITY_DECAY: float = 0.3
VIBE_DIMENSIONS: int = 8
NEUTRAL_VIBE: tuple[float, ...] = (0.5,) * VIBE_DIMENSIONS
DEFAULT_ACTIVITY_SCORE: float = 50.0
DEFAULT_ROOM_VIBE: float = 50.0
REASON_THRESHOLD: float = 60.0
MAX_REASONS: int = 3

MATCH_WEIGHTS: dict[str, float] = {
    "interests": 0.30,
    "vibe": 0.25,
    "activity": 0.15,
    "proximity": 0.15,
    "style": 0.10,
}

# Hotspots
HOTSPOT_CLUSTER_RADIUS_KM: float = 2.0
HOTSPOT_SEARCH_FACTOR: float = 3.0

# Control loop
EVENT_LOG_SIZE: int = 100
SWEEP_INTERVAL_SECONDS: float = 15.0
MAX_ACTIVITY_MESSAGES_PER_MINUTE: float = 5.0


class ConversationStyle(str, enum.Enum):
    LISTENER = "listener"
    TALKER = "talker"
    BALANCED = "balanced"


class EnergyLevel(str, enum.Enum):
    CHILL = "chill"
    MODERATE = "moderate"
    ENERGETIC = "energetic"

    @property
    def ordinal(self) -> int:
        return _ENERGY_ORDINALS[self]


_ENERGY_ORDINALS: dict[EnergyLevel, int] = {
    EnergyLevel.CHILL: 0,
    EnergyLevel.MODERATE: 1,
    EnergyLevel.ENERGETIC: 2,
}


class RoomState(str, enum.Enum):
    ACTIVE = "active"
    PENDING_SPLIT = "pending_split"
    PENDING_MERGE = "pending_merge"
    CLOSED = "closed"


class ScalingEventType(str, enum.Enum):
    CREATE = "create"
    SPLIT = "split"
    MERGE = "merge"
    CLOSE = "close"


class NotificationKind(str, enum.Enum):
    SPLIT = "split"
    MERGE = "merge"


class TimerAction(str, enum.Enum):
    SPLIT = "split"
    MERGE = "merge"
