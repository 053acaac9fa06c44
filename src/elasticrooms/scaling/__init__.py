from elasticrooms.scaling.controller import RoomScalingController
from elasticrooms.scaling.events import ScalingEventLog
from elasticrooms.scaling.partition import (
    PartitionStrategy,
    RandomBalancedPartition,
    VibeAwarePartition,
)
from elasticrooms.scaling.timers import RoomLocks, RoomTimers

__all__ = [
    "PartitionStrategy",
    "RandomBalancedPartition",
    "RoomLocks",
    "RoomScalingController",
    "RoomTimers",
    "ScalingEventLog",
    "VibeAwarePartition",
]
