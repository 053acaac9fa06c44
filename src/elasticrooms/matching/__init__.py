from elasticrooms.matching.rooms import optimal_room_count, rank_rooms, room_compatibility
from elasticrooms.matching.scorer import MatchScorer

__all__ = ["MatchScorer", "optimal_room_count", "rank_rooms", "room_compatibility"]
