from __future__ import annotations

import math
import random
from collections.abc import Callable
from typing import TYPE_CHECKING

from elasticrooms.constants import (
    MAX_ACTIVITY_MESSAGES_PER_MINUTE,
    MAX_SCORED_PARTICIPANTS,
    ROOM_VIBE_BONUS,
)
from elasticrooms.models import MatchReason, Room, RoomRanking, UserPresence

if TYPE_CHECKING:
    from elasticrooms.matching.scorer import MatchScorer


def topic_overlap(a: list[str], b: list[str]) -> float:
    topics_a, topics_b = set(a), set(b)
    union = topics_a | topics_b
    if not union:
        return 0.0
    return len(topics_a & topics_b) / len(union)


def room_compatibility(a: Room, b: Room) -> float:
    """Room-to-room compatibility in [0, 100] used for merge decisions.

    Deliberately separate from user-to-user scoring: rooms are compared on
    topics, aggregate vibe and activity only.
    """
    topics = topic_overlap(a.topics, b.topics)
    vibe = 1 - abs(a.vibe_score - b.vibe_score) / 100
    activity = 1 - abs(a.activity_level - b.activity_level)
    return (topics * 0.4 + vibe * 0.4 + activity * 0.2) * 100


def optimal_room_count(
    total_users: int,
    optimal_size: int,
    variance: float,
    rng: Callable[[], float] = random.random,
) -> int:
    """N(L) = ceil(U / U_optimal) + sigma, with sigma growing slowly with U."""
    if total_users <= 0:
        return 0
    base = math.ceil(total_users / optimal_size)
    sigma = rng() * variance * math.sqrt(total_users / 10)
    return max(1, round(base + sigma))


def room_activity_level(message_count: int, duration_seconds: float) -> float:
    """Conversation density in [0, 1]; five messages a minute saturates."""
    if duration_seconds <= 0:
        return 0.0
    per_minute = message_count / (duration_seconds / 60)
    return max(0.0, min(1.0, per_minute / MAX_ACTIVITY_MESSAGES_PER_MINUTE))


def score_room(
    user: UserPresence,
    room: Room,
    participants: list[UserPresence],
    scorer: MatchScorer,
    default_score: float,
) -> RoomRanking:
    """Average match with the room's participants plus a room vibe bonus."""
    reasons: list[MatchReason] = []
    scored = participants[:MAX_SCORED_PARTICIPANTS]
    total = 0.0
    for participant in scored:
        result = scorer.score(user, participant)
        total += result.score
        reasons.extend(scorer.top_reasons(result.breakdown)[:1])

    average = total / len(scored) if scored else default_score
    bonus = room.vibe_score / 100 * ROOM_VIBE_BONUS
    reasons.sort(key=lambda r: -r.contribution)
    return RoomRanking(room=room, score=average + bonus, reasons=reasons[:3])


def rank_rooms(
    user: UserPresence,
    rooms: list[Room],
    participants_by_room: dict[str, list[UserPresence]],
    scorer: MatchScorer,
    *,
    max_size: int,
    min_score: float,
) -> list[RoomRanking]:
    """Joinable rooms scoring at least min_score, best first, ties by room id."""
    rankings: list[RoomRanking] = []
    for room in rooms:
        if not room.is_active or room.size >= max_size or room.has_participant(user.id):
            continue
        ranking = score_room(
            user, room, participants_by_room.get(room.id, []), scorer, default_score=min_score
        )
        if ranking.score >= min_score:
            rankings.append(ranking)
    rankings.sort(key=lambda r: (-r.score, r.room.id))
    return rankings
