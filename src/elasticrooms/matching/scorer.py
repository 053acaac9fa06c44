from __future__ import annotations

import math
from collections.abc import Sequence, Set
from typing import TYPE_CHECKING

import numpy as np

from elasticrooms.constants import (
    MATCH_WEIGHTS,
    MAX_REASONS,
    NEUTRAL_VIBE,
    PROXIMITY_DECAY,
    PROXIMITY_MAX_KM,
    REASON_THRESHOLD,
    ConversationStyle,
    EnergyLevel,
)
from elasticrooms.geo import haversine_km
from elasticrooms.models import GeoPoint, MatchReason, MatchResult, UserFeatures

if TYPE_CHECKING:
    from elasticrooms.config import ScalingSettings


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    """|A ∩ B| / |A ∪ B|. Two empty sets carry no signal and score a neutral 0.5."""
    union = a | b
    if not union:
        return 0.5
    return len(a & b) / len(union)


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity remapped from [-1, 1] to [0, 1].

    Missing vectors are treated as the neutral vector; zero-norm or
    mismatched vectors score a neutral 0.5.
    """
    vec_a = np.asarray(a if a is not None else NEUTRAL_VIBE, dtype=np.float64)
    vec_b = np.asarray(b if b is not None else NEUTRAL_VIBE, dtype=np.float64)
    if vec_a.shape != vec_b.shape or vec_a.size == 0:
        return 0.5
    norm_a = float(np.linalg.norm(vec_a))
    norm_b = float(np.linalg.norm(vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.5
    # Elementwise product keeps the sum identical for swapped arguments.
    cos = float(np.sum(vec_a * vec_b)) / (norm_a * norm_b)
    cos = max(-1.0, min(1.0, cos))
    return (cos + 1) / 2


def activity_alignment(a: float, b: float) -> float:
    return max(0.0, 1 - abs(a - b) / 100)


def proximity_score(
    distance_km: float,
    decay: float = PROXIMITY_DECAY,
    max_km: float = PROXIMITY_MAX_KM,
) -> float:
    if distance_km > max_km:
        return 0.0
    return math.exp(-decay * distance_km)


def style_compatibility(a: ConversationStyle, b: ConversationStyle) -> float:
    if ConversationStyle.BALANCED in (a, b):
        return 0.9
    if a == b:
        return 0.6
    return 1.0


def energy_compatibility(a: EnergyLevel, b: EnergyLevel) -> float:
    return 1 - 0.3 * abs(a.ordinal - b.ordinal)


def _distance_km(a: GeoPoint, b: GeoPoint) -> float:
    # Canonical argument order makes the distance independent of who asks.
    first, second = sorted((a, b), key=lambda p: (p.lat, p.lon))
    return haversine_km(first, second)


class MatchScorer:
    """Weighted compatibility score between two users.

    S = 100 * Σ(w_i * f_i) / Σ(w_i) over interests (Jaccard), vibe (cosine),
    activity alignment, proximity decay and style/energy compatibility.
    Every factor is symmetric, so score(a, b) == score(b, a).
    """

    def __init__(
        self,
        settings: ScalingSettings | None = None,
        weights: dict[str, float] | None = None,
    ) -> None:
        self._weights = dict(weights or MATCH_WEIGHTS)
        if set(self._weights) != set(MATCH_WEIGHTS):
            raise ValueError(f"Weights must cover exactly {sorted(MATCH_WEIGHTS)}")
        self._weight_total = sum(self._weights.values())
        if self._weight_total <= 0:
            raise ValueError("Weights must sum to a positive value")
        self._proximity_decay = settings.proximity_decay if settings else PROXIMITY_DECAY
        self._proximity_max_km = settings.proximity_max_km if settings else PROXIMITY_MAX_KM

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def factors(self, a: UserFeatures, b: UserFeatures) -> dict[str, float]:
        """Each factor normalized to [0, 1]."""
        if a.location is not None and b.location is not None:
            proximity = proximity_score(
                _distance_km(a.location, b.location),
                self._proximity_decay,
                self._proximity_max_km,
            )
        else:
            proximity = 0.5

        style = (
            style_compatibility(a.conversation_style, b.conversation_style)
            + energy_compatibility(a.energy_level, b.energy_level)
        ) / 2

        return {
            "interests": jaccard_similarity(a.interests, b.interests),
            "vibe": cosine_similarity(a.vibe_vector, b.vibe_vector),
            "activity": activity_alignment(a.activity_score, b.activity_score),
            "proximity": proximity,
            "style": style,
        }

    def score(self, a: UserFeatures, b: UserFeatures) -> MatchResult:
        factors = self.factors(a, b)
        weighted = sum(self._weights[name] * value for name, value in factors.items())
        # The default weights sum to 0.95; dividing by the total lets a perfect match reach 100.
        total = 100 * weighted / self._weight_total
        return MatchResult(
            score=round(max(0.0, min(100.0, total))),
            breakdown={name: value * 100 for name, value in factors.items()},
        )

    @staticmethod
    def top_reasons(breakdown: dict[str, float]) -> list[MatchReason]:
        """Strongest factors above the reason threshold, best first."""
        strong = [
            MatchReason(factor=name, contribution=value)
            for name, value in breakdown.items()
            if value > REASON_THRESHOLD
        ]
        strong.sort(key=lambda r: (-r.contribution, r.factor))
        return strong[:MAX_REASONS]
