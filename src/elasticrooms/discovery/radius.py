from __future__ import annotations

import math
from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog

from elasticrooms.constants import RELEVANCE_FLOOR
from elasticrooms.discovery.hotspots import find_nearest_hotspot
from elasticrooms.matching.scorer import jaccard_similarity
from elasticrooms.models import DiscoveryResult, GeoPoint, UserPresence

if TYPE_CHECKING:
    from elasticrooms.config import ScalingSettings
    from elasticrooms.store.base import PresenceStore

logger = structlog.get_logger(__name__)

NO_ACTIVITY_MESSAGE = "no nearby activity found"


def relevance_coefficient(
    user_interests: Iterable[str], nearby_interests: list[Iterable[str]]
) -> float:
    """Average Jaccard overlap with nearby users, shifted into [0.5, 1.5].

    Higher overlap tightens the radius. Without comparison data the floor applies.
    Users without any interests share nothing, so they add no overlap.
    """
    if not nearby_interests:
        return RELEVANCE_FLOOR
    own = set(user_interests)
    total = 0.0
    for other in nearby_interests:
        theirs = set(other)
        if own or theirs:
            total += jaccard_similarity(own, theirs)
    return RELEVANCE_FLOOR + total / len(nearby_interests)


def magic_density(active_user_count: int, radius_km: float) -> float:
    """Active users per square kilometre."""
    if radius_km <= 0:
        return 0.0
    return active_user_count / (math.pi * radius_km**2)


class RadiusCalculator:
    """Turns local density into an elastic discovery radius.

    R = R_min + (R_max - R_min) * exp(-k * D_active * relevance), clamped to
    [R_min, R_max]. Expansion towards the target radius happens in fixed steps,
    re-querying the presence store at each step.
    """

    def __init__(self, settings: ScalingSettings, presence_store: PresenceStore) -> None:
        self._settings = settings
        self._store = presence_store

    @property
    def r_min(self) -> float:
        return self._settings.r_min_km

    @property
    def r_max(self) -> float:
        return self._settings.r_max_km

    @property
    def max_steps(self) -> int:
        return math.ceil((self.r_max - self.r_min) / self._settings.expansion_step_km)

    def compute_radius(self, active_user_count: int, relevance: float) -> float:
        exponent = -self._settings.k_damping * max(0, active_user_count) * relevance
        radius = self.r_min + (self.r_max - self.r_min) * math.exp(exponent)
        return max(self.r_min, min(self.r_max, radius))

    async def _active_users(
        self, center: GeoPoint, radius_km: float, exclude: str | None
    ) -> list[UserPresence]:
        users = await self._store.query_active_users(
            center, radius_km, self._settings.heartbeat_threshold_seconds
        )
        return [u for u in users if u.id != exclude]

    def _degraded(self, error: Exception, center: GeoPoint) -> DiscoveryResult:
        logger.warning(
            "Nearby user query failed, falling back to minimum radius",
            lat=center.lat,
            lon=center.lon,
            error=str(error),
        )
        return DiscoveryResult(
            radius_km=self.r_min,
            target_radius_km=self.r_min,
            relevance=RELEVANCE_FLOOR,
            degraded=True,
        )

    async def discover(
        self,
        center: GeoPoint,
        interests: Iterable[str] = (),
        user_id: str | None = None,
    ) -> DiscoveryResult:
        """Find the radius and nearby active users for a requesting user."""
        current = self.r_min
        try:
            users = await self._active_users(center, current, user_id)
        except Exception as e:
            return self._degraded(e, center)

        relevance = relevance_coefficient(interests, [u.interests for u in users])
        target = self.compute_radius(len(users), relevance)
        density = magic_density(len(users), current)

        result = DiscoveryResult(
            radius_km=current,
            target_radius_km=target,
            candidates=users,
            relevance=relevance,
            magic_density=density,
        )

        if target <= current or density >= self._settings.target_magic_density:
            return result

        stalled = 0
        for _ in range(self.max_steps):
            if current >= target:
                break
            current = min(current + self._settings.expansion_step_km, target)
            try:
                users = await self._active_users(center, current, user_id)
            except Exception as e:
                return self._degraded(e, center)

            new_density = magic_density(len(users), current)
            stalled = stalled + 1 if new_density <= density else 0
            density = new_density

            result.expanded = True
            result.steps += 1
            result.radius_km = current
            result.candidates = users
            result.magic_density = density

            if stalled >= 2:
                result.message = NO_ACTIVITY_MESSAGE
                result.hotspot = await find_nearest_hotspot(
                    self._store, center, current, self._settings
                )
                logger.info(
                    "Radius expansion stalled",
                    radius_km=round(current, 2),
                    target_radius_km=round(target, 2),
                    steps=result.steps,
                    hotspot=result.hotspot.id if result.hotspot else None,
                )
                break

        logger.debug(
            "Discovery complete",
            radius_km=round(result.radius_km, 2),
            active_users=result.active_user_count,
            relevance=round(relevance, 3),
        )
        return result
