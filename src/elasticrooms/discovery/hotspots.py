from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from elasticrooms.constants import HOTSPOT_SEARCH_FACTOR
from elasticrooms.geo import centroid, haversine_km
from elasticrooms.models import GeoPoint, Hotspot, UserPresence

if TYPE_CHECKING:
    from elasticrooms.config import ScalingSettings
    from elasticrooms.store.base import PresenceStore

logger = structlog.get_logger(__name__)


@dataclass
class UserCluster:
    center: GeoPoint
    users: list[UserPresence]


def cluster_users(users: list[UserPresence], cluster_radius_km: float) -> list[UserCluster]:
    """Greedy clustering: each unassigned user seeds a cluster of its unassigned neighbours."""
    located = [u for u in users if u.location is not None]
    if len(located) < 3:
        return []

    clusters: list[UserCluster] = []
    assigned: set[str] = set()
    for seed in located:
        if seed.id in assigned:
            continue
        assert seed.location is not None
        members = [
            u
            for u in located
            if u.id not in assigned
            and u.location is not None
            and haversine_km(seed.location, u.location) <= cluster_radius_km
        ]
        if len(members) >= 2:
            center = centroid(u.location for u in members if u.location is not None)
            clusters.append(UserCluster(center=center, users=members))
            assigned.update(u.id for u in members)
    return clusters


async def find_nearest_hotspot(
    store: PresenceStore,
    center: GeoPoint,
    current_radius_km: float,
    settings: ScalingSettings,
) -> Hotspot | None:
    """Nearest cluster of active users beyond the current radius, if any."""
    search_radius = min(current_radius_km * HOTSPOT_SEARCH_FACTOR, settings.r_max_km)
    try:
        users = await store.query_active_users(
            center, search_radius, settings.heartbeat_threshold_seconds
        )
    except Exception as e:
        logger.warning("Hotspot search failed", error=str(e))
        return None

    nearest: Hotspot | None = None
    for cluster in cluster_users(users, settings.hotspot_cluster_radius_km):
        distance = haversine_km(center, cluster.center)
        if distance <= current_radius_km:
            continue
        if nearest is None or distance < nearest.distance_km:
            nearest = Hotspot(
                id=f"cluster-{cluster.center.lat:.4f}-{cluster.center.lon:.4f}",
                center=cluster.center,
                user_count=len(cluster.users),
                average_activity=sum(u.activity_score for u in cluster.users)
                / len(cluster.users),
                distance_km=distance,
            )
    return nearest
