from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from elasticrooms.constants import (
    DEFAULT_ROOM_VIBE,
    NEW_ROOM_TOPICS,
    NotificationKind,
    RoomState,
    ScalingEventType,
    TimerAction,
)
from elasticrooms.exceptions import (
    IncompatibleMerge,
    InvalidPartition,
    PreconditionStale,
    RoomNotFoundError,
    TransientQueryFailure,
)
from elasticrooms.geo import centroid, haversine_km
from elasticrooms.matching.rooms import (
    optimal_room_count,
    rank_rooms,
    room_activity_level,
    room_compatibility,
)
from elasticrooms.models import (
    GeoPoint,
    LocationCluster,
    MatchReason,
    Placement,
    Room,
    ScalingEvent,
    UserPresence,
    utcnow,
)
from elasticrooms.scaling.events import ScalingEventLog
from elasticrooms.scaling.partition import PartitionStrategy, RandomBalancedPartition
from elasticrooms.scaling.timers import RoomLocks, RoomTimers

if TYPE_CHECKING:
    from elasticrooms.config import ScalingSettings
    from elasticrooms.discovery.radius import RadiusCalculator
    from elasticrooms.matching.scorer import MatchScorer
    from elasticrooms.store.base import Notifier, PresenceStore, RoomStore

logger = structlog.get_logger(__name__)

REASON_EMPTY = "empty"
REASON_MERGED = "merged"
REASON_CRITICAL = "critical_size"
REASON_OVERSIZED = "max_size_exceeded"
REASON_UNDERSIZED = "below_min_size"


def _new_room_id() -> str:
    return str(uuid.uuid4())


def cluster_rooms(rooms: list[Room], cluster_radius_km: float) -> list[list[Room]]:
    """Greedy location grouping: each unassigned room seeds a group of rooms nearby."""
    groups: list[list[Room]] = []
    assigned: set[str] = set()
    for seed in sorted(rooms, key=lambda r: r.id):
        if seed.id in assigned:
            continue
        group = [seed]
        assigned.add(seed.id)
        for other in rooms:
            if other.id in assigned:
                continue
            if haversine_km(seed.location, other.location) <= cluster_radius_km:
                group.append(other)
                assigned.add(other.id)
        groups.append(group)
    return groups


class RoomScalingController:
    """Keeps room sizes inside the configured band by splitting and merging.

    Every read-modify-write of a room happens under that room's lock and is
    re-validated against the stored version. Size transitions are debounced by
    per-room timers; a room at critical size is split in the same call that
    pushed it there. A user moves between rooms under a per-user lock, so
    concurrent joins for one user land in a single room. Split and merge
    notifications are sent in the background.
    """

    def __init__(
        self,
        settings: ScalingSettings,
        presence_store: PresenceStore,
        room_store: RoomStore,
        notifier: Notifier,
        radius_calculator: RadiusCalculator,
        scorer: MatchScorer,
        partition_strategy: PartitionStrategy | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_room_id,
    ) -> None:
        self._settings = settings
        self._presences = presence_store
        self._rooms = room_store
        self._notifier = notifier
        self._radius = radius_calculator
        self._scorer = scorer
        self._partition = partition_strategy or RandomBalancedPartition()
        self._clock = clock
        self._new_id = id_factory

        self._locks = RoomLocks()
        self._user_locks = RoomLocks()
        self._notifications: set[asyncio.Task[None]] = set()
        self._timers = RoomTimers()
        self._events = ScalingEventLog(settings.event_log_size)
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def timers(self) -> RoomTimers:
        return self._timers

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def recent_events(self, limit: int = 10) -> list[ScalingEvent]:
        return self._events.recent(limit)

    # Size policy

    def _target_state(self, size: int) -> RoomState:
        if size > self._settings.max_size:
            return RoomState.PENDING_SPLIT
        if 0 < size < self._settings.min_size:
            return RoomState.PENDING_MERGE
        return RoomState.ACTIVE

    def _arm_timer(self, room: Room) -> None:
        if room.state == RoomState.PENDING_SPLIT:
            self._timers.schedule(
                room.id, TimerAction.SPLIT, self._settings.split_delay_seconds, self.on_split_timer
            )
        elif room.state == RoomState.PENDING_MERGE:
            self._timers.schedule(
                room.id, TimerAction.MERGE, self._settings.merge_delay_seconds, self.on_merge_timer
            )
        else:
            self._timers.cancel(room.id)

    def _notify_all(
        self, user_ids: Iterable[str], kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        """Deliver notifications in the background; callers never wait on them."""
        recipients = list(user_ids)
        if not recipients:
            return
        task = asyncio.create_task(self._deliver(recipients, kind, payload))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _deliver(
        self, user_ids: list[str], kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        await asyncio.gather(*(self._notify_one(u, kind, payload) for u in user_ids))

    async def _notify_one(
        self, user_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        try:
            await self._notifier.notify(user_id, kind, payload)
        except Exception as e:
            logger.warning(
                "Notification failed",
                user_id=user_id,
                kind=kind.value,
                error=str(e),
            )

    async def flush_notifications(self) -> None:
        """Wait until every queued notification has been delivered or has failed."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    @contextlib.asynccontextmanager
    async def _membership(self, user_id: str) -> AsyncIterator[None]:
        """Serialize one user's moves between rooms."""
        try:
            async with self._user_locks.hold(user_id):
                yield
        finally:
            self._user_locks.discard(user_id)

    # Placement

    async def place_user(self, user_id: str, location: GeoPoint | None = None) -> Placement:
        """Join the best-matching nearby room, or open a new one."""
        presence = await self._presences.get_presence(user_id)
        if presence is None:
            presence = UserPresence(id=user_id, location=location)
        elif location is not None:
            presence = dataclasses.replace(presence, location=location)
        if presence.location is None:
            raise ValueError(f"No location known for user {user_id}")
        center = presence.location

        discovery = await self._radius.discover(center, presence.interests, user_id)

        try:
            rooms = await self._rooms.list_active_rooms_near(center, discovery.radius_km)
            participant_ids = sorted({p for room in rooms for p in room.participants})
            features = await self._presences.get_presences(participant_ids)
        except TransientQueryFailure as e:
            logger.warning("Room lookup failed during placement", user_id=user_id, error=str(e))
            rooms, features = [], {}

        participants_by_room = {
            room.id: [features[p] for p in room.participants if p in features] for room in rooms
        }
        rankings = rank_rooms(
            presence,
            rooms,
            participants_by_room,
            self._scorer,
            max_size=self._settings.max_size,
            min_score=self._settings.min_match_score,
        )
        for ranking in rankings:
            try:
                room = await self.join(ranking.room.id, user_id)
            except RoomNotFoundError:
                continue
            logger.info(
                "User placed in existing room",
                user_id=user_id,
                room_id=room.id,
                score=round(ranking.score, 1),
            )
            return Placement(
                room=room,
                score=ranking.score,
                is_new_room=False,
                discovery=discovery,
                reasons=ranking.reasons,
            )

        topics = sorted(presence.interests)[:NEW_ROOM_TOPICS]
        room = await self.create_room(user_id, center, topics, discovery.radius_km)
        score = float(DEFAULT_ROOM_VIBE)
        if discovery.candidates:
            score = float(max(self._scorer.score(presence, c).score for c in discovery.candidates))
        return Placement(
            room=room,
            score=score,
            is_new_room=True,
            discovery=discovery,
            reasons=[MatchReason(factor="new_room", contribution=100.0)],
        )

    async def create_room(
        self,
        host_id: str,
        location: GeoPoint,
        topics: Iterable[str] = (),
        radius_km: float | None = None,
    ) -> Room:
        async with self._membership(host_id):
            previous = await self._rooms.find_active_room_for(host_id)
            if previous is not None:
                await self.leave(previous.id, host_id)

            now = self._clock()
            room = Room(
                id=self._new_id(),
                host_id=host_id,
                location=location,
                radius_km=radius_km if radius_km is not None else self._settings.r_min_km,
                participants=[host_id],
                topics=list(dict.fromkeys(topics))[: self._settings.max_topics],
                created_at=now,
                last_activity=now,
            )
            room = await self._rooms.put_room(room)
        self._events.record(
            ScalingEventType.CREATE,
            now,
            result_room_ids=[room.id],
            reason="created",
            affected_user_ids=[host_id],
        )
        return room

    # Membership

    async def join(self, room_id: str, user_id: str) -> Room:
        """Add a user to a room and return the room they end up in."""
        async with self._membership(user_id):
            previous = await self._rooms.find_active_room_for(user_id)
            if previous is not None:
                if previous.id == room_id:
                    return previous
                await self.leave(previous.id, user_id)

            async with self._locks.hold(room_id):
                room = await self._add_participant(room_id, user_id)
                if room.size >= self._settings.critical_size:
                    logger.info("Room reached critical size", room_id=room.id, size=room.size)
                    halves = await self._split_locked(room.id, reason=REASON_CRITICAL)
                    if halves is not None:
                        return next(r for r in halves if r.has_participant(user_id))
                self._arm_timer(room)
            return room

    @retry(
        retry=retry_if_exception_type(PreconditionStale),
        wait=wait_exponential(multiplier=0.05, max=1),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _add_participant(self, room_id: str, user_id: str) -> Room:
        room = await self._rooms.get_room(room_id)
        if room is None or not room.is_active:
            raise RoomNotFoundError(room_id)
        self._timers.cancel(room_id)
        if not room.has_participant(user_id):
            room.participants.append(user_id)
        room.last_activity = self._clock()
        room.state = self._target_state(room.size)
        return await self._rooms.put_room(room)

    async def leave(self, room_id: str, user_id: str) -> Room | None:
        """Remove a user; returns the room, or None once it is closed or gone."""
        async with self._locks.hold(room_id):
            room, removed = await self._remove_participant(room_id, user_id)
            if room is not None and room.is_active:
                if removed:
                    self._arm_timer(room)
                return room
        self._locks.discard(room_id)
        return None

    @retry(
        retry=retry_if_exception_type(PreconditionStale),
        wait=wait_exponential(multiplier=0.05, max=1),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _remove_participant(self, room_id: str, user_id: str) -> tuple[Room | None, bool]:
        room = await self._rooms.get_room(room_id)
        if room is None or not room.is_active:
            return None, False
        if not room.has_participant(user_id):
            return room, False

        self._timers.cancel(room_id)
        room.participants.remove(user_id)
        room.last_activity = self._clock()
        if not room.participants:
            return await self._close_locked(room, REASON_EMPTY), True

        if room.host_id == user_id:
            room.host_id = room.participants[0]
            logger.info("Host transferred", room_id=room_id, host_id=room.host_id)
        room.state = self._target_state(room.size)
        return await self._rooms.put_room(room), True

    async def close_room(self, room_id: str, reason: str) -> Room | None:
        async with self._locks.hold(room_id):
            room = await self._rooms.get_room(room_id)
            if room is None or not room.is_active:
                return room
            closed = await self._close_locked(room, reason)
        self._locks.discard(room_id)
        return closed

    async def _close_locked(
        self, room: Room, reason: str, merged_into_id: str | None = None
    ) -> Room:
        now = self._clock()
        self._timers.cancel(room.id)
        room.state = RoomState.CLOSED
        room.close_reason = reason
        room.closed_at = now
        room.merged_into_id = merged_into_id
        room = await self._rooms.put_room(room)
        if merged_into_id is None:
            self._events.record(
                ScalingEventType.CLOSE,
                now,
                source_room_ids=[room.id],
                reason=reason,
                affected_user_ids=room.participants,
            )
        return room

    async def update_room_activity(
        self, room_id: str, message_count: int, duration_seconds: float
    ) -> Room | None:
        async with self._locks.hold(room_id):
            room = await self._rooms.get_room(room_id)
            if room is None or not room.is_active:
                return None
            room.activity_level = room_activity_level(message_count, duration_seconds)
            room.last_activity = self._clock()
            try:
                return await self._rooms.put_room(room)
            except PreconditionStale:
                logger.info("Activity update skipped, room changed", room_id=room_id)
                return None

    # Splitting

    async def split_room(
        self, room_id: str, *, immediate: bool = False
    ) -> tuple[Room, Room] | None:
        reason = REASON_CRITICAL if immediate else REASON_OVERSIZED
        async with self._locks.hold(room_id):
            return await self._split_locked(room_id, reason=reason)

    async def _split_locked(self, room_id: str, *, reason: str) -> tuple[Room, Room] | None:
        room = await self._rooms.get_room(room_id)
        if room is None or not room.is_active:
            logger.info("Split abandoned, room closed", room_id=room_id)
            return None
        if room.size <= self._settings.max_size:
            logger.info("Split abandoned, room shrank", room_id=room_id, size=room.size)
            return None

        try:
            features = await self._presences.get_presences(list(room.participants))
        except TransientQueryFailure as e:
            logger.warning("Split without features", room_id=room_id, error=str(e))
            features = {}

        try:
            first, second = self._partition.partition(list(room.participants), features)
        except InvalidPartition as e:
            logger.warning("Split abandoned", room_id=room_id, error=str(e))
            return None
        if room.host_id in second:
            first, second = second, first

        now = self._clock()
        self._timers.cancel(room_id)
        original = dataclasses.replace(room, participants=list(room.participants))
        half_activity = room.activity_level / 2

        room.participants = first
        room.activity_level = half_activity
        room.last_activity = now
        room.state = self._target_state(room.size)
        sibling = Room(
            id=self._new_id(),
            host_id=second[0],
            location=room.location,
            radius_km=room.radius_km,
            participants=second,
            vibe_score=room.vibe_score,
            activity_level=half_activity,
            topics=list(room.topics),
            created_at=now,
            last_activity=now,
            parent_room_id=room.id,
        )
        sibling.state = self._target_state(sibling.size)

        try:
            kept = await self._rooms.put_room(room)
        except PreconditionStale:
            logger.info("Split abandoned, room changed", room_id=room_id)
            return None
        try:
            created = await self._rooms.put_room(sibling)
        except Exception:
            logger.exception("Failed to store split room, restoring original", room_id=room_id)
            original.version = kept.version
            await self._rooms.put_room(original)
            raise

        self._events.record(
            ScalingEventType.SPLIT,
            now,
            source_room_ids=[room_id],
            result_room_ids=[kept.id, created.id],
            reason=reason,
            affected_user_ids=original.participants,
        )
        for half in (kept, created):
            self._notify_all(
                half.participants,
                NotificationKind.SPLIT,
                {"room_id": half.id, "from_room_id": room_id, "reason": reason},
            )
            self._arm_timer(half)
        return kept, created

    async def on_split_timer(self, room_id: str) -> None:
        async with self._locks.hold(room_id):
            try:
                room = await self._rooms.get_room(room_id)
                if room is None or not room.is_active:
                    return
                if room.size > self._settings.max_size:
                    await self._split_locked(room_id, reason=REASON_OVERSIZED)
                else:
                    await self._settle_locked(room)
            except (TransientQueryFailure, PreconditionStale) as e:
                logger.warning("Split timer skipped", room_id=room_id, error=str(e))

    # Merging

    def _check_merge(self, room: Room, other: Room) -> float:
        if room.size + other.size > self._settings.max_size:
            raise IncompatibleMerge(
                f"Merging {room.id} and {other.id} would exceed {self._settings.max_size}"
            )
        compatibility = room_compatibility(room, other)
        if compatibility < self._settings.min_vibe_for_merge:
            raise IncompatibleMerge(
                f"Rooms {room.id} and {other.id} are not compatible ({compatibility:.1f})"
            )
        return compatibility

    async def find_merge_candidate(self, room_id: str) -> str | None:
        """Best nearby room to absorb or be absorbed by, ties broken by id."""
        room = await self._rooms.get_room(room_id)
        if room is None or not room.is_active:
            return None
        nearby = await self._rooms.list_active_rooms_near(
            room.location, self._settings.location_cluster_radius_km
        )

        best: tuple[float, str] | None = None
        for other in nearby:
            if other.id == room.id or not other.is_active:
                continue
            try:
                compatibility = self._check_merge(room, other)
            except IncompatibleMerge:
                continue
            candidate = (-compatibility, other.id)
            if best is None or candidate < best:
                best = candidate
        return best[1] if best is not None else None

    async def merge_rooms(self, room_id: str, other_id: str) -> Room | None:
        """Merge two rooms; the larger survives, the first argument on a tie."""
        if room_id == other_id:
            return None

        async with self._locks.hold(room_id, other_id):
            first = await self._rooms.get_room(room_id)
            second = await self._rooms.get_room(other_id)
            if first is None or second is None or not first.is_active or not second.is_active:
                logger.info("Merge abandoned, room closed", room_id=room_id, other_id=other_id)
                return None
            try:
                self._check_merge(first, second)
            except IncompatibleMerge as e:
                logger.info("Merge abandoned", room_id=room_id, other_id=other_id, error=str(e))
                return None

            survivor, absorbed = (first, second) if first.size >= second.size else (second, first)
            moved = [p for p in absorbed.participants if not survivor.has_participant(p)]
            now = self._clock()

            self._timers.cancel(survivor.id)
            self._timers.cancel(absorbed.id)
            survivor.participants.extend(moved)
            survivor.topics = list(dict.fromkeys(survivor.topics + absorbed.topics))[
                : self._settings.max_topics
            ]
            survivor.vibe_score = (survivor.vibe_score + absorbed.vibe_score) / 2
            survivor.last_activity = now
            survivor.state = self._target_state(survivor.size)

            reopened = dataclasses.replace(absorbed, participants=list(absorbed.participants))
            try:
                closed = await self._close_locked(
                    absorbed, REASON_MERGED, merged_into_id=survivor.id
                )
            except PreconditionStale:
                logger.info("Merge abandoned, room changed", room_id=absorbed.id)
                return None
            try:
                survivor = await self._rooms.put_room(survivor)
            except PreconditionStale:
                logger.warning(
                    "Merge abandoned, reopening absorbed room",
                    room_id=survivor.id,
                    absorbed_room_id=absorbed.id,
                )
                reopened.version = closed.version
                self._arm_timer(await self._rooms.put_room(reopened))
                return None

            self._events.record(
                ScalingEventType.MERGE,
                now,
                source_room_ids=[first.id, second.id],
                result_room_ids=[survivor.id],
                reason=REASON_UNDERSIZED,
                affected_user_ids=moved,
            )
            self._notify_all(
                moved,
                NotificationKind.MERGE,
                {"room_id": survivor.id, "from_room_id": absorbed.id},
            )
            self._arm_timer(survivor)

        self._locks.discard(absorbed.id)
        return survivor

    async def on_merge_timer(self, room_id: str) -> None:
        try:
            room = await self._rooms.get_room(room_id)
            if room is None or not room.is_active:
                return
            merged = None
            if 0 < room.size < self._settings.min_size:
                candidate = await self.find_merge_candidate(room_id)
                if candidate is not None:
                    merged = await self.merge_rooms(room_id, candidate)
            if merged is None:
                async with self._locks.hold(room_id):
                    room = await self._rooms.get_room(room_id)
                    if room is not None and room.is_active:
                        await self._settle_locked(room, allow_merge=False)
        except (TransientQueryFailure, PreconditionStale) as e:
            logger.warning("Merge timer skipped", room_id=room_id, error=str(e))

    async def _settle_locked(self, room: Room, *, allow_merge: bool = True) -> Room:
        """Bring a room's state in line with its size, re-arming timers."""
        state = self._target_state(room.size)
        if state == RoomState.PENDING_MERGE and not allow_merge:
            state = RoomState.ACTIVE
        if state != room.state:
            logger.info(
                "Room state changed", room_id=room.id, old=room.state.value, new=state.value
            )
            room.state = state
            room = await self._rooms.put_room(room)
        if allow_merge or state != RoomState.ACTIVE:
            self._arm_timer(room)
        return room

    # Control loop

    async def _ensure_timer(self, room_id: str) -> None:
        async with self._locks.hold(room_id):
            room = await self._rooms.get_room(room_id)
            if room is None or not room.is_active or room.id in self._timers:
                return
            state = self._target_state(room.size)
            if state == RoomState.ACTIVE and room.state == RoomState.ACTIVE:
                return
            await self._settle_locked(room)

    async def sweep(self) -> list[LocationCluster]:
        """Inspect every active room once and summarise load per location."""
        try:
            rooms = await self._rooms.list_active_rooms()
        except TransientQueryFailure as e:
            logger.warning("Sweep skipped", error=str(e))
            return []

        for room in rooms:
            try:
                if room.size >= self._settings.critical_size:
                    await self.split_room(room.id, immediate=True)
                elif room.size > self._settings.max_size or room.size < self._settings.min_size:
                    await self._ensure_timer(room.id)
            except (TransientQueryFailure, PreconditionStale) as e:
                logger.warning("Sweep skipped room", room_id=room.id, error=str(e))

        clusters: list[LocationCluster] = []
        for group in cluster_rooms(rooms, self._settings.location_cluster_radius_km):
            total = sum(r.size for r in group)
            optimal = optimal_room_count(
                total, self._settings.optimal_size, self._settings.room_diversity_factor
            )
            cluster = LocationCluster(
                center=centroid([r.location for r in group]),
                rooms=group,
                total_users=total,
                optimal_room_count=optimal,
                needs_rebalancing=abs(len(group) - optimal) > 1,
            )
            if cluster.needs_rebalancing:
                logger.info(
                    "Location needs rebalancing",
                    lat=round(cluster.center.lat, 4),
                    lon=round(cluster.center.lon, 4),
                    rooms=len(group),
                    optimal_rooms=optimal,
                    users=total,
                )
            clusters.append(cluster)

        logger.debug("Sweep complete", rooms=len(rooms), clusters=len(clusters))
        return clusters

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sweep failed")
            await asyncio.sleep(self._settings.sweep_interval_seconds)

    def start(self) -> None:
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._run(), name="elasticrooms-sweep")
        logger.info(
            "Room scaling controller started",
            sweep_interval_seconds=self._settings.sweep_interval_seconds,
        )

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        await self._timers.shutdown()
        await self.flush_notifications()
        logger.info("Room scaling controller stopped")
