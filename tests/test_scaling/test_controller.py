import asyncio
import itertools
import random
from unittest.mock import AsyncMock

import pytest

from elasticrooms.config import ScalingSettings
from elasticrooms.constants import NotificationKind, RoomState, ScalingEventType, TimerAction
from elasticrooms.discovery.radius import RadiusCalculator
from elasticrooms.exceptions import (
    NotificationError,
    PreconditionStale,
    RoomNotFoundError,
    TransientQueryFailure,
)
from elasticrooms.matching.scorer import MatchScorer
from elasticrooms.models import Room
from elasticrooms.notify.dispatcher import LoggingNotifier
from elasticrooms.scaling.controller import RoomScalingController, cluster_rooms
from elasticrooms.scaling.partition import RandomBalancedPartition
from elasticrooms.store.memory import InMemoryStore


class FlakyStore(InMemoryStore):
    def __init__(self, clock) -> None:
        super().__init__(clock=clock)
        self.stale_puts = 0
        self.puts_before_stale = 0

    async def put_room(self, room: Room) -> Room:
        if self.stale_puts:
            if self.puts_before_stale:
                self.puts_before_stale -= 1
            else:
                self.stale_puts -= 1
                raise PreconditionStale(room.id)
        return await super().put_room(room)


class YieldingStore(InMemoryStore):
    """Gives other tasks a turn before every room read."""

    async def get_room(self, room_id: str) -> Room | None:
        await asyncio.sleep(0)
        return await super().get_room(room_id)

    async def find_active_room_for(self, user_id: str) -> Room | None:
        await asyncio.sleep(0)
        return await super().find_active_room_for(user_id)


@pytest.fixture
def fast_settings():
    return ScalingSettings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        split_delay_seconds=0.01,
        merge_delay_seconds=0.02,
    )


@pytest.fixture
def notifier():
    return AsyncMock(spec=LoggingNotifier)


@pytest.fixture
async def make_controller(clock, notifier):
    created: list[RoomScalingController] = []

    def _make(settings: ScalingSettings, store: InMemoryStore) -> RoomScalingController:
        ids = itertools.count(1)
        controller = RoomScalingController(
            settings=settings,
            presence_store=store,
            room_store=store,
            notifier=notifier,
            radius_calculator=RadiusCalculator(settings, store),
            scorer=MatchScorer(settings),
            partition_strategy=RandomBalancedPartition(random.Random(0)),
            clock=clock,
            id_factory=lambda: f"room-{next(ids)}",
        )
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        await controller.stop()


@pytest.fixture
def controller(make_controller, settings, store):
    return make_controller(settings, store)


async def seed_room(
    controller: RoomScalingController,
    size: int,
    location,
    prefix: str = "u",
    topics: tuple[str, ...] = ("music",),
) -> Room:
    room = await controller.create_room(f"{prefix}0", location, topics)
    for i in range(1, size):
        room = await controller.join(room.id, f"{prefix}{i}")
    return room


class TestCreateAndJoin:
    async def test_create_room(self, controller, store, origin) -> None:
        room = await controller.create_room("host", origin, ["music", "art"], radius_km=7.5)

        assert room.host_id == "host"
        assert room.participants == ["host"]
        assert room.topics == ["music", "art"]
        assert room.radius_km == 7.5
        assert room.state == RoomState.ACTIVE
        assert room.version == 1
        assert (await store.get_room(room.id)) == room
        assert controller.recent_events()[-1].type == ScalingEventType.CREATE

    async def test_create_room_caps_topics(self, controller, origin) -> None:
        room = await controller.create_room("host", origin, ["a", "b", "c", "d", "e", "f"])

        assert room.topics == ["a", "b", "c", "d", "e"]

    async def test_join(self, controller, origin) -> None:
        room = await controller.create_room("host", origin)

        joined = await controller.join(room.id, "guest")

        assert joined.participants == ["host", "guest"]
        assert joined.state == RoomState.ACTIVE

    async def test_join_is_idempotent(self, controller, origin) -> None:
        room = await controller.create_room("host", origin)
        await controller.join(room.id, "guest")

        again = await controller.join(room.id, "guest")

        assert again.participants == ["host", "guest"]

    async def test_join_missing_room(self, controller) -> None:
        with pytest.raises(RoomNotFoundError):
            await controller.join("nope", "guest")

    async def test_join_closed_room(self, controller, origin) -> None:
        room = await controller.create_room("host", origin)
        await controller.close_room(room.id, "moderation")

        with pytest.raises(RoomNotFoundError):
            await controller.join(room.id, "guest")

    async def test_join_leaves_previous_room(self, controller, store, origin) -> None:
        first = await seed_room(controller, 3, origin, prefix="a")
        second = await controller.create_room("b0", origin)

        await controller.join(second.id, "a2")

        previous = await store.get_room(first.id)
        assert previous.participants == ["a0", "a1"]
        assert (await store.find_active_room_for("a2")).id == second.id

    async def test_join_over_max_schedules_split(self, controller, origin) -> None:
        room = await seed_room(controller, 7, origin)

        assert room.size == 7
        assert room.state == RoomState.PENDING_SPLIT
        assert controller.timers.pending(room.id) == TimerAction.SPLIT

    async def test_join_at_critical_size_splits_immediately(
        self, controller, store, notifier, origin
    ) -> None:
        room = await seed_room(controller, 7, origin)

        joined = await controller.join(room.id, "u7")

        assert joined.has_participant("u7")
        rooms = await store.list_active_rooms()
        assert len(rooms) == 2
        assert sorted(r.size for r in rooms) == [4, 4]
        assert all(r.size < 8 for r in rooms)
        assert sorted(p for r in rooms for p in r.participants) == [f"u{i}" for i in range(8)]

        kept = next(r for r in rooms if r.id == room.id)
        sibling = next(r for r in rooms if r.id != room.id)
        assert kept.host_id == "u0"
        assert sibling.parent_room_id == room.id
        assert sibling.topics == ["music"]
        assert controller.timers.pending(room.id) is None

        split = controller.recent_events()[-1]
        assert split.type == ScalingEventType.SPLIT
        assert split.source_room_ids == (room.id,)
        assert set(split.result_room_ids) == {room.id, sibling.id}
        await controller.flush_notifications()
        assert notifier.notify.await_count == 8
        kinds = {call.args[1] for call in notifier.notify.await_args_list}
        assert kinds == {NotificationKind.SPLIT}


class TestLeave:
    async def test_host_transfer(self, controller, origin) -> None:
        room = await seed_room(controller, 3, origin)

        remaining = await controller.leave(room.id, "u0")

        assert remaining.host_id == "u1"
        assert remaining.participants == ["u1", "u2"]

    async def test_last_leave_closes_room(self, controller, store, origin) -> None:
        room = await controller.create_room("host", origin)

        assert await controller.leave(room.id, "host") is None

        closed = await store.get_room(room.id)
        assert closed.state == RoomState.CLOSED
        assert closed.close_reason == "empty"
        assert controller.recent_events()[-1].type == ScalingEventType.CLOSE

    async def test_leave_below_min_schedules_merge(self, controller, origin) -> None:
        room = await seed_room(controller, 2, origin)

        remaining = await controller.leave(room.id, "u1")

        assert remaining.state == RoomState.PENDING_MERGE
        assert controller.timers.pending(room.id) == TimerAction.MERGE

    async def test_leave_by_non_member_keeps_timer(self, controller, origin) -> None:
        room = await seed_room(controller, 7, origin)
        timer = controller.timers._timers[room.id]

        await controller.leave(room.id, "stranger")

        assert controller.timers._timers[room.id] is timer

    async def test_leave_back_under_max_cancels_split(self, controller, origin) -> None:
        room = await seed_room(controller, 7, origin)

        remaining = await controller.leave(room.id, "u6")

        assert remaining.state == RoomState.ACTIVE
        assert controller.timers.pending(room.id) is None


class TestSplit:
    async def test_split_keeps_host_and_lineage(self, controller, store, origin) -> None:
        room = await seed_room(controller, 7, origin)

        kept, sibling = await controller.split_room(room.id)

        assert kept.id == room.id
        assert kept.has_participant("u0")
        assert kept.host_id == "u0"
        assert sibling.parent_room_id == room.id
        assert sibling.host_id == sibling.participants[0]
        assert kept.size + sibling.size == 7
        assert not set(kept.participants) & set(sibling.participants)

    async def test_split_halves_activity(self, controller, origin) -> None:
        room = await seed_room(controller, 7, origin)
        await controller.update_room_activity(room.id, 10, 120)

        kept, sibling = await controller.split_room(room.id)

        assert kept.activity_level == pytest.approx(0.5)
        assert sibling.activity_level == pytest.approx(0.5)

    async def test_split_abandoned_when_small_enough(self, controller, origin) -> None:
        room = await seed_room(controller, 5, origin)

        assert await controller.split_room(room.id) is None

    async def test_split_abandoned_on_stale_room(
        self, make_controller, settings, clock, origin
    ) -> None:
        flaky = FlakyStore(clock)
        controller = make_controller(settings, flaky)
        room = await seed_room(controller, 7, origin)

        flaky.stale_puts = 1
        assert await controller.split_room(room.id) is None

        unchanged = await flaky.get_room(room.id)
        assert unchanged.size == 7
        assert len(await flaky.list_active_rooms()) == 1
        assert controller.recent_events()[-1].type != ScalingEventType.SPLIT

    async def test_split_timer_abandons_when_room_shrank(self, controller, store, origin) -> None:
        room = await seed_room(controller, 7, origin)
        stored = await store.get_room(room.id)
        stored.participants.remove("u6")
        await store.put_room(stored)

        await controller.on_split_timer(room.id)

        after = await store.get_room(room.id)
        assert after.size == 6
        assert after.state == RoomState.ACTIVE
        assert len(await store.list_active_rooms()) == 1

    async def test_notification_failure_is_not_fatal(
        self, controller, store, notifier, origin
    ) -> None:
        notifier.notify.side_effect = NotificationError("webhook down")
        room = await seed_room(controller, 7, origin)

        result = await controller.split_room(room.id)

        assert result is not None
        assert len(await store.list_active_rooms()) == 2


class TestMerge:
    async def test_merge_larger_absorbs_smaller(
        self, controller, store, notifier, origin
    ) -> None:
        small = await seed_room(controller, 2, origin, prefix="s")
        large = await seed_room(controller, 3, origin, prefix="l", topics=("music", "art"))

        survivor = await controller.merge_rooms(small.id, large.id)

        assert survivor.id == large.id
        assert survivor.participants == ["l0", "l1", "l2", "s0", "s1"]
        assert survivor.topics == ["music", "art"]
        absorbed = await store.get_room(small.id)
        assert absorbed.state == RoomState.CLOSED
        assert absorbed.merged_into_id == large.id
        assert (await store.get_room(absorbed.merged_into_id)).is_active

        merge = controller.recent_events()[-1]
        assert merge.type == ScalingEventType.MERGE
        assert merge.affected_user_ids == ("s0", "s1")
        await controller.flush_notifications()
        notifier.notify.assert_any_await(
            "s0", NotificationKind.MERGE, {"room_id": large.id, "from_room_id": small.id}
        )

    async def test_merge_tie_first_argument_survives(self, controller, origin) -> None:
        a = await seed_room(controller, 2, origin, prefix="a")
        b = await seed_room(controller, 2, origin, prefix="b")

        survivor = await controller.merge_rooms(b.id, a.id)

        assert survivor.id == b.id

    async def test_merge_averages_vibe(self, controller, store, origin) -> None:
        a = await seed_room(controller, 2, origin, prefix="a")
        b = await seed_room(controller, 2, origin, prefix="b")
        stored = await store.get_room(b.id)
        stored.vibe_score = 70
        await store.put_room(stored)

        survivor = await controller.merge_rooms(a.id, b.id)

        assert survivor.vibe_score == pytest.approx(60)

    async def test_merge_never_exceeds_max(self, controller, store, origin) -> None:
        a = await seed_room(controller, 4, origin, prefix="a")
        b = await seed_room(controller, 3, origin, prefix="b")

        assert await controller.merge_rooms(a.id, b.id) is None
        assert await controller.find_merge_candidate(b.id) is None
        assert len(await store.list_active_rooms()) == 2

    async def test_merge_with_closed_room_abandoned(self, controller, origin) -> None:
        a = await seed_room(controller, 2, origin, prefix="a")
        b = await seed_room(controller, 2, origin, prefix="b")
        await controller.close_room(b.id, "moderation")

        assert await controller.merge_rooms(a.id, b.id) is None

    async def test_merge_reopens_absorbed_room_when_survivor_changed(
        self, make_controller, settings, clock, origin
    ) -> None:
        flaky = FlakyStore(clock)
        controller = make_controller(settings, flaky)
        small = await seed_room(controller, 2, origin, prefix="s")
        large = await seed_room(controller, 3, origin, prefix="l")

        flaky.puts_before_stale = 1
        flaky.stale_puts = 1
        assert await controller.merge_rooms(small.id, large.id) is None

        reopened = await flaky.get_room(small.id)
        assert reopened.is_active
        assert reopened.participants == ["s0", "s1"]
        assert reopened.merged_into_id is None
        assert (await flaky.get_room(large.id)).participants == ["l0", "l1", "l2"]
        for user in ("s0", "s1"):
            assert (await flaky.find_active_room_for(user)).id == small.id
        assert controller.recent_events()[-1].type != ScalingEventType.MERGE

    async def test_find_merge_candidate_prefers_compatible(
        self, controller, store, origin, place
    ) -> None:
        lonely = await seed_room(controller, 1, origin, prefix="x")
        match = await seed_room(controller, 2, origin, prefix="m")
        other = await seed_room(controller, 2, origin, prefix="o", topics=("finance",))
        await seed_room(controller, 2, place(origin, north_km=3), prefix="far")

        assert await controller.find_merge_candidate(lonely.id) == match.id
        await controller.close_room(match.id, "moderation")
        assert await controller.find_merge_candidate(lonely.id) == other.id

    async def test_incompatible_rooms_not_merged(self, controller, store, origin) -> None:
        a = await seed_room(controller, 1, origin, prefix="a", topics=("music",))
        b = await seed_room(controller, 1, origin, prefix="b", topics=("finance",))
        stored = await store.get_room(b.id)
        stored.vibe_score = 100
        stored.activity_level = 1.0
        await store.put_room(stored)

        assert await controller.find_merge_candidate(a.id) is None


class TestTimers:
    async def test_split_timer_splits_oversized_room(
        self, make_controller, fast_settings, store, origin
    ) -> None:
        controller = make_controller(fast_settings, store)
        room = await seed_room(controller, 7, origin)

        await asyncio.sleep(0.1)

        rooms = await store.list_active_rooms()
        assert sorted(r.size for r in rooms) == [3, 4]
        assert next(r for r in rooms if r.id == room.id).state == RoomState.ACTIVE

    async def test_split_debounce_cancelled_by_leave(
        self, make_controller, fast_settings, store, origin
    ) -> None:
        controller = make_controller(fast_settings, store)
        room = await seed_room(controller, 7, origin)
        await controller.leave(room.id, "u6")

        await asyncio.sleep(0.1)

        assert len(await store.list_active_rooms()) == 1
        assert all(e.type != ScalingEventType.SPLIT for e in controller.recent_events(100))

    async def test_merge_timer_without_candidate_returns_to_active(
        self, make_controller, fast_settings, store, origin
    ) -> None:
        controller = make_controller(fast_settings, store)
        room = await seed_room(controller, 2, origin)
        await controller.leave(room.id, "u1")

        await asyncio.sleep(0.1)

        after = await store.get_room(room.id)
        assert after.state == RoomState.ACTIVE
        assert after.size == 1
        assert controller.timers.pending(room.id) is None

    async def test_merge_timer_merges_into_neighbour(
        self, make_controller, fast_settings, store, notifier, origin
    ) -> None:
        controller = make_controller(fast_settings, store)
        small = await seed_room(controller, 2, origin, prefix="s")
        large = await seed_room(controller, 3, origin, prefix="l")
        await controller.leave(small.id, "s1")

        await asyncio.sleep(0.1)

        absorbed = await store.get_room(small.id)
        assert absorbed.state == RoomState.CLOSED
        assert absorbed.merged_into_id == large.id
        survivor = await store.get_room(large.id)
        assert survivor.participants == ["l0", "l1", "l2", "s0"]
        await controller.flush_notifications()
        notifier.notify.assert_any_await(
            "s0", NotificationKind.MERGE, {"room_id": large.id, "from_room_id": small.id}
        )

    async def test_merge_debounce_cancelled_by_join(
        self, make_controller, fast_settings, store, origin
    ) -> None:
        controller = make_controller(fast_settings, store)
        small = await seed_room(controller, 2, origin, prefix="s")
        await seed_room(controller, 3, origin, prefix="l")
        await controller.leave(small.id, "s1")
        await controller.join(small.id, "s2")

        await asyncio.sleep(0.1)

        assert (await store.get_room(small.id)).state == RoomState.ACTIVE
        assert len(await store.list_active_rooms()) == 2


class TestPlacement:
    async def test_creates_room_when_nothing_nearby(self, controller, store, make_user) -> None:
        store.upsert_presence(make_user("me", interests={"tech", "art", "music", "film"}))

        placement = await controller.place_user("me")

        assert placement.is_new_room
        assert placement.room.host_id == "me"
        assert placement.room.topics == ["art", "film", "music"]
        assert placement.room.radius_km == placement.discovery.radius_km

    async def test_joins_compatible_room(self, controller, store, make_user, origin) -> None:
        for uid in ("host", "p1", "me"):
            store.upsert_presence(make_user(uid, interests={"music"}))
        room = await controller.create_room("host", origin, ["music"])
        await controller.join(room.id, "p1")

        placement = await controller.place_user("me")

        assert not placement.is_new_room
        assert placement.room.id == room.id
        assert placement.room.participants == ["host", "p1", "me"]
        assert placement.score >= 45
        assert placement.reasons

    async def test_skips_full_rooms(self, controller, store, make_user, origin) -> None:
        store.upsert_presence(make_user("me", interests={"music"}))
        full = await seed_room(controller, 6, origin)

        placement = await controller.place_user("me")

        assert placement.is_new_room
        assert placement.room.id != full.id

    async def test_unknown_user_with_location(self, controller, origin) -> None:
        placement = await controller.place_user("ghost", origin)

        assert placement.is_new_room
        assert placement.room.location == origin

    async def test_no_location_rejected(self, controller) -> None:
        with pytest.raises(ValueError, match="No location"):
            await controller.place_user("ghost")


class TestSweep:
    async def test_sweep_splits_critical_rooms(self, controller, store, origin) -> None:
        big = Room(
            id="big",
            host_id="u0",
            location=origin,
            radius_km=5.0,
            participants=[f"u{i}" for i in range(9)],
        )
        await store.put_room(big)

        await controller.sweep()

        rooms = await store.list_active_rooms()
        assert sorted(r.size for r in rooms) == [4, 5]

    async def test_sweep_arms_missing_timers(self, controller, store, origin) -> None:
        lonely = await controller.create_room("solo", origin)
        crowded = Room(
            id="crowded",
            host_id="u0",
            location=origin,
            radius_km=5.0,
            participants=[f"u{i}" for i in range(7)],
        )
        await store.put_room(crowded)

        await controller.sweep()

        assert controller.timers.pending(lonely.id) == TimerAction.MERGE
        assert controller.timers.pending("crowded") == TimerAction.SPLIT
        assert (await store.get_room("crowded")).state == RoomState.PENDING_SPLIT

    async def test_sweep_summarises_locations(self, controller, origin, place) -> None:
        await seed_room(controller, 2, origin, prefix="a")
        await seed_room(controller, 3, origin, prefix="b")
        await seed_room(controller, 2, place(origin, north_km=20), prefix="c")

        clusters = await controller.sweep()

        assert sorted(c.total_users for c in clusters) == [2, 5]
        assert sorted(len(c.rooms) for c in clusters) == [1, 2]

    async def test_sweep_survives_store_failure(self, controller) -> None:
        controller._rooms = AsyncMock()
        controller._rooms.list_active_rooms.side_effect = TransientQueryFailure("store down")

        assert await controller.sweep() == []

    async def test_start_and_stop(self, controller) -> None:
        controller.start()
        assert controller.is_running

        await controller.stop()

        assert not controller.is_running


class TestConcurrency:
    async def test_concurrent_joins_by_one_user_end_in_one_room(
        self, make_controller, settings, clock, origin
    ) -> None:
        store = YieldingStore(clock=clock)
        controller = make_controller(settings, store)
        first = await controller.create_room("a", origin)
        second = await controller.create_room("b", origin)

        await asyncio.gather(controller.join(first.id, "u"), controller.join(second.id, "u"))

        rooms = [r.id for r in await store.list_active_rooms() if r.has_participant("u")]
        assert len(rooms) == 1

    async def test_concurrent_creates_by_one_host_leave_one_room(
        self, make_controller, settings, clock, origin
    ) -> None:
        store = YieldingStore(clock=clock)
        controller = make_controller(settings, store)

        await asyncio.gather(
            controller.create_room("host", origin), controller.create_room("host", origin)
        )

        rooms = await store.list_active_rooms()
        assert [r.participants for r in rooms] == [["host"]]

    async def test_slow_notifier_does_not_delay_join(
        self, controller, notifier, origin
    ) -> None:
        async def slow_notify(*args) -> None:
            await asyncio.sleep(0.2)

        notifier.notify.side_effect = slow_notify
        room = await seed_room(controller, 7, origin)
        loop = asyncio.get_running_loop()

        started = loop.time()
        await controller.join(room.id, "u7")
        elapsed = loop.time() - started

        assert elapsed < 0.15
        await controller.flush_notifications()
        assert notifier.notify.await_count == 8


class TestInvariants:
    async def test_random_operations_keep_rooms_consistent(self, controller, store, origin) -> None:
        rng = random.Random(1234)
        users = [f"u{i}" for i in range(40)]

        for _ in range(300):
            user = rng.choice(users)
            rooms = await store.list_active_rooms()
            current = await store.find_active_room_for(user)
            action = rng.random()
            if action < 0.15 or not rooms:
                await controller.create_room(user, origin, ["music"])
            elif action < 0.75:
                await controller.join(rng.choice(rooms).id, user)
            elif current is not None:
                await controller.leave(current.id, user)

            seen: set[str] = set()
            for room in await store.list_active_rooms():
                assert 1 <= room.size < 8
                assert not seen & set(room.participants)
                seen.update(room.participants)
                assert room.host_id in room.participants


class TestClusterRooms:
    def test_groups_by_distance(self, origin, place) -> None:
        rooms = [
            Room(id="a", host_id="x", location=origin, radius_km=5),
            Room(id="b", host_id="x", location=place(origin, north_km=0.3), radius_km=5),
            Room(id="c", host_id="x", location=place(origin, north_km=10), radius_km=5),
        ]

        groups = cluster_rooms(rooms, 0.5)

        assert [[r.id for r in g] for g in groups] == [["a", "b"], ["c"]]
