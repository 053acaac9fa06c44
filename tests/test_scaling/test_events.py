from datetime import UTC, datetime, timedelta

from elasticrooms.constants import ScalingEventType
from elasticrooms.scaling.events import ScalingEventLog

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class TestScalingEventLog:
    def test_records_event(self) -> None:
        log = ScalingEventLog(maxlen=10)

        event = log.record(
            ScalingEventType.SPLIT,
            T0,
            source_room_ids=["r1"],
            result_room_ids=["r1", "r2"],
            reason="critical_size",
            affected_user_ids=["a", "b"],
        )

        assert event.type == ScalingEventType.SPLIT
        assert event.source_room_ids == ("r1",)
        assert event.result_room_ids == ("r1", "r2")
        assert event.affected_user_ids == ("a", "b")
        assert len(log) == 1

    def test_bounded(self) -> None:
        log = ScalingEventLog(maxlen=3)
        for i in range(5):
            log.record(ScalingEventType.CREATE, T0 + timedelta(seconds=i), reason=f"e{i}")

        assert len(log) == 3
        assert [e.reason for e in log.recent(10)] == ["e2", "e3", "e4"]

    def test_recent_limit(self) -> None:
        log = ScalingEventLog()
        for i in range(5):
            log.record(ScalingEventType.CREATE, T0 + timedelta(seconds=i), reason=f"e{i}")

        assert [e.reason for e in log.recent(2)] == ["e3", "e4"]
        assert log.recent(0) == []

    def test_timestamps_never_go_backwards(self) -> None:
        log = ScalingEventLog()
        log.record(ScalingEventType.CREATE, T0, reason="first")

        event = log.record(ScalingEventType.CLOSE, T0 - timedelta(seconds=5), reason="second")

        assert event.timestamp == T0
