from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from datetime import datetime

import structlog

from elasticrooms.constants import EVENT_LOG_SIZE, ScalingEventType
from elasticrooms.models import ScalingEvent

logger = structlog.get_logger(__name__)


class ScalingEventLog:
    """Append-only ring buffer of scaling events with monotonic timestamps."""

    def __init__(self, maxlen: int = EVENT_LOG_SIZE) -> None:
        self._events: deque[ScalingEvent] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._events)

    def record(
        self,
        event_type: ScalingEventType,
        timestamp: datetime,
        *,
        source_room_ids: Iterable[str] = (),
        result_room_ids: Iterable[str] = (),
        reason: str,
        affected_user_ids: Iterable[str] = (),
    ) -> ScalingEvent:
        if self._events and timestamp < self._events[-1].timestamp:
            timestamp = self._events[-1].timestamp
        event = ScalingEvent(
            type=event_type,
            timestamp=timestamp,
            source_room_ids=tuple(source_room_ids),
            result_room_ids=tuple(result_room_ids),
            reason=reason,
            affected_user_ids=tuple(affected_user_ids),
        )
        self._events.append(event)
        logger.info(
            "Scaling event",
            type=event_type.value,
            source=list(event.source_room_ids),
            result=list(event.result_room_ids),
            reason=reason,
        )
        return event

    def recent(self, limit: int = 10) -> list[ScalingEvent]:
        if limit <= 0:
            return []
        return list(self._events)[-limit:]
