from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

import structlog

from elasticrooms.constants import TimerAction

logger = structlog.get_logger(__name__)

TimerCallback = Callable[[str], Awaitable[None]]


@dataclass
class PendingTimer:
    room_id: str
    action: TimerAction
    delay_seconds: float
    task: asyncio.Task[None]


class RoomTimers:
    """One debounce timer per room id.

    Scheduling a timer for a room cancels the previous one. A timer removes
    itself from the index before running its callback, so a later cancel never
    interrupts a transition that has already started.
    """

    def __init__(self) -> None:
        self._timers: dict[str, PendingTimer] = {}

    def __len__(self) -> int:
        return len(self._timers)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._timers

    def pending(self, room_id: str) -> TimerAction | None:
        timer = self._timers.get(room_id)
        return timer.action if timer is not None else None

    def schedule(
        self,
        room_id: str,
        action: TimerAction,
        delay_seconds: float,
        callback: TimerCallback,
    ) -> PendingTimer:
        self.cancel(room_id)
        task = asyncio.create_task(
            self._fire(room_id, delay_seconds, callback),
            name=f"{action.value}:{room_id}",
        )
        timer = PendingTimer(
            room_id=room_id, action=action, delay_seconds=delay_seconds, task=task
        )
        self._timers[room_id] = timer
        logger.debug(
            "Timer scheduled", room_id=room_id, action=action.value, delay_seconds=delay_seconds
        )
        return timer

    def cancel(self, room_id: str) -> bool:
        timer = self._timers.pop(room_id, None)
        if timer is None:
            return False
        timer.task.cancel()
        logger.debug("Timer cancelled", room_id=room_id, action=timer.action.value)
        return True

    async def _fire(self, room_id: str, delay_seconds: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay_seconds)
        timer = self._timers.get(room_id)
        if timer is None or timer.task is not asyncio.current_task():
            return
        del self._timers[room_id]
        try:
            await callback(room_id)
        except Exception:
            logger.exception("Timer callback failed", room_id=room_id, action=timer.action.value)

    async def shutdown(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.task.cancel()
        await asyncio.gather(*(t.task for t in timers), return_exceptions=True)


class RoomLocks:
    """Per-id asyncio locks; multi-id acquisition is in sorted id order.

    Used for rooms and, separately, for users whose membership is changing.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._claims: dict[str, int] = {}

    def get(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    def is_locked(self, room_id: str) -> bool:
        lock = self._locks.get(room_id)
        return lock is not None and lock.locked()

    def discard(self, room_id: str) -> None:
        """Drop an idle lock. Locks that are held or waited on are kept."""
        lock = self._locks.get(room_id)
        if lock is not None and not lock.locked() and not self._claims.get(room_id):
            del self._locks[room_id]

    def _claim(self, room_id: str) -> None:
        self._claims[room_id] = self._claims.get(room_id, 0) + 1

    def _unclaim(self, room_id: str) -> None:
        remaining = self._claims[room_id] - 1
        if remaining:
            self._claims[room_id] = remaining
        else:
            del self._claims[room_id]

    @asynccontextmanager
    async def hold(self, *room_ids: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for room_id in sorted(set(room_ids)):
                self._claim(room_id)
                stack.callback(self._unclaim, room_id)
                await stack.enter_async_context(self.get(room_id))
            yield
