import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from elasticrooms.config import ScalingSettings
from elasticrooms.models import GeoPoint, UserPresence
from elasticrooms.store.memory import InMemoryStore

ORIGIN = GeoPoint(lat=52.5200, lon=13.4050)


class FixedClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def offset(base: GeoPoint, north_km: float = 0.0, east_km: float = 0.0) -> GeoPoint:
    lat = base.lat + north_km / 111.19
    lon = base.lon + east_km / (111.19 * math.cos(math.radians(base.lat)))
    return GeoPoint(lat=lat, lon=lon)


@pytest.fixture
def origin() -> GeoPoint:
    return ORIGIN


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def settings() -> ScalingSettings:
    return ScalingSettings(_env_file=None, database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
def store(clock: FixedClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)


@pytest.fixture
def place() -> Callable[..., GeoPoint]:
    return offset


@pytest.fixture
def make_user(clock: FixedClock) -> Callable[..., UserPresence]:
    def _make(user_id: str, location: GeoPoint | None = ORIGIN, **kwargs: Any) -> UserPresence:
        kwargs.setdefault("last_heartbeat", clock())
        return UserPresence(id=user_id, location=location, **kwargs)

    return _make
