import pytest

from elasticrooms.geo import bounding_box, centroid, haversine_km, within_radius
from elasticrooms.models import GeoPoint

BERLIN = GeoPoint(lat=52.5200, lon=13.4050)
MUNICH = GeoPoint(lat=48.1351, lon=11.5820)


class TestHaversine:
    def test_same_point_is_zero(self) -> None:
        assert haversine_km(BERLIN, BERLIN) == 0.0

    def test_known_distance(self) -> None:
        assert haversine_km(BERLIN, MUNICH) == pytest.approx(504, abs=5)

    def test_symmetric(self) -> None:
        assert haversine_km(BERLIN, MUNICH) == pytest.approx(haversine_km(MUNICH, BERLIN))

    def test_one_degree_of_latitude(self) -> None:
        a = GeoPoint(lat=0.0, lon=0.0)
        b = GeoPoint(lat=1.0, lon=0.0)
        assert haversine_km(a, b) == pytest.approx(111.19, abs=0.1)


class TestBoundingBox:
    def test_contains_points_inside_radius(self) -> None:
        box = bounding_box(BERLIN, 10)
        nearby = GeoPoint(lat=52.55, lon=13.45)

        assert box.contains(nearby)
        assert not box.contains(MUNICH)

    def test_antimeridian_box_wraps(self) -> None:
        box = bounding_box(GeoPoint(lat=0.0, lon=179.99), 50)

        assert box.wraps
        assert box.contains(GeoPoint(lat=0.0, lon=-179.99))

    def test_polar_box_spans_all_longitudes(self) -> None:
        box = bounding_box(GeoPoint(lat=90.0, lon=0.0), 10)

        assert box.north == 90.0
        assert box.contains(GeoPoint(lat=89.95, lon=120.0))


class TestHelpers:
    def test_within_radius(self) -> None:
        assert within_radius(BERLIN, GeoPoint(lat=52.53, lon=13.41), 5)
        assert not within_radius(BERLIN, MUNICH, 100)

    def test_centroid(self) -> None:
        center = centroid([GeoPoint(lat=0.0, lon=0.0), GeoPoint(lat=2.0, lon=4.0)])

        assert center == GeoPoint(lat=1.0, lon=2.0)

    def test_centroid_of_nothing_raises(self) -> None:
        with pytest.raises(ValueError):
            centroid([])

    def test_invalid_latitude_rejected(self) -> None:
        with pytest.raises(ValueError, match="Latitude"):
            GeoPoint(lat=91.0, lon=0.0)
