import asyncio
import math
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from track_errors import NotFoundError, ValidationError
from track_geometry import (
    GeometryPoint,
    GeometryStore,
    METHOD_CLOSEST,
    METHOD_EXACT,
    METHOD_INTERPOLATED,
    METHOD_STRAIGHT,
    METHOD_TRACK,
    gps_distance,
    interpolate_milepost,
    measure_track_distance,
    track_distance,
)


BASE_LAT = 34.28
BASE_LON = -119.29
MILES_PER_DEG_LAT = 3959.0 * math.pi / 180.0


def _straight_track(start=0.0, end=10.0, step=0.5, track_number="1"):
    """Evenly spaced points running due north, one mile of latitude per milepost."""
    points = []
    count = int(round((end - start) / step))
    for i in range(count + 1):
        mp = round(start + i * step, 3)
        points.append(
            GeometryPoint(
                subdivision_id="VENTURA",
                track_type="Main",
                track_number=track_number,
                milepost=mp,
                latitude=BASE_LAT + mp / MILES_PER_DEG_LAT,
                longitude=BASE_LON,
            )
        )
    return points


def _position(mp):
    return BASE_LAT + mp / MILES_PER_DEG_LAT, BASE_LON


def test_haversine_is_symmetric_and_zero_on_identity():
    a = (34.28, -119.29)
    b = (34.41, -119.70)
    assert gps_distance(*a, *b) == pytest.approx(gps_distance(*b, *a))
    assert gps_distance(*a, *a) == 0.0


def test_haversine_one_degree_of_latitude():
    assert gps_distance(0.0, 0.0, 1.0, 0.0) == pytest.approx(3959.0 * math.pi / 180.0, rel=1e-9)


def test_exact_match_within_tolerance():
    points = _straight_track()
    lat, lon = _position(4.0)
    estimate = interpolate_milepost(points, lat, lon + 0.00005)
    assert estimate.method == METHOD_EXACT
    assert estimate.milepost == 4.0
    assert estimate.track_number == "1"


def test_interpolation_between_points_is_linear():
    points = _straight_track()
    lat, lon = _position(4.3)
    estimate = interpolate_milepost(points, lat, lon)
    assert estimate.method == METHOD_INTERPOLATED
    assert estimate.milepost == pytest.approx(4.3, abs=0.01)


def test_interpolation_is_monotonic_along_track():
    points = _straight_track()
    mileposts = []
    for i in range(1, 90):
        mp = 0.1 * i + 0.03
        lat, lon = _position(mp)
        mileposts.append(interpolate_milepost(points, lat, lon).milepost)
    assert mileposts == sorted(mileposts)


def test_single_point_track_falls_back_to_closest():
    points = [GeometryPoint("VENTURA", "Siding", "9", 3.0, BASE_LAT, BASE_LON)]
    estimate = interpolate_milepost(points, BASE_LAT + 0.01, BASE_LON)
    assert estimate.method == METHOD_CLOSEST
    assert estimate.milepost == 3.0
    assert estimate.distance_to_track_miles > 0.5


def test_interpolation_without_geometry_raises_not_found():
    with pytest.raises(NotFoundError):
        interpolate_milepost([], BASE_LAT, BASE_LON)


def test_adjacent_points_distance_matches_haversine():
    points = _straight_track()
    p1, p2 = points[4], points[5]
    expected = round(gps_distance(p1.latitude, p1.longitude, p2.latitude, p2.longitude), 2)
    assert track_distance(p1.milepost, p2.milepost, points) == expected
    assert track_distance(p2.milepost, p1.milepost, points) == expected


def test_track_distance_sums_segments():
    points = _straight_track()
    distance, method = measure_track_distance(2.0, 7.0, points)
    assert method == METHOD_TRACK
    assert distance == pytest.approx(5.0, abs=0.01)


def test_track_distance_falls_back_to_milepost_difference():
    points = _straight_track()
    distance, method = measure_track_distance(4.1, 4.4, points)
    assert method == METHOD_STRAIGHT
    assert distance == 0.3
    assert track_distance(1.0, 2.0, []) == 1.0
    assert measure_track_distance(19.8, 20.0, []) == (0.2, METHOD_STRAIGHT)


def test_store_rejects_duplicate_mileposts():
    points = _straight_track(end=2.0)
    duplicate = GeometryPoint("VENTURA", "Main", "1", 1.0, BASE_LAT + 0.5, BASE_LON)
    with pytest.raises(ValidationError):
        GeometryStore(points + [duplicate])


def test_store_rejects_out_of_range_coordinates():
    with pytest.raises(ValidationError):
        GeometryStore([GeometryPoint("VENTURA", "Main", "1", 0.0, 91.0, BASE_LON)])


def test_store_loads_csv_and_filters_by_track(tmp_path):
    path = tmp_path / "geometry.csv"
    rows = ["subdivision_id,track_type,track_number,milepost,latitude,longitude,elevation"]
    for p in _straight_track(end=2.0):
        rows.append(f"{p.subdivision_id},{p.track_type},{p.track_number},{p.milepost},{p.latitude},{p.longitude},")
    for p in _straight_track(end=1.0, track_number="2"):
        rows.append(f"{p.subdivision_id},{p.track_type},{p.track_number},{p.milepost},{p.latitude},{p.longitude + 0.001},12.5")
    rows.append("VENTURA,Main,1,,34.0,-119.0,")
    path.write_text("\n".join(rows) + "\n")

    store = GeometryStore.from_csv(path)
    assert store.track_count() == 2

    main_one = asyncio.run(store.get_geometry("VENTURA", "Main", "1"))
    assert [p.milepost for p in main_one] == [0.0, 0.5, 1.0, 1.5, 2.0]
    main_two = asyncio.run(store.get_geometry("VENTURA", "Main", "2"))
    assert main_two[0].elevation == 12.5
    assert len(asyncio.run(store.get_geometry("VENTURA"))) == 8


def test_store_interpolate_unknown_subdivision_raises(tmp_path):
    store = GeometryStore(_straight_track())
    with pytest.raises(NotFoundError):
        asyncio.run(store.interpolate("NOWHERE", BASE_LAT, BASE_LON))


def test_store_missing_csv_is_empty(tmp_path):
    store = GeometryStore.from_csv(tmp_path / "missing.csv")
    assert store.track_count() == 0
