from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import csv
import heapq
import math

from track_errors import NotFoundError, ValidationError


# Earth radius used for every haversine distance in the service (miles)
EARTH_RADIUS_MILES = 3959.0

# A fix this close to a surveyed point takes the point's milepost as-is
EXACT_MATCH_TOLERANCE_MI = 0.01

# How many nearby survey points feed the interpolation
NEAREST_POINT_LIMIT = 10

METHOD_EXACT = "exact"
METHOD_INTERPOLATED = "interpolated"
METHOD_CLOSEST = "closest"
METHOD_TRACK = "track-based"
METHOD_STRAIGHT = "straight-line"

TrackKey = Tuple[str, str, str]


def _normalize_id(value: object) -> str:
    return str(value).strip() if value is not None else ""


def track_key(subdivision_id: object, track_type: object, track_number: object) -> TrackKey:
    return (_normalize_id(subdivision_id), _normalize_id(track_type), _normalize_id(track_number))


def validate_coordinates(latitude: float, longitude: float) -> None:
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        raise ValidationError("latitude and longitude must be numbers")
    if math.isnan(latitude) or math.isnan(longitude):
        raise ValidationError("latitude and longitude must be numbers")
    if not -90.0 <= latitude <= 90.0:
        raise ValidationError(f"latitude {latitude} out of range")
    if not -180.0 <= longitude <= 180.0:
        raise ValidationError(f"longitude {longitude} out of range")


@dataclass(frozen=True)
class GeometryPoint:
    """A surveyed reference point on a track."""
    subdivision_id: str
    track_type: str
    track_number: str
    milepost: float
    latitude: float
    longitude: float
    elevation: Optional[float] = None

    @property
    def track_key(self) -> TrackKey:
        return track_key(self.subdivision_id, self.track_type, self.track_number)

    def to_dict(self) -> dict:
        return {
            "subdivisionId": self.subdivision_id,
            "trackType": self.track_type,
            "trackNumber": self.track_number,
            "milepost": self.milepost,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "elevation": self.elevation,
        }


@dataclass
class MilepostEstimate:
    milepost: float
    distance_to_track_miles: float
    method: str
    track_type: Optional[str] = None
    track_number: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "milepost": self.milepost,
            "distance": round(self.distance_to_track_miles, 4),
            "method": self.method,
            "trackType": self.track_type,
            "trackNumber": self.track_number,
        }


def gps_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in miles between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


def nearest_points(
    points: Iterable[GeometryPoint],
    latitude: float,
    longitude: float,
    limit: int = NEAREST_POINT_LIMIT,
) -> List[Tuple[GeometryPoint, float]]:
    """Return up to ``limit`` points ordered by ascending distance (miles)."""
    measured = (
        (gps_distance(latitude, longitude, p.latitude, p.longitude), p.milepost, p)
        for p in points
    )
    return [(p, d) for d, _, p in heapq.nsmallest(limit, measured, key=lambda item: (item[0], item[1]))]


def interpolate_milepost(
    points: Sequence[GeometryPoint],
    latitude: float,
    longitude: float,
) -> MilepostEstimate:
    """
    Estimate the milepost of a GPS fix from nearby survey points.

    The estimate is local: the two nearest points on the nearest point's
    track are blended by inverse distance. Survey spacing is dense enough
    that a full route snap is not needed.
    """
    if not points:
        raise NotFoundError("no track geometry available")

    nearby = nearest_points(points, latitude, longitude)
    closest, closest_distance = nearby[0]

    if closest_distance < EXACT_MATCH_TOLERANCE_MI:
        return MilepostEstimate(
            milepost=closest.milepost,
            distance_to_track_miles=closest_distance,
            method=METHOD_EXACT,
            track_type=closest.track_type,
            track_number=closest.track_number,
        )

    same_track = [
        (p, d) for p, d in nearby
        if p.track_type == closest.track_type and p.track_number == closest.track_number
    ]
    if len(same_track) >= 2:
        (p1, d1), (p2, d2) = same_track[0], same_track[1]
        weight1 = 1.0 / d1
        weight2 = 1.0 / d2
        blended = (p1.milepost * weight1 + p2.milepost * weight2) / (weight1 + weight2)
        return MilepostEstimate(
            milepost=round(blended, 2),
            distance_to_track_miles=closest_distance,
            method=METHOD_INTERPOLATED,
            track_type=closest.track_type,
            track_number=closest.track_number,
        )

    return MilepostEstimate(
        milepost=closest.milepost,
        distance_to_track_miles=closest_distance,
        method=METHOD_CLOSEST,
        track_type=closest.track_type,
        track_number=closest.track_number,
    )


def closest_point(
    points: Sequence[GeometryPoint], latitude: float, longitude: float
) -> Optional[Tuple[GeometryPoint, float]]:
    found = nearest_points(points, latitude, longitude, limit=1)
    return found[0] if found else None


def measure_track_distance(
    mp1: float, mp2: float, geometry: Sequence[GeometryPoint]
) -> Tuple[float, str]:
    """Along-track distance in miles plus the method that produced it."""
    start = min(mp1, mp2)
    end = max(mp1, mp2)
    relevant = sorted(
        (p for p in geometry if start <= p.milepost <= end),
        key=lambda p: p.milepost,
    )
    if len(relevant) < 2:
        return round(abs(mp2 - mp1), 2), METHOD_STRAIGHT

    total = 0.0
    for p1, p2 in zip(relevant, relevant[1:]):
        total += gps_distance(p1.latitude, p1.longitude, p2.latitude, p2.longitude)
    return round(total, 2), METHOD_TRACK


def track_distance(mp1: float, mp2: float, geometry: Sequence[GeometryPoint]) -> float:
    distance, _ = measure_track_distance(mp1, mp2, geometry)
    return distance


def _parse_float(value: object) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class GeometryStore:
    """
    Read-only milepost geometry, grouped per (subdivision, track type, track number).

    Loaded once from the survey import; lookups are async so the scanner can
    bound them with a timeout the same way it would a database query.
    """

    def __init__(self, points: Iterable[GeometryPoint] = ()):
        self._series: Dict[TrackKey, List[GeometryPoint]] = {}
        self._by_subdivision: Dict[str, List[GeometryPoint]] = {}
        self.load_points(points)

    @classmethod
    def from_csv(cls, path: Path) -> "GeometryStore":
        store = cls()
        if not path.exists():
            print(f"[geometry] no geometry file at {path}; track-based distances unavailable")
            return store
        points: List[GeometryPoint] = []
        with path.open("r", newline="") as f:
            reader = csv.DictReader(f)
            for line_no, row in enumerate(reader, start=2):
                milepost = _parse_float(row.get("milepost"))
                lat = _parse_float(row.get("latitude"))
                lon = _parse_float(row.get("longitude"))
                if milepost is None or lat is None or lon is None:
                    print(f"[geometry] skipping incomplete row {line_no} in {path.name}")
                    continue
                points.append(
                    GeometryPoint(
                        subdivision_id=_normalize_id(row.get("subdivision_id")),
                        track_type=_normalize_id(row.get("track_type")),
                        track_number=_normalize_id(row.get("track_number")),
                        milepost=milepost,
                        latitude=lat,
                        longitude=lon,
                        elevation=_parse_float(row.get("elevation")),
                    )
                )
        store.load_points(points)
        print(f"[geometry] loaded {len(points)} points across {len(store._series)} tracks")
        return store

    def load_points(self, points: Iterable[GeometryPoint]) -> None:
        series: Dict[TrackKey, List[GeometryPoint]] = {k: list(v) for k, v in self._series.items()}
        for point in points:
            validate_coordinates(point.latitude, point.longitude)
            series.setdefault(point.track_key, []).append(point)

        for key, items in series.items():
            items.sort(key=lambda p: p.milepost)
            for prev, cur in zip(items, items[1:]):
                if cur.milepost <= prev.milepost:
                    raise ValidationError(
                        f"mileposts must strictly increase on {'/'.join(key)}; "
                        f"found {prev.milepost} then {cur.milepost}"
                    )

        by_subdivision: Dict[str, List[GeometryPoint]] = {}
        for key, items in series.items():
            by_subdivision.setdefault(key[0], []).extend(items)

        self._series = series
        self._by_subdivision = by_subdivision

    def track_count(self) -> int:
        return len(self._series)

    async def get_geometry(
        self,
        subdivision_id: object,
        track_type: Optional[object] = None,
        track_number: Optional[object] = None,
    ) -> List[GeometryPoint]:
        """Geometry ordered by milepost; whole subdivision when no track is given."""
        sub = _normalize_id(subdivision_id)
        if track_type is not None and track_number is not None:
            return list(self._series.get(track_key(sub, track_type, track_number), []))
        points = self._by_subdivision.get(sub, [])
        if track_type is not None:
            wanted = _normalize_id(track_type)
            points = [p for p in points if p.track_type == wanted]
        return sorted(points, key=lambda p: (p.track_type, p.track_number, p.milepost))

    async def interpolate(
        self,
        subdivision_id: object,
        latitude: float,
        longitude: float,
        track_type: Optional[object] = None,
        track_number: Optional[object] = None,
    ) -> MilepostEstimate:
        validate_coordinates(latitude, longitude)
        points = await self.get_geometry(subdivision_id, track_type, track_number)
        if not points:
            raise NotFoundError(f"no track data found for subdivision {subdivision_id}")
        return interpolate_milepost(points, latitude, longitude)


__all__ = [
    "EARTH_RADIUS_MILES",
    "EXACT_MATCH_TOLERANCE_MI",
    "GeometryPoint",
    "GeometryStore",
    "METHOD_CLOSEST",
    "METHOD_EXACT",
    "METHOD_INTERPOLATED",
    "METHOD_STRAIGHT",
    "METHOD_TRACK",
    "MilepostEstimate",
    "closest_point",
    "gps_distance",
    "interpolate_milepost",
    "measure_track_distance",
    "nearest_points",
    "track_distance",
    "track_key",
    "validate_coordinates",
]
