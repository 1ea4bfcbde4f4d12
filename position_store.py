from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class GPSFix:
    user_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    authority_id: Optional[str] = None
    # Filled in by the ingestion path once the fix is mapped onto a track
    milepost: Optional[float] = None
    milepost_method: Optional[str] = None
    track_type: Optional[str] = None
    track_number: Optional[str] = None
    distance_to_track: Optional[float] = None

    def age_seconds(self, now: datetime) -> float:
        return (_to_utc(now) - _to_utc(self.timestamp)).total_seconds()

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": _to_utc(self.timestamp).isoformat().replace("+00:00", "Z"),
            "accuracy": self.accuracy,
            "speed": self.speed,
            "heading": self.heading,
            "authorityId": self.authority_id,
            "milepost": self.milepost,
            "milepostMethod": self.milepost_method,
            "trackType": self.track_type,
            "trackNumber": self.track_number,
            "distanceToTrack": self.distance_to_track,
        }


class LatestFixStore:
    """
    Latest GPS fix per user.

    ``update`` never awaits, so on the event loop it cannot interleave with a
    scan; scans work from ``snapshot()`` copies and see later fixes next tick.
    """

    def __init__(self):
        self._fixes: Dict[str, GPSFix] = {}

    def update(self, fix: GPSFix) -> bool:
        """Store ``fix`` unless a newer one is already held. Returns True when stored."""
        fix.timestamp = _to_utc(fix.timestamp)
        current = self._fixes.get(fix.user_id)
        if current is not None and fix.timestamp < current.timestamp:
            return False
        self._fixes[fix.user_id] = fix
        return True

    def get(self, user_id: str) -> Optional[GPSFix]:
        return self._fixes.get(str(user_id))

    def snapshot(self) -> Dict[str, GPSFix]:
        return dict(self._fixes)

    def prune(self, older_than: datetime) -> int:
        cutoff = _to_utc(older_than)
        stale = [uid for uid, fix in self._fixes.items() if fix.timestamp < cutoff]
        for uid in stale:
            del self._fixes[uid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._fixes)


__all__ = ["GPSFix", "LatestFixStore"]
