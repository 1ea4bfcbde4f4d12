from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
import math
import uuid

from track_errors import ValidationError
from track_geometry import TrackKey, track_key


SEVERITY_CRITICAL = "Critical"
SEVERITY_HIGH = "High"
SEVERITY_MEDIUM = "Medium"
SEVERITY_LOW = "Low"


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _to_utc(value)
    text = str(value).strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    return _to_utc(datetime.fromisoformat(text))


def validate_milepost_range(begin_mp: float, end_mp: float) -> None:
    for label, value in (("beginMP", begin_mp), ("endMP", end_mp)):
        if not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
            raise ValidationError(f"{label} must be a finite number")
    if begin_mp >= end_mp:
        raise ValidationError(f"beginMP ({begin_mp}) must be less than endMP ({end_mp})")


@dataclass
class TrackSegment:
    """A milepost range on one track; the shape checked for overlaps."""
    subdivision_id: str
    track_type: str
    track_number: str
    begin_mp: float
    end_mp: float

    @property
    def track_key(self) -> TrackKey:
        return track_key(self.subdivision_id, self.track_type, self.track_number)


@dataclass
class Authority:
    authority_id: str
    user_id: str
    agency_id: str
    subdivision_id: str
    track_type: str
    track_number: str
    begin_mp: float
    end_mp: float
    start_time: datetime
    expiration_time: Optional[datetime] = None
    is_active: bool = True
    authority_type: Optional[str] = None
    employee_name: Optional[str] = None
    employee_contact: Optional[str] = None
    ended_at: Optional[datetime] = None
    end_confirmed: Optional[bool] = None
    end_reason: Optional[str] = None

    @property
    def track_key(self) -> TrackKey:
        return track_key(self.subdivision_id, self.track_type, self.track_number)

    @property
    def segment(self) -> TrackSegment:
        return TrackSegment(
            subdivision_id=self.subdivision_id,
            track_type=self.track_type,
            track_number=self.track_number,
            begin_mp=self.begin_mp,
            end_mp=self.end_mp,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_time is not None and _to_utc(now) >= self.expiration_time

    def contains(self, milepost: float) -> bool:
        return self.begin_mp <= milepost <= self.end_mp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authorityId": self.authority_id,
            "userId": self.user_id,
            "agencyId": self.agency_id,
            "subdivisionId": self.subdivision_id,
            "trackType": self.track_type,
            "trackNumber": self.track_number,
            "beginMP": self.begin_mp,
            "endMP": self.end_mp,
            "startTime": _isoformat(self.start_time),
            "expirationTime": _isoformat(self.expiration_time),
            "isActive": self.is_active,
            "authorityType": self.authority_type,
            "employeeName": self.employee_name,
            "employeeContact": self.employee_contact,
            "endedAt": _isoformat(self.ended_at),
            "endConfirmed": self.end_confirmed,
            "endReason": self.end_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Authority":
        return cls(
            authority_id=str(data["authorityId"]),
            user_id=str(data["userId"]),
            agency_id=str(data.get("agencyId") or ""),
            subdivision_id=str(data["subdivisionId"]),
            track_type=str(data["trackType"]),
            track_number=str(data["trackNumber"]),
            begin_mp=float(data["beginMP"]),
            end_mp=float(data["endMP"]),
            start_time=parse_timestamp(data.get("startTime")) or datetime.now(timezone.utc),
            expiration_time=parse_timestamp(data.get("expirationTime")),
            is_active=bool(data.get("isActive", True)),
            authority_type=data.get("authorityType"),
            employee_name=data.get("employeeName"),
            employee_contact=data.get("employeeContact"),
            ended_at=parse_timestamp(data.get("endedAt")),
            end_confirmed=data.get("endConfirmed"),
            end_reason=data.get("endReason"),
        )


@dataclass
class OverlapRecord:
    """A detected collision between two authorities; the pair order carries no meaning."""
    authority1_id: str
    authority2_id: str
    overlap_begin_mp: float
    overlap_end_mp: float
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    overlap_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user1_id: Optional[str] = None
    user2_id: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def span_miles(self) -> float:
        return self.overlap_end_mp - self.overlap_begin_mp

    @property
    def severity(self) -> str:
        return classify_overlap_severity(self.span_miles)

    @property
    def pair(self) -> frozenset:
        return frozenset((self.authority1_id, self.authority2_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overlapId": self.overlap_id,
            "authority1Id": self.authority1_id,
            "authority2Id": self.authority2_id,
            "user1Id": self.user1_id,
            "user2Id": self.user2_id,
            "overlapBeginMP": self.overlap_begin_mp,
            "overlapEndMP": self.overlap_end_mp,
            "severity": self.severity,
            "detectedAt": _isoformat(self.detected_at),
            "resolved": self.resolved,
            "resolvedAt": _isoformat(self.resolved_at),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OverlapRecord":
        return cls(
            overlap_id=str(data["overlapId"]),
            authority1_id=str(data["authority1Id"]),
            authority2_id=str(data["authority2Id"]),
            user1_id=data.get("user1Id"),
            user2_id=data.get("user2Id"),
            overlap_begin_mp=float(data["overlapBeginMP"]),
            overlap_end_mp=float(data["overlapEndMP"]),
            detected_at=parse_timestamp(data.get("detectedAt")) or datetime.now(timezone.utc),
            resolved=bool(data.get("resolved", False)),
            resolved_at=parse_timestamp(data.get("resolvedAt")),
            notes=data.get("notes"),
        )


def ranges_overlap(begin1: float, end1: float, begin2: float, end2: float) -> bool:
    # Touching ranges ([0,10] and [10,20]) share no track.
    return begin1 < end2 and begin2 < end1


def overlap_range(
    begin1: float, end1: float, begin2: float, end2: float
) -> Optional[Tuple[float, float]]:
    if not ranges_overlap(begin1, end1, begin2, end2):
        return None
    return max(begin1, begin2), min(end1, end2)


def classify_overlap_severity(span_miles: float) -> str:
    if span_miles > 5:
        return SEVERITY_CRITICAL
    if span_miles > 2:
        return SEVERITY_HIGH
    if span_miles > 0.5:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW


def find_overlaps(
    candidate: TrackSegment,
    authorities: Iterable[Authority],
    exclude_authority_id: Optional[str] = None,
    candidate_id: Optional[str] = None,
    candidate_user_id: Optional[str] = None,
) -> List[OverlapRecord]:
    """Overlap records for every active authority on the candidate's track."""
    validate_milepost_range(candidate.begin_mp, candidate.end_mp)
    key = candidate.track_key
    records: List[OverlapRecord] = []
    for other in authorities:
        if not other.is_active:
            continue
        if exclude_authority_id is not None and other.authority_id == str(exclude_authority_id):
            continue
        if candidate_id is not None and other.authority_id == candidate_id:
            continue
        if other.track_key != key:
            continue
        found = overlap_range(candidate.begin_mp, candidate.end_mp, other.begin_mp, other.end_mp)
        if found is None:
            continue
        records.append(
            OverlapRecord(
                authority1_id=candidate_id or "",
                authority2_id=other.authority_id,
                user1_id=candidate_user_id,
                user2_id=other.user_id,
                overlap_begin_mp=found[0],
                overlap_end_mp=found[1],
            )
        )
    records.sort(key=lambda r: (r.overlap_begin_mp, r.authority2_id))
    return records


__all__ = [
    "Authority",
    "OverlapRecord",
    "TrackSegment",
    "classify_overlap_severity",
    "find_overlaps",
    "overlap_range",
    "parse_timestamp",
    "ranges_overlap",
    "validate_milepost_range",
]
