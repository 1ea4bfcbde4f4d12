from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Type
import csv
import json
import uuid


ACKS_FILE = "acks.csv"


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: datetime) -> str:
    return _to_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt


def new_alert_id() -> str:
    return uuid.uuid4().hex


@dataclass
class AlertEvent:
    alert_id: str
    level: str
    subject_user_id: str
    authority_id: Optional[str]
    fired_at: datetime
    dedupe_key: str
    message: str = ""
    agency_id: Optional[str] = None
    read: bool = False

    alert_type: ClassVar[str] = "Alert"
    _base_fields: ClassVar[Tuple[str, ...]] = (
        "alert_id",
        "level",
        "subject_user_id",
        "authority_id",
        "fired_at",
        "dedupe_key",
        "message",
        "agency_id",
        "read",
    )

    @property
    def counterpart_user_id(self) -> Optional[str]:
        return None

    @property
    def counterpart_authority_id(self) -> Optional[str]:
        return None

    def details(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "alertId": self.alert_id,
            "userId": self.subject_user_id,
            "authorityId": self.authority_id,
            "agencyId": self.agency_id,
        }
        for f in fields(self):
            if f.name in self._base_fields:
                continue
            out[_camel(f.name)] = getattr(self, f.name)
        return out

    def to_payload(self) -> Dict[str, Any]:
        """Shape delivered over socket and push channels."""
        return {
            "type": self.alert_type,
            "level": self.level,
            "message": self.message,
            "details": self.details(),
            "timestamp": _isoformat(self.fired_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.to_payload()
        payload["alertId"] = self.alert_id
        payload["dedupeKey"] = self.dedupe_key
        payload["read"] = self.read
        return payload

    def _variant_fields(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._base_fields
        }

    def to_row(self) -> List[str]:
        return [
            _isoformat(self.fired_at),
            self.alert_id,
            self.alert_type,
            self.level,
            self.subject_user_id,
            self.authority_id or "",
            self.agency_id or "",
            self.dedupe_key,
            self.message,
            json.dumps(self._variant_fields(), sort_keys=True),
        ]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


@dataclass
class BoundaryAlert(AlertEvent):
    alert_type: ClassVar[str] = "Boundary"

    boundary: str = ""
    milepost: Optional[float] = None
    distance_miles: Optional[float] = None
    threshold_miles: Optional[float] = None
    method: Optional[str] = None
    violation: bool = False


@dataclass
class ProximityAlert(AlertEvent):
    alert_type: ClassVar[str] = "Proximity"

    other_user_id: Optional[str] = None
    other_authority_id: Optional[str] = None
    distance_miles: Optional[float] = None
    threshold_miles: Optional[float] = None
    method: Optional[str] = None

    @property
    def counterpart_user_id(self) -> Optional[str]:
        return self.other_user_id

    @property
    def counterpart_authority_id(self) -> Optional[str]:
        return self.other_authority_id


@dataclass
class OverlapAlert(AlertEvent):
    alert_type: ClassVar[str] = "Overlap"

    other_user_id: Optional[str] = None
    other_authority_id: Optional[str] = None
    overlap_begin_mp: Optional[float] = None
    overlap_end_mp: Optional[float] = None
    distance_miles: Optional[float] = None
    method: Optional[str] = None
    # "creation" when raised by authority creation, "scan" from the monitor loop
    source: str = "scan"
    overlap_id: Optional[str] = None

    @property
    def counterpart_user_id(self) -> Optional[str]:
        return self.other_user_id

    @property
    def counterpart_authority_id(self) -> Optional[str]:
        return self.other_authority_id


@dataclass
class SpeedAlert(AlertEvent):
    alert_type: ClassVar[str] = "Speed"

    speed_mph: Optional[float] = None
    limit_mph: Optional[float] = None


@dataclass
class TimeAlert(AlertEvent):
    alert_type: ClassVar[str] = "Time"

    minutes_remaining: Optional[float] = None
    threshold_minutes: Optional[float] = None
    expiration_time: Optional[str] = None


ALERT_TYPES: Dict[str, Type[AlertEvent]] = {
    cls.alert_type: cls
    for cls in (BoundaryAlert, ProximityAlert, OverlapAlert, SpeedAlert, TimeAlert)
}


def event_from_row(row: Sequence[str]) -> Optional[AlertEvent]:
    if len(row) < 10:
        return None
    cls = ALERT_TYPES.get(row[2])
    if cls is None:
        return None
    try:
        fired_at = parse_iso8601_utc(row[0])
        variant = json.loads(row[9]) if row[9] else {}
    except ValueError:
        return None
    known = {f.name for f in fields(cls)}
    variant = {k: v for k, v in variant.items() if k in known and k not in AlertEvent._base_fields}
    return cls(
        alert_id=row[1],
        level=row[3],
        subject_user_id=row[4],
        authority_id=row[5] or None,
        agency_id=row[6] or None,
        fired_at=fired_at,
        dedupe_key=row[7],
        message=row[8],
        **variant,
    )


class AlertStorage:
    """Append-only daily CSV log of fired alerts; reads are recorded in a side file."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _file_for_date(self, dt: datetime) -> Path:
        return self.base_dir / f"{_to_utc(dt).date().isoformat()}.csv"

    def write_events(self, events: Sequence[AlertEvent]) -> None:
        if not events:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        grouped_rows: Dict[Path, List[List[str]]] = {}
        for event in events:
            path = self._file_for_date(event.fired_at)
            grouped_rows.setdefault(path, []).append(event.to_row())

        for path, rows in grouped_rows.items():
            with path.open("a", newline="") as f:
                writer = csv.writer(f)
                writer.writerows(rows)

    def mark_read(self, alert_id: str, user_id: Optional[str] = None) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        with (self.base_dir / ACKS_FILE).open("a", newline="") as f:
            writer = csv.writer(f)
            writer.writerow([_isoformat(datetime.now(timezone.utc)), alert_id, user_id or ""])

    def _read_ids(self) -> Set[str]:
        path = self.base_dir / ACKS_FILE
        if not path.exists():
            return set()
        with path.open("r", newline="") as f:
            return {row[1] for row in csv.reader(f) if len(row) >= 2}

    def _iter_files(self, start: datetime, end: datetime) -> Iterable[Path]:
        current = _to_utc(start).date()
        end_date = _to_utc(end).date()
        while current <= end_date:
            yield self.base_dir / f"{current.isoformat()}.csv"
            current += timedelta(days=1)

    def query_events(
        self,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
        authority_id: Optional[str] = None,
        alert_types: Optional[Set[str]] = None,
        unread_only: bool = False,
    ) -> List[AlertEvent]:
        start_utc = _to_utc(start)
        end_utc = _to_utc(end)
        if end_utc < start_utc:
            return []

        read_ids = self._read_ids()
        events: List[AlertEvent] = []
        for path in self._iter_files(start_utc, end_utc):
            if not path.exists():
                continue
            with path.open("r", newline="") as f:
                for row in csv.reader(f):
                    event = event_from_row(row)
                    if event is None:
                        continue
                    if event.fired_at < start_utc or event.fired_at > end_utc:
                        continue
                    if user_id and user_id not in (event.subject_user_id, event.counterpart_user_id):
                        continue
                    if authority_id and authority_id not in (
                        event.authority_id,
                        event.counterpart_authority_id,
                    ):
                        continue
                    if alert_types and event.alert_type not in alert_types:
                        continue
                    event.read = event.alert_id in read_ids
                    if unread_only and event.read:
                        continue
                    events.append(event)
        events.sort(key=lambda e: e.fired_at)
        return events

    def find_event(self, alert_id: str, start: datetime, end: datetime) -> Optional[AlertEvent]:
        for event in self.query_events(start, end):
            if event.alert_id == alert_id:
                return event
        return None


__all__ = [
    "ALERT_TYPES",
    "AlertEvent",
    "AlertStorage",
    "BoundaryAlert",
    "OverlapAlert",
    "ProximityAlert",
    "SpeedAlert",
    "TimeAlert",
    "event_from_row",
    "new_alert_id",
    "parse_iso8601_utc",
]
