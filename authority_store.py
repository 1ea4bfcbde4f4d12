import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from authority_overlap import (
    Authority,
    OverlapRecord,
    TrackSegment,
    find_overlaps,
    parse_timestamp,
    validate_milepost_range,
)
from track_errors import AccessDeniedError, NotFoundError, ValidationError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clean_field(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return str(value).strip()


class AuthorityStore:
    """
    File-backed store of authorities and the overlaps detected between them.

    Creation holds the store lock across the overlap check and the insert, so
    two overlapping authorities created at the same moment still see each
    other.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._authorities: Dict[str, Authority] = {}
        self._overlaps: Dict[str, OverlapRecord] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._authorities.clear()
        self._overlaps.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except json.JSONDecodeError:
            print(f"[authorities] could not parse {self._path}; starting empty")
            return
        if not isinstance(raw, dict):
            return
        for entry in raw.get("authorities", []):
            if not isinstance(entry, dict):
                continue
            try:
                auth = Authority.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                print(f"[authorities] skipping malformed authority entry: {exc}")
                continue
            self._authorities[auth.authority_id] = auth
        for entry in raw.get("overlaps", []):
            if not isinstance(entry, dict):
                continue
            try:
                record = OverlapRecord.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                print(f"[authorities] skipping malformed overlap entry: {exc}")
                continue
            self._overlaps[record.overlap_id] = record

    async def _persist(self) -> None:
        data = {
            "authorities": [a.to_dict() for a in self._authorities.values()],
            "overlaps": [o.to_dict() for o in self._overlaps.values()],
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
        tmp_path.replace(self._path)

    async def create_authority(
        self, user_id: str, agency_id: str, payload: Dict[str, Any]
    ) -> Tuple[Authority, List[OverlapRecord]]:
        """Insert a new authority and record any overlaps with active ones."""
        subdivision_id = _clean_field(payload.get("subdivision_id"))
        track_type = _clean_field(payload.get("track_type"))
        track_number = _clean_field(payload.get("track_number"))
        if not subdivision_id or not track_type or not track_number:
            raise ValidationError("subdivision, track type and track number are required")
        if not user_id:
            raise ValidationError("user id required")
        try:
            begin_mp = float(payload.get("begin_mp"))
            end_mp = float(payload.get("end_mp"))
        except (TypeError, ValueError):
            raise ValidationError("beginMP and endMP must be numbers")
        validate_milepost_range(begin_mp, end_mp)

        now = _now()
        try:
            start_time = parse_timestamp(payload.get("start_time")) or now
            expiration_time = parse_timestamp(payload.get("expiration_time"))
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp: {exc}")
        if expiration_time is not None and expiration_time <= start_time:
            raise ValidationError("expirationTime must be after startTime")

        async with self._lock:
            authority_id = str(payload.get("authority_id") or uuid.uuid4().hex)
            if authority_id in self._authorities:
                raise ValidationError(f"authority {authority_id} already exists")

            authority = Authority(
                authority_id=authority_id,
                user_id=str(user_id),
                agency_id=str(agency_id or ""),
                subdivision_id=subdivision_id,
                track_type=track_type,
                track_number=track_number,
                begin_mp=begin_mp,
                end_mp=end_mp,
                start_time=start_time,
                expiration_time=expiration_time,
                authority_type=_clean_field(payload.get("authority_type")),
                employee_name=_clean_field(payload.get("employee_name")),
                employee_contact=_clean_field(payload.get("employee_contact")),
            )
            live = [a for a in self._authorities.values() if a.is_active and not a.is_expired(now)]
            overlaps = find_overlaps(
                authority.segment,
                live,
                candidate_id=authority.authority_id,
                candidate_user_id=authority.user_id,
            )
            for record in overlaps:
                record.detected_at = now
                self._overlaps[record.overlap_id] = record
            self._authorities[authority_id] = authority
            await self._persist()

        print(
            f"[authorities] created {authority_id} on {subdivision_id}/{track_type}/{track_number} "
            f"MP {begin_mp}-{end_mp} ({len(overlaps)} overlap(s))"
        )
        return authority, overlaps

    async def check_overlap(
        self, segment: TrackSegment, exclude_authority_id: Optional[str] = None
    ) -> List[OverlapRecord]:
        """Overlaps a segment would have, without inserting anything."""
        now = _now()
        async with self._lock:
            live = [a for a in self._authorities.values() if a.is_active and not a.is_expired(now)]
        return find_overlaps(segment, live, exclude_authority_id=exclude_authority_id)

    async def get_authority(self, authority_id: Any) -> Authority:
        async with self._lock:
            authority = self._authorities.get(str(authority_id))
        if authority is None:
            raise NotFoundError(f"authority {authority_id} not found")
        return authority

    async def get_active_authorities(
        self,
        subdivision_id: Optional[str] = None,
        track_type: Optional[str] = None,
        track_number: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Authority]:
        now = now or _now()
        async with self._lock:
            items = [a for a in self._authorities.values() if a.is_active and not a.is_expired(now)]
        if subdivision_id is not None:
            items = [a for a in items if a.subdivision_id == str(subdivision_id).strip()]
        if track_type is not None:
            items = [a for a in items if a.track_type == str(track_type).strip()]
        if track_number is not None:
            items = [a for a in items if a.track_number == str(track_number).strip()]
        items.sort(key=lambda a: (a.subdivision_id, a.track_type, a.track_number, a.begin_mp))
        return items

    async def end_authority(
        self,
        authority_id: Any,
        user_id: str,
        confirm_end_tracking: bool = True,
        is_admin: bool = False,
    ) -> Authority:
        async with self._lock:
            authority = self._authorities.get(str(authority_id))
            if authority is None:
                raise NotFoundError(f"authority {authority_id} not found")
            if authority.user_id != str(user_id) and not is_admin:
                raise AccessDeniedError("only the authority holder or an administrator can end it")
            if not authority.is_active:
                raise ValidationError(f"authority {authority_id} already ended")
            authority.is_active = False
            authority.ended_at = _now()
            authority.end_confirmed = bool(confirm_end_tracking)
            authority.end_reason = "ended"
            await self._persist()
        print(f"[authorities] ended {authority.authority_id} by user {user_id}")
        return authority

    async def expire_authorities(self, now: Optional[datetime] = None) -> List[Authority]:
        """Mark authorities past their expiration time inactive."""
        now = now or _now()
        expired: List[Authority] = []
        async with self._lock:
            for authority in self._authorities.values():
                if authority.is_active and authority.is_expired(now):
                    authority.is_active = False
                    authority.ended_at = now
                    authority.end_reason = "expired"
                    expired.append(authority)
            if expired:
                await self._persist()
        for authority in expired:
            print(f"[authorities] expired {authority.authority_id}")
        return expired

    async def list_overlaps(self, include_resolved: bool = False) -> List[OverlapRecord]:
        async with self._lock:
            items = list(self._overlaps.values())
        if not include_resolved:
            items = [o for o in items if not o.resolved]
        items.sort(key=lambda o: o.detected_at, reverse=True)
        return items

    async def resolve_overlap(self, overlap_id: Any, notes: Optional[str] = None) -> OverlapRecord:
        async with self._lock:
            record = self._overlaps.get(str(overlap_id))
            if record is None:
                raise NotFoundError(f"overlap {overlap_id} not found")
            if not record.resolved:
                record.resolved = True
                record.resolved_at = _now()
            if notes:
                record.notes = notes
            await self._persist()
        return record

    async def count(self) -> int:
        async with self._lock:
            return len(self._authorities)


__all__ = ["AuthorityStore"]
