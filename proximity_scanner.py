from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from alert_config import (
    AlertConfigStore,
    AlertThreshold,
    CONFIG_BOUNDARY,
    CONFIG_OVERLAP,
    CONFIG_PROXIMITY,
    CONFIG_SPEED,
    CONFIG_TIME,
    LEVEL_CRITICAL,
    select_distance_level,
    select_speed_level,
    select_time_level,
)
from alert_storage import (
    AlertEvent,
    BoundaryAlert,
    OverlapAlert,
    ProximityAlert,
    SpeedAlert,
    TimeAlert,
    new_alert_id,
)
from authority_overlap import Authority, overlap_range
from authority_store import AuthorityStore
from position_store import GPSFix, LatestFixStore
from track_errors import LookupTimeoutError, NotFoundError
from track_geometry import (
    GeometryPoint,
    GeometryStore,
    METHOD_STRAIGHT,
    gps_distance,
    interpolate_milepost,
    measure_track_distance,
)
from ttl_cache import TTLCache


def boundary_key(user_id: str) -> str:
    return f"{user_id}|boundary|{CONFIG_BOUNDARY}"


def violation_key(user_id: str) -> str:
    return f"{user_id}|boundary-violation|{CONFIG_BOUNDARY}"


def pair_key(user1: str, user2: str, config_type: str) -> str:
    low, high = sorted((str(user1), str(user2)))
    return f"{low}|{high}|{config_type}"


def speed_key(user_id: str) -> str:
    return f"{user_id}|speed|{CONFIG_SPEED}"


def time_key(authority_id: str) -> str:
    return f"{authority_id}|time|{CONFIG_TIME}"


class AlertStateTable:
    """
    Last fired level per dedupe key.

    A key moves Clear -> Fired(level) -> Clear. Mutations take the lock with a
    bound; a caller that cannot get it in time skips the key for this tick.
    """

    def __init__(self, lock_timeout: float = 1.0):
        self.lock_timeout = lock_timeout
        self._levels: Dict[str, str] = {}
        self._participants: Dict[str, FrozenSet[str]] = {}
        self._lock = asyncio.Lock()
        self.lock_skips = 0

    async def _acquire(self) -> bool:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError:
            self.lock_skips += 1
            return False
        return True

    async def transition(
        self, key: str, level: Optional[str], participants: Iterable[str] = ()
    ) -> Optional[bool]:
        """
        Record ``level`` for ``key``.

        Returns True when an alert should fire (a new, different level), False
        when nothing changes or the key clears, and None when the lock could
        not be taken in time.
        """
        if not await self._acquire():
            return None
        try:
            current = self._levels.get(key)
            if level is None:
                self._levels.pop(key, None)
                self._participants.pop(key, None)
                return False
            if current == level:
                return False
            self._levels[key] = level
            self._participants[key] = frozenset(str(p) for p in participants)
            return True
        finally:
            self._lock.release()

    async def prune(self, live_ids: Iterable[str]) -> int:
        """Clear keys whose participants are no longer all live."""
        live = set(str(i) for i in live_ids)
        if not await self._acquire():
            return 0
        try:
            gone = [
                key for key, members in self._participants.items()
                if members and not members <= live
            ]
            for key in gone:
                self._levels.pop(key, None)
                self._participants.pop(key, None)
            return len(gone)
        finally:
            self._lock.release()

    def level(self, key: str) -> Optional[str]:
        return self._levels.get(key)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._levels)


@dataclass
class PositionedAuthority:
    authority: Authority
    fix: GPSFix
    milepost: Optional[float]
    geometry: List[GeometryPoint]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProximityScanner:
    """
    Periodic evaluation of live worker positions against alert thresholds.

    Each tick expires authorities, then checks boundary, speed and time for
    every live authority and proximity for every pair of workers sharing a
    track. Alerts are handed to the dispatcher without waiting for delivery.
    """

    def __init__(
        self,
        geometry: GeometryStore,
        authorities: AuthorityStore,
        fixes: LatestFixStore,
        configs: AlertConfigStore,
        dispatcher: Any,
        interval_s: float = 5.0,
        max_fix_age_s: float = 120.0,
        fix_retention_s: Optional[float] = None,
        lookup_timeout_s: float = 2.0,
        lock_timeout_s: float = 1.0,
        geometry_cache: Optional[TTLCache] = None,
        threshold_cache: Optional[TTLCache] = None,
        debug: bool = False,
    ):
        self.geometry = geometry
        self.authorities = authorities
        self.fixes = fixes
        self.configs = configs
        self.dispatcher = dispatcher
        self.interval_s = interval_s
        self.max_fix_age_s = max_fix_age_s
        if fix_retention_s is None:
            fix_retention_s = max_fix_age_s * 5
        self.fix_retention_s = max(fix_retention_s, max_fix_age_s)
        self.lookup_timeout_s = lookup_timeout_s
        self.geometry_cache = geometry_cache or TTLCache(ttl=300.0)
        self.threshold_cache = threshold_cache or TTLCache(ttl=60.0)
        self.debug = debug
        self.state = AlertStateTable(lock_timeout=lock_timeout_s)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.stale_skips = 0
        self.pruned_fixes = 0
        self.lookup_timeouts = 0
        self.alerts_fired = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_ms: Optional[float] = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def _bounded(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.lookup_timeout_s)
        except asyncio.TimeoutError:
            raise LookupTimeoutError(f"{what} lookup exceeded {self.lookup_timeout_s}s")

    async def track_geometry(self, authority: Authority) -> List[GeometryPoint]:
        key = authority.track_key
        return await self._bounded(
            self.geometry_cache.get_or_fetch(
                key,
                lambda: self.geometry.get_geometry(
                    authority.subdivision_id, authority.track_type, authority.track_number
                ),
            ),
            f"geometry {'/'.join(key)}",
        )

    async def thresholds(self, agency_id: str, config_type: str) -> List[AlertThreshold]:
        return await self._bounded(
            self.threshold_cache.get_or_fetch(
                (agency_id, config_type),
                lambda: self.configs.get_thresholds(agency_id, config_type),
            ),
            f"{config_type} thresholds",
        )

    @staticmethod
    def resolve_milepost(
        authority: Authority, fix: GPSFix, geometry: Sequence[GeometryPoint]
    ) -> Optional[float]:
        same_track = (
            fix.track_type in (None, authority.track_type)
            and fix.track_number in (None, authority.track_number)
        )
        if fix.milepost is not None and same_track:
            return fix.milepost
        if not geometry:
            return None
        try:
            return interpolate_milepost(geometry, fix.latitude, fix.longitude).milepost
        except NotFoundError:
            return None

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------
    async def _fire(
        self,
        key: str,
        threshold: Optional[AlertThreshold],
        participants: Iterable[str],
        build,
    ) -> Optional[AlertEvent]:
        level = threshold.level if threshold is not None else None
        fired = await self.state.transition(key, level, participants)
        if not fired:
            return None
        event = build(threshold)
        self.alerts_fired += 1
        self.dispatcher.dispatch_nowait(event)
        return event

    async def evaluate_boundary(
        self,
        authority: Authority,
        milepost: Optional[float],
        geometry: Sequence[GeometryPoint],
        now: datetime,
    ) -> List[AlertEvent]:
        if milepost is None:
            return []
        user = authority.user_id
        fired: List[AlertEvent] = []

        if not authority.contains(milepost):
            await self.state.transition(boundary_key(user), None)
            outside_by = (
                authority.begin_mp - milepost if milepost < authority.begin_mp
                else milepost - authority.end_mp
            )
            boundary = "begin" if milepost < authority.begin_mp else "end"
            critical = AlertThreshold(authority.agency_id, CONFIG_BOUNDARY, LEVEL_CRITICAL)

            def build_violation(t: AlertThreshold) -> AlertEvent:
                return BoundaryAlert(
                    alert_id=new_alert_id(),
                    level=LEVEL_CRITICAL,
                    subject_user_id=user,
                    authority_id=authority.authority_id,
                    agency_id=authority.agency_id,
                    fired_at=now,
                    dedupe_key=violation_key(user),
                    message=(
                        f"Outside authority limits: MP {milepost} is {abs(outside_by):.2f} mi "
                        f"past the {boundary} boundary (MP {authority.begin_mp}-{authority.end_mp})"
                    ),
                    boundary=boundary,
                    milepost=milepost,
                    distance_miles=round(abs(outside_by), 2),
                    method=METHOD_STRAIGHT,
                    violation=True,
                )

            event = await self._fire(violation_key(user), critical, [user], build_violation)
            if event is not None:
                fired.append(event)
            return fired

        await self.state.transition(violation_key(user), None)
        to_begin, begin_method = measure_track_distance(authority.begin_mp, milepost, geometry)
        to_end, end_method = measure_track_distance(milepost, authority.end_mp, geometry)
        if to_begin <= to_end:
            boundary, distance, method = "begin", to_begin, begin_method
        else:
            boundary, distance, method = "end", to_end, end_method

        thresholds = await self.thresholds(authority.agency_id, CONFIG_BOUNDARY)
        selected = select_distance_level(distance, thresholds)

        def build(t: AlertThreshold) -> AlertEvent:
            default = (
                f"Approaching {boundary} of authority: {distance:.2f} mi "
                f"(MP {milepost}, limits {authority.begin_mp}-{authority.end_mp})"
            )
            return BoundaryAlert(
                alert_id=new_alert_id(),
                level=t.level,
                subject_user_id=user,
                authority_id=authority.authority_id,
                agency_id=authority.agency_id,
                fired_at=now,
                dedupe_key=boundary_key(user),
                message=t.render_message(
                    default, distance=distance, milepost=milepost, boundary=boundary
                ),
                boundary=boundary,
                milepost=milepost,
                distance_miles=distance,
                threshold_miles=t.distance_miles,
                method=method,
            )

        event = await self._fire(boundary_key(user), selected, [user], build)
        if event is not None:
            fired.append(event)
        return fired

    async def evaluate_speed(self, authority: Authority, fix: GPSFix, now: datetime) -> List[AlertEvent]:
        if fix.speed is None:
            return []
        user = authority.user_id
        thresholds = await self.thresholds(authority.agency_id, CONFIG_SPEED)
        selected = select_speed_level(fix.speed, thresholds)

        def build(t: AlertThreshold) -> AlertEvent:
            default = f"Speed {fix.speed:.1f} mph exceeds {t.speed_mph:.0f} mph"
            return SpeedAlert(
                alert_id=new_alert_id(),
                level=t.level,
                subject_user_id=user,
                authority_id=authority.authority_id,
                agency_id=authority.agency_id,
                fired_at=now,
                dedupe_key=speed_key(user),
                message=t.render_message(default, speed=fix.speed, limit=t.speed_mph),
                speed_mph=fix.speed,
                limit_mph=t.speed_mph,
            )

        event = await self._fire(speed_key(user), selected, [user], build)
        return [event] if event is not None else []

    async def evaluate_time(self, authority: Authority, now: datetime) -> List[AlertEvent]:
        if authority.expiration_time is None:
            return []
        remaining = (authority.expiration_time - now).total_seconds() / 60.0
        if remaining <= 0:
            return []
        thresholds = await self.thresholds(authority.agency_id, CONFIG_TIME)
        selected = select_time_level(remaining, thresholds)

        def build(t: AlertThreshold) -> AlertEvent:
            default = f"Authority expires in {remaining:.0f} min"
            return TimeAlert(
                alert_id=new_alert_id(),
                level=t.level,
                subject_user_id=authority.user_id,
                authority_id=authority.authority_id,
                agency_id=authority.agency_id,
                fired_at=now,
                dedupe_key=time_key(authority.authority_id),
                message=t.render_message(default, minutes=round(remaining)),
                minutes_remaining=round(remaining, 1),
                threshold_minutes=t.time_minutes,
                expiration_time=authority.expiration_time.isoformat().replace("+00:00", "Z"),
            )

        key = time_key(authority.authority_id)
        event = await self._fire(key, selected, [authority.authority_id], build)
        return [event] if event is not None else []

    @staticmethod
    def pair_distance(first: PositionedAuthority, second: PositionedAuthority) -> Tuple[float, str]:
        if first.milepost is not None and second.milepost is not None:
            return measure_track_distance(first.milepost, second.milepost, first.geometry)
        distance = gps_distance(
            first.fix.latitude, first.fix.longitude, second.fix.latitude, second.fix.longitude
        )
        return round(distance, 2), METHOD_STRAIGHT

    async def evaluate_pair(
        self, first: PositionedAuthority, second: PositionedAuthority, now: datetime
    ) -> List[AlertEvent]:
        a, b = first.authority, second.authority
        shared = overlap_range(a.begin_mp, a.end_mp, b.begin_mp, b.end_mp)
        config_type = CONFIG_OVERLAP if shared is not None else CONFIG_PROXIMITY
        distance, method = self.pair_distance(first, second)
        thresholds = await self.thresholds(a.agency_id, config_type)
        selected = select_distance_level(distance, thresholds)
        key = pair_key(a.user_id, b.user_id, config_type)

        def build(t: AlertThreshold) -> AlertEvent:
            common = dict(
                alert_id=new_alert_id(),
                level=t.level,
                subject_user_id=a.user_id,
                authority_id=a.authority_id,
                agency_id=a.agency_id,
                fired_at=now,
                dedupe_key=key,
                other_user_id=b.user_id,
                other_authority_id=b.authority_id,
                distance_miles=distance,
                method=method,
            )
            if shared is not None:
                default = (
                    f"Overlapping authority worker {distance:.2f} mi away "
                    f"(shared MP {shared[0]}-{shared[1]})"
                )
                return OverlapAlert(
                    message=t.render_message(default, distance=distance),
                    overlap_begin_mp=shared[0],
                    overlap_end_mp=shared[1],
                    source="scan",
                    **common,
                )
            default = f"Worker on the same track {distance:.2f} mi away"
            return ProximityAlert(
                message=t.render_message(default, distance=distance),
                threshold_miles=t.distance_miles,
                **common,
            )

        # The other type's key for this pair no longer applies
        other_type = CONFIG_PROXIMITY if shared is not None else CONFIG_OVERLAP
        await self.state.transition(pair_key(a.user_id, b.user_id, other_type), None)
        event = await self._fire(key, selected, [a.user_id, b.user_id], build)
        return [event] if event is not None else []

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def evaluate_fix(self, authority: Authority, fix: GPSFix, now: Optional[datetime] = None) -> List[AlertEvent]:
        """Boundary and speed checks for one reporting worker, sharing the scan's dedupe state."""
        now = now or _utcnow()
        if self._skip_stale(authority, fix, now):
            return []
        geometry = await self.track_geometry(authority)
        milepost = self.resolve_milepost(authority, fix, geometry)
        fired = await self.evaluate_boundary(authority, milepost, geometry, now)
        fired.extend(await self.evaluate_speed(authority, fix, now))
        return fired

    def _is_stale(self, fix: GPSFix, now: datetime) -> bool:
        return fix.age_seconds(now) > self.max_fix_age_s

    def _skip_stale(self, authority: Authority, fix: GPSFix, now: datetime) -> bool:
        if not self._is_stale(fix, now):
            return False
        self.stale_skips += 1
        if self.debug:
            print(
                f"[scanner] stale fix for user {fix.user_id} "
                f"({fix.age_seconds(now):.0f}s old), skipping {authority.authority_id}"
            )
        return True

    async def scan_once(self, now: Optional[datetime] = None) -> List[AlertEvent]:
        now = now or _utcnow()
        started = asyncio.get_running_loop().time()
        self.ticks += 1
        try:
            await self._bounded(self.authorities.expire_authorities(now), "expiry")
            live = await self._bounded(self.authorities.get_active_authorities(now=now), "authorities")
        except LookupTimeoutError as exc:
            self.skipped_ticks += 1
            print(f"[scanner] skipping tick: {exc}")
            return []

        fixes = self.fixes.snapshot()
        fired: List[AlertEvent] = []
        positioned: List[PositionedAuthority] = []

        for authority in live:
            try:
                fired.extend(await self.evaluate_time(authority, now))
                fix = fixes.get(authority.user_id)
                if fix is None:
                    continue
                if fix.authority_id and fix.authority_id != authority.authority_id:
                    continue
                if self._skip_stale(authority, fix, now):
                    continue
                geometry = await self.track_geometry(authority)
                milepost = self.resolve_milepost(authority, fix, geometry)
                positioned.append(PositionedAuthority(authority, fix, milepost, geometry))
                fired.extend(await self.evaluate_boundary(authority, milepost, geometry, now))
                fired.extend(await self.evaluate_speed(authority, fix, now))
            except LookupTimeoutError as exc:
                self.lookup_timeouts += 1
                print(f"[scanner] skipping authority {authority.authority_id}: {exc}")

        by_track: Dict[Tuple[str, str, str], List[PositionedAuthority]] = {}
        for item in positioned:
            by_track.setdefault(item.authority.track_key, []).append(item)
        for items in by_track.values():
            for i, first in enumerate(items):
                for second in items[i + 1:]:
                    if first.authority.user_id == second.authority.user_id:
                        continue
                    try:
                        fired.extend(await self.evaluate_pair(first, second, now))
                    except LookupTimeoutError as exc:
                        self.lookup_timeouts += 1
                        print(
                            f"[scanner] skipping pair {first.authority.authority_id}/"
                            f"{second.authority.authority_id}: {exc}"
                        )

        live_ids = {a.user_id for a in live} | {a.authority_id for a in live}
        await self.state.prune(live_ids)
        dropped = self.fixes.prune(now - timedelta(seconds=self.fix_retention_s))
        if dropped:
            self.pruned_fixes += dropped
            if self.debug:
                print(f"[scanner] dropped {dropped} fixes older than {self.fix_retention_s:.0f}s")

        self.last_tick_at = now
        self.last_tick_ms = (asyncio.get_running_loop().time() - started) * 1000.0
        if self.debug:
            print(
                f"[scanner] tick {self.ticks}: {len(live)} authorities, "
                f"{len(positioned)} positioned, {len(fired)} alerts, {self.last_tick_ms:.1f} ms"
            )
        return fired

    async def _run(self) -> None:
        print(f"[scanner] started, interval {self.interval_s}s")
        while not self._stop.is_set():
            try:
                await self.scan_once()
            except Exception as exc:
                print(f"[scanner] tick failed: {exc}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
        print("[scanner] stopped")

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._stop.clear()
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def stop(self) -> None:
        """Signal the loop and wait for the in-flight tick to finish."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    async def proximity_status(self, authority_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Workers on the same track whose authorities overlap ``authority_id``."""
        now = now or _utcnow()
        authority = await self.authorities.get_authority(authority_id)
        live = await self.authorities.get_active_authorities(
            authority.subdivision_id, authority.track_type, authority.track_number, now=now
        )
        geometry = await self.track_geometry(authority)
        own_fix = self.fixes.get(authority.user_id)
        own_mp = self.resolve_milepost(authority, own_fix, geometry) if own_fix else None

        workers: List[Dict[str, Any]] = []
        for other in live:
            if other.authority_id == authority.authority_id or other.user_id == authority.user_id:
                continue
            shared = overlap_range(authority.begin_mp, authority.end_mp, other.begin_mp, other.end_mp)
            if shared is None:
                continue
            fix = self.fixes.get(other.user_id)
            milepost = None
            distance = None
            method = None
            if fix is not None and not self._is_stale(fix, now):
                milepost = self.resolve_milepost(other, fix, geometry)
                if own_mp is not None and milepost is not None:
                    distance, method = measure_track_distance(own_mp, milepost, geometry)
                elif own_fix is not None:
                    distance = round(
                        gps_distance(own_fix.latitude, own_fix.longitude, fix.latitude, fix.longitude), 2
                    )
                    method = METHOD_STRAIGHT
            workers.append({
                "userId": other.user_id,
                "authorityId": other.authority_id,
                "employeeName": other.employee_name,
                "employeeContact": other.employee_contact,
                "beginMP": other.begin_mp,
                "endMP": other.end_mp,
                "overlapBeginMP": shared[0],
                "overlapEndMP": shared[1],
                "milepost": milepost,
                "distance": distance,
                "method": method,
                "lastSeen": fix.timestamp.isoformat().replace("+00:00", "Z") if fix else None,
            })
        workers.sort(key=lambda w: (w["distance"] is None, w["distance"] or 0.0))
        return workers

    async def workers_near(
        self,
        authority_id: str,
        latitude: float,
        longitude: float,
        max_distance: float = 1.0,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Other live workers in the same subdivision within ``max_distance`` miles of a point."""
        now = now or _utcnow()
        authority = await self.authorities.get_authority(authority_id)
        live = await self.authorities.get_active_authorities(authority.subdivision_id, now=now)
        fixes = self.fixes.snapshot()
        nearby: List[Dict[str, Any]] = []
        for other in live:
            if other.user_id == authority.user_id:
                continue
            fix = fixes.get(other.user_id)
            if fix is None or self._is_stale(fix, now):
                continue
            distance = gps_distance(latitude, longitude, fix.latitude, fix.longitude)
            if distance > max_distance:
                continue
            nearby.append({
                "userId": other.user_id,
                "authorityId": other.authority_id,
                "employeeName": other.employee_name,
                "trackType": other.track_type,
                "trackNumber": other.track_number,
                "sameTrack": other.track_key == authority.track_key,
                "distance": round(distance, 2),
                "latitude": fix.latitude,
                "longitude": fix.longitude,
            })
        nearby.sort(key=lambda w: w["distance"])
        return nearby

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "intervalSeconds": self.interval_s,
            "ticks": self.ticks,
            "skippedTicks": self.skipped_ticks,
            "staleFixSkips": self.stale_skips,
            "prunedFixes": self.pruned_fixes,
            "lookupTimeouts": self.lookup_timeouts,
            "lockSkips": self.state.lock_skips,
            "alertsFired": self.alerts_fired,
            "activeAlertKeys": len(self.state.snapshot()),
            "trackedWorkers": len(self.fixes),
            "lastTickAt": self.last_tick_at.isoformat().replace("+00:00", "Z") if self.last_tick_at else None,
            "lastTickMs": self.last_tick_ms,
        }


__all__ = [
    "AlertStateTable",
    "PositionedAuthority",
    "ProximityScanner",
    "boundary_key",
    "pair_key",
    "speed_key",
    "time_key",
    "violation_key",
]
