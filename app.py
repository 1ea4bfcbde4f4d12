"""
Rail Proximity Guard: authority overlap and worker proximity API

Purpose
=======
Track rail work authorities, map worker GPS fixes onto track mileposts, and
warn crews when authorities overlap or workers converge on the same track.

Key features
------------
- Milepost interpolation and along-track distances from surveyed geometry.
- Authority creation with an atomic overlap check; end tracking and expiry.
- Background proximity scanner with per-key alert dedupe.
- Alert fan-out over WebSocket rooms, Web Push and supervisor email.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
from dataclasses import dataclass
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from alert_config import (
    AlertConfigStore,
    CONFIG_TYPES,
    LEVEL_CRITICAL,
    LEVEL_INFORMATIONAL,
    LEVEL_WARNING,
    threshold_from_dict,
)
from alert_dispatcher import AlertDispatcher
from alert_storage import AlertStorage, OverlapAlert, new_alert_id
from authority_overlap import (
    Authority,
    OverlapRecord,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
    TrackSegment,
    parse_timestamp,
)
from authority_store import AuthorityStore
from email_notifier import EmailNotifier
from position_store import GPSFix, LatestFixStore
from proximity_scanner import ProximityScanner
from push_subscriptions import PushSubscriptionStore
from schemas import (
    AuthorityCreate,
    CalculateDistance,
    EndAuthority,
    GPSUpdate,
    InterpolateMilepost,
    OverlapCheck,
    ProximityCheck,
    PushSubscribe,
    PushUnsubscribe,
    ResolveOverlap,
    ThresholdUpdate,
)
from socket_rooms import RoomManager, agency_room, authority_room, user_room
from track_errors import (
    AccessDeniedError,
    LookupTimeoutError,
    NotFoundError,
    ProximityError,
    StaleDataError,
    ValidationError,
)
from track_geometry import (
    GeometryStore,
    METHOD_STRAIGHT,
    closest_point,
    gps_distance,
    measure_track_distance,
)
from ttl_cache import TTLCache
from user_directory import SUPERVISOR_ROLES, UserDirectory


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off", ""}


# ---------------------------
# Config
# ---------------------------
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
GEOMETRY_CSV_PATH = os.getenv("GEOMETRY_CSV_PATH")  # defaults to DATA_DIR/track_geometry.csv
USERS_PATH = os.getenv("USERS_PATH")  # defaults to DATA_DIR/users.json
SCAN_INTERVAL_S = float(os.getenv("SCAN_INTERVAL_S", "5"))
MAX_FIX_AGE_S = float(os.getenv("MAX_FIX_AGE_S", "120"))
MAX_CLOCK_SKEW_S = float(os.getenv("MAX_CLOCK_SKEW_S", "30"))
FIX_RETENTION_S = float(os.getenv("FIX_RETENTION_S", "600"))
LOOKUP_TIMEOUT_S = float(os.getenv("LOOKUP_TIMEOUT_S", "2"))
DEDUPE_LOCK_TIMEOUT_S = float(os.getenv("DEDUPE_LOCK_TIMEOUT_S", "1"))
GEOMETRY_CACHE_TTL_S = float(os.getenv("GEOMETRY_CACHE_TTL_S", "300"))
THRESHOLD_CACHE_TTL_S = float(os.getenv("THRESHOLD_CACHE_TTL_S", "60"))
ALERT_HISTORY_DAYS = int(os.getenv("ALERT_HISTORY_DAYS", "30"))
SCANNER_ENABLED = _env_flag("SCANNER_ENABLED", "1")
SCAN_DEBUG = _env_flag("SCAN_DEBUG", "0")

VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:ops@example.com")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_SENDER = os.getenv("SMTP_SENDER")
SMTP_STARTTLS = _env_flag("SMTP_STARTTLS", "1")

# Overlap span severity -> alert level for overlaps found at creation
CREATION_OVERLAP_LEVELS = {
    SEVERITY_CRITICAL: LEVEL_CRITICAL,
    SEVERITY_HIGH: LEVEL_CRITICAL,
    SEVERITY_MEDIUM: LEVEL_WARNING,
}


# ---------------------------
# Services
# ---------------------------
@dataclass
class Services:
    geometry: GeometryStore
    authorities: AuthorityStore
    fixes: LatestFixStore
    configs: AlertConfigStore
    alerts: AlertStorage
    rooms: RoomManager
    push: PushSubscriptionStore
    email: EmailNotifier
    users: UserDirectory
    dispatcher: AlertDispatcher
    scanner: ProximityScanner
    geometry_cache: TTLCache
    threshold_cache: TTLCache


def build_services(data_dir: Path) -> Services:
    geometry_path = Path(GEOMETRY_CSV_PATH) if GEOMETRY_CSV_PATH else data_dir / "track_geometry.csv"
    users_path = Path(USERS_PATH) if USERS_PATH else data_dir / "users.json"

    geometry = GeometryStore.from_csv(geometry_path)
    authorities = AuthorityStore(data_dir / "authorities.json")
    fixes = LatestFixStore()
    configs = AlertConfigStore(data_dir / "alert_configs.json")
    alerts = AlertStorage(data_dir / "alerts")
    rooms = RoomManager()
    push = PushSubscriptionStore(data_dir / "push_subscriptions.json")
    email = EmailNotifier(
        SMTP_HOST,
        port=SMTP_PORT,
        username=SMTP_USER,
        password=SMTP_PASSWORD,
        sender=SMTP_SENDER,
        starttls=SMTP_STARTTLS,
    )
    users = UserDirectory.from_json(users_path)
    dispatcher = AlertDispatcher(
        alerts,
        rooms,
        push,
        email,
        users,
        vapid_private_key=VAPID_PRIVATE_KEY,
        vapid_subject=VAPID_SUBJECT,
    )
    geometry_cache = TTLCache(ttl=GEOMETRY_CACHE_TTL_S)
    threshold_cache = TTLCache(ttl=THRESHOLD_CACHE_TTL_S)
    scanner = ProximityScanner(
        geometry,
        authorities,
        fixes,
        configs,
        dispatcher,
        interval_s=SCAN_INTERVAL_S,
        max_fix_age_s=MAX_FIX_AGE_S,
        fix_retention_s=FIX_RETENTION_S,
        lookup_timeout_s=LOOKUP_TIMEOUT_S,
        lock_timeout_s=DEDUPE_LOCK_TIMEOUT_S,
        geometry_cache=geometry_cache,
        threshold_cache=threshold_cache,
        debug=SCAN_DEBUG,
    )
    return Services(
        geometry=geometry,
        authorities=authorities,
        fixes=fixes,
        configs=configs,
        alerts=alerts,
        rooms=rooms,
        push=push,
        email=email,
        users=users,
        dispatcher=dispatcher,
        scanner=scanner,
        geometry_cache=geometry_cache,
        threshold_cache=threshold_cache,
    )


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Rail Proximity Guard")


@app.on_event("startup")
async def init_services() -> None:
    services = build_services(DATA_DIR)
    app.state.services = services
    print(
        f"[startup] data dir {DATA_DIR}, {services.geometry.track_count()} tracks, "
        f"{await services.authorities.count()} authorities"
    )
    if not services.email.configured:
        print("[startup] SMTP not configured; supervisor email disabled")
    if not VAPID_PRIVATE_KEY:
        print("[startup] VAPID keys not configured; push delivery disabled")
    if SCANNER_ENABLED:
        services.scanner.start()


@app.on_event("shutdown")
async def stop_scanner() -> None:
    services: Optional[Services] = getattr(app.state, "services", None)
    if services is not None:
        await services.scanner.stop()
        if services.dispatcher.pending_count:
            print(f"[shutdown] leaving {services.dispatcher.pending_count} deliveries in flight")


def _services() -> Services:
    services = getattr(app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="service starting")
    return services


@app.exception_handler(ProximityError)
async def proximity_error_handler(request: Request, exc: ProximityError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": str(exc)})


# ---------------------------
# Caller identity (set by the upstream gateway)
# ---------------------------
@dataclass
class Caller:
    user_id: str
    agency_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "Administrator"

    @property
    def is_supervisor(self) -> bool:
        return self.role in SUPERVISOR_ROLES


def _caller(request: Request) -> Caller:
    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="user identity required")
    return Caller(
        user_id=user_id,
        agency_id=(request.headers.get("x-agency-id") or "").strip(),
        role=(request.headers.get("x-user-role") or "Field_Worker").strip(),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str], label: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        raise ValidationError(f"{label} is not an ISO timestamp: {value!r}")


def _overlap_details(records: List[OverlapRecord], others: Dict[str, Authority]) -> List[Dict[str, Any]]:
    details = []
    for record in records:
        item = record.to_dict()
        other = others.get(record.authority2_id)
        if other is not None:
            item["conflictingAuthority"] = {
                "authorityId": other.authority_id,
                "userId": other.user_id,
                "employeeName": other.employee_name,
                "employeeContact": other.employee_contact,
                "beginMP": other.begin_mp,
                "endMP": other.end_mp,
            }
        details.append(item)
    return details


async def _authorities_by_id(services: Services, records: List[OverlapRecord]) -> Dict[str, Authority]:
    found: Dict[str, Authority] = {}
    for record in records:
        try:
            found[record.authority2_id] = await services.authorities.get_authority(record.authority2_id)
        except NotFoundError:
            continue
    return found


# ---------------------------
# GPS ingestion
# ---------------------------
@app.post("/gps/update")
async def gps_update(request: Request, payload: GPSUpdate):
    caller = _caller(request)
    services = _services()
    now = _utcnow()
    timestamp = _parse_time(payload.timestamp, "timestamp") or now
    if timestamp > now + timedelta(seconds=MAX_CLOCK_SKEW_S):
        raise ValidationError(
            f"timestamp {timestamp.isoformat()} is more than {MAX_CLOCK_SKEW_S:.0f}s ahead of server time"
        )

    authority: Optional[Authority] = None
    if payload.authority_id:
        authority = await services.authorities.get_authority(payload.authority_id)
        if authority.user_id != caller.user_id:
            raise AccessDeniedError("fix reported against another user's authority")
        if not authority.is_active:
            raise ValidationError(f"authority {authority.authority_id} is no longer active")
    else:
        held = [
            a for a in await services.authorities.get_active_authorities(now=now)
            if a.user_id == caller.user_id
        ]
        authority = held[0] if held else None

    fix = GPSFix(
        user_id=caller.user_id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        timestamp=timestamp,
        accuracy=payload.accuracy,
        speed=payload.speed,
        heading=payload.heading,
        authority_id=authority.authority_id if authority else None,
    )
    if authority is not None:
        try:
            estimate = await services.geometry.interpolate(
                authority.subdivision_id,
                fix.latitude,
                fix.longitude,
                authority.track_type,
                authority.track_number,
            )
            fix.milepost = estimate.milepost
            fix.milepost_method = estimate.method
            fix.track_type = estimate.track_type
            fix.track_number = estimate.track_number
            fix.distance_to_track = round(estimate.distance_to_track_miles, 4)
        except NotFoundError:
            pass

    if not services.fixes.update(fix):
        raise StaleDataError(
            f"fix at {fix.timestamp.isoformat()} is older than the latest fix for user {caller.user_id}"
        )

    alerts = []
    if authority is not None:
        try:
            alerts = await services.scanner.evaluate_fix(authority, fix, now)
        except LookupTimeoutError as exc:
            print(f"[gps] alert evaluation skipped for user {caller.user_id}: {exc}")

    return {
        "accepted": True,
        "authorityId": fix.authority_id,
        "milepost": fix.milepost,
        "method": fix.milepost_method,
        "alerts": [event.to_payload() for event in alerts],
    }


# ---------------------------
# Authorities
# ---------------------------
def _creation_overlap_alert(authority: Authority, record: OverlapRecord, now: datetime) -> OverlapAlert:
    level = CREATION_OVERLAP_LEVELS.get(record.severity, LEVEL_INFORMATIONAL)
    return OverlapAlert(
        alert_id=new_alert_id(),
        level=level,
        subject_user_id=authority.user_id,
        authority_id=authority.authority_id,
        agency_id=authority.agency_id,
        fired_at=now,
        dedupe_key=f"{record.overlap_id}|creation|Overlap",
        message=(
            f"Authority overlap on {authority.subdivision_id} {authority.track_type} "
            f"{authority.track_number}: MP {record.overlap_begin_mp}-{record.overlap_end_mp} "
            f"({record.severity})"
        ),
        other_user_id=record.user2_id,
        other_authority_id=record.authority2_id,
        overlap_begin_mp=record.overlap_begin_mp,
        overlap_end_mp=record.overlap_end_mp,
        source="creation",
        overlap_id=record.overlap_id,
    )


@app.post("/authorities", status_code=201)
async def create_authority(request: Request, payload: AuthorityCreate):
    caller = _caller(request)
    services = _services()
    authority, overlaps = await services.authorities.create_authority(
        caller.user_id,
        caller.agency_id,
        {
            "subdivision_id": payload.subdivision_id,
            "track_type": payload.track_type,
            "track_number": payload.track_number,
            "begin_mp": payload.begin_mp,
            "end_mp": payload.end_mp,
            "authority_type": payload.authority_type,
            "start_time": payload.start_time,
            "expiration_time": payload.expiration_time,
            "employee_name": payload.employee_name,
            "employee_contact": payload.employee_contact,
        },
    )
    now = _utcnow()
    for record in overlaps:
        services.dispatcher.dispatch_nowait(_creation_overlap_alert(authority, record, now))
    if overlaps:
        print(f"[authorities] {authority.authority_id} overlaps {len(overlaps)} active authorities")

    others = await _authorities_by_id(services, overlaps)
    return {
        "authorityId": authority.authority_id,
        "hasOverlap": bool(overlaps),
        "overlapDetails": _overlap_details(overlaps, others),
        "authority": authority.to_dict(),
    }


@app.post("/authorities/check-overlap")
async def check_overlap(request: Request, payload: OverlapCheck):
    _caller(request)
    services = _services()
    segment = TrackSegment(
        subdivision_id=payload.subdivision_id,
        track_type=payload.track_type,
        track_number=payload.track_number,
        begin_mp=payload.begin_mp,
        end_mp=payload.end_mp,
    )
    overlaps = await services.authorities.check_overlap(segment, payload.exclude_authority_id)
    others = await _authorities_by_id(services, overlaps)
    return {"hasOverlap": bool(overlaps), "overlapDetails": _overlap_details(overlaps, others)}


@app.get("/authorities/active")
async def list_active_authorities(
    request: Request,
    subdivision_id: Optional[str] = Query(None, alias="subdivisionId"),
    track_type: Optional[str] = Query(None, alias="trackType"),
    track_number: Optional[str] = Query(None, alias="trackNumber"),
):
    _caller(request)
    items = await _services().authorities.get_active_authorities(subdivision_id, track_type, track_number)
    return {"authorities": [a.to_dict() for a in items], "count": len(items)}


@app.get("/authorities/{authority_id}")
async def get_authority(request: Request, authority_id: str):
    _caller(request)
    authority = await _services().authorities.get_authority(authority_id)
    return {"authority": authority.to_dict()}


@app.post("/authorities/{authority_id}/end")
async def end_authority(request: Request, authority_id: str, payload: Optional[EndAuthority] = Body(None)):
    caller = _caller(request)
    services = _services()
    confirm = payload.confirm_end_tracking if payload is not None else True
    authority = await services.authorities.end_authority(
        authority_id, caller.user_id, confirm_end_tracking=confirm, is_admin=caller.is_admin
    )
    services.rooms.broadcast_json(
        authority_room(authority.authority_id),
        {"type": "authority_ended", "authority": authority.to_dict()},
    )
    return {"authority": authority.to_dict()}


@app.post("/authorities/{authority_id}/check-proximity")
async def check_proximity(request: Request, authority_id: str, payload: ProximityCheck):
    _caller(request)
    workers = await _services().scanner.workers_near(
        authority_id, payload.latitude, payload.longitude, payload.max_distance
    )
    return {"workersNearby": workers, "count": len(workers)}


@app.get("/authorities/{authority_id}/proximity")
async def authority_proximity(request: Request, authority_id: str):
    _caller(request)
    workers = await _services().scanner.proximity_status(authority_id)
    return {"authorityId": authority_id, "workers": workers}


# ---------------------------
# Overlaps
# ---------------------------
@app.get("/overlaps")
async def list_overlaps(request: Request, include_resolved: bool = Query(False, alias="includeResolved")):
    _caller(request)
    records = await _services().authorities.list_overlaps(include_resolved=include_resolved)
    return {"overlaps": [r.to_dict() for r in records], "count": len(records)}


@app.post("/overlaps/{overlap_id}/resolve")
async def resolve_overlap(request: Request, overlap_id: str, payload: Optional[ResolveOverlap] = Body(None)):
    caller = _caller(request)
    if not caller.is_supervisor:
        raise AccessDeniedError("only supervisors can resolve overlaps")
    notes = payload.notes if payload is not None else None
    record = await _services().authorities.resolve_overlap(overlap_id, notes)
    return {"overlap": record.to_dict()}


# ---------------------------
# Track geometry
# ---------------------------
@app.post("/tracks/interpolate-milepost")
async def interpolate_milepost(payload: InterpolateMilepost):
    estimate = await _services().geometry.interpolate(
        payload.subdivision_id,
        payload.latitude,
        payload.longitude,
        payload.track_type,
        payload.track_number,
    )
    return estimate.to_dict()


@app.post("/tracks/calculate-distance")
async def calculate_distance(payload: CalculateDistance):
    points = await _services().geometry.get_geometry(
        payload.subdivision_id, payload.track_type, payload.track_number
    )
    if len(points) < 2:
        distance = gps_distance(payload.lat1, payload.lon1, payload.lat2, payload.lon2)
        return {"distance": round(distance, 2), "method": METHOD_STRAIGHT, "mp1": None, "mp2": None}

    first, _ = closest_point(points, payload.lat1, payload.lon1)
    second, _ = closest_point(points, payload.lat2, payload.lon2)
    distance, method = measure_track_distance(first.milepost, second.milepost, points)
    return {"distance": distance, "method": method, "mp1": first.milepost, "mp2": second.milepost}


@app.get("/tracks/mileposts/{subdivision_id}")
async def list_mileposts(
    subdivision_id: str,
    track_type: Optional[str] = Query(None, alias="trackType"),
    track_number: Optional[str] = Query(None, alias="trackNumber"),
):
    points = await _services().geometry.get_geometry(subdivision_id, track_type, track_number)
    if not points:
        raise NotFoundError(f"no track data found for subdivision {subdivision_id}")
    return {
        "subdivisionId": subdivision_id,
        "points": [p.to_dict() for p in points],
        "count": len(points),
    }


# ---------------------------
# Alert configuration
# ---------------------------
@app.get("/alert-configs/{agency_id}")
async def get_alert_configs(request: Request, agency_id: str):
    _caller(request)
    configs = await _services().configs.get_all(agency_id)
    return {
        "agencyId": agency_id,
        "configs": {ctype: [t.to_dict() for t in items] for ctype, items in configs.items()},
    }


@app.put("/alert-configs/{agency_id}/{config_type}")
async def put_alert_config(request: Request, agency_id: str, config_type: str, payload: ThresholdUpdate):
    caller = _caller(request)
    if not caller.is_supervisor:
        raise AccessDeniedError("only supervisors and administrators can change alert thresholds")
    if not caller.is_admin and caller.agency_id != agency_id:
        raise AccessDeniedError("cannot change another agency's thresholds")
    if config_type not in CONFIG_TYPES:
        raise NotFoundError(f"unknown alert config type {config_type}")

    services = _services()
    thresholds = [
        threshold_from_dict(agency_id, config_type, item.model_dump(by_alias=True))
        for item in payload.thresholds
    ]
    stored = await services.configs.set_thresholds(agency_id, config_type, thresholds)
    services.threshold_cache.clear()
    services.dispatcher.spawn(
        services.dispatcher.notify_config_change(agency_id, config_type, stored, caller.user_id)
    )
    return {"agencyId": agency_id, "configType": config_type, "thresholds": [t.to_dict() for t in stored]}


# ---------------------------
# Alert log
# ---------------------------
@app.get("/alerts")
async def list_alerts(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId"),
    authority_id: Optional[str] = Query(None, alias="authorityId"),
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    alert_type: Optional[str] = Query(None, alias="type"),
    unread_only: bool = Query(False, alias="unreadOnly"),
):
    caller = _caller(request)
    if user_id and user_id != caller.user_id and not caller.is_supervisor:
        raise AccessDeniedError("cannot read another user's alerts")
    if not caller.is_supervisor or not (user_id or authority_id):
        user_id = caller.user_id
    end_dt = _parse_time(end, "end") or _utcnow()
    start_dt = _parse_time(start, "start") or end_dt - timedelta(days=1)
    events = _services().alerts.query_events(
        start_dt,
        end_dt,
        user_id=user_id,
        authority_id=authority_id,
        alert_types={alert_type} if alert_type else None,
        unread_only=unread_only,
    )
    events.reverse()
    return {"alerts": [e.to_dict() for e in events], "count": len(events)}


@app.post("/alerts/{alert_id}/read")
async def mark_alert_read(request: Request, alert_id: str):
    caller = _caller(request)
    services = _services()
    now = _utcnow()
    event = services.alerts.find_event(alert_id, now - timedelta(days=ALERT_HISTORY_DAYS), now)
    if event is None:
        raise NotFoundError(f"alert {alert_id} not found")
    if not caller.is_supervisor and caller.user_id not in (event.subject_user_id, event.counterpart_user_id):
        raise AccessDeniedError("cannot acknowledge another user's alert")
    services.alerts.mark_read(alert_id, caller.user_id)
    return {"alertId": alert_id, "read": True}


# ---------------------------
# Scanner status
# ---------------------------
@app.get("/proximity/status")
async def proximity_status():
    services = _services()
    return {
        "scanner": services.scanner.stats(),
        "dispatcher": services.dispatcher.stats(),
        "connections": services.rooms.connection_count(),
    }


# ---------------------------
# Push Notifications API
# ---------------------------
@app.get("/api/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/api/push/subscribe")
async def push_subscribe(request: Request, payload: PushSubscribe):
    caller = _caller(request)
    if not VAPID_PUBLIC_KEY or not VAPID_PRIVATE_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    is_new = await _services().push.add_subscription(
        caller.user_id,
        payload.endpoint,
        payload.keys.model_dump(),
        request.headers.get("user-agent"),
    )
    return {"status": "subscribed", "new": is_new}


@app.post("/api/push/unsubscribe")
async def push_unsubscribe(request: Request, payload: PushUnsubscribe):
    caller = _caller(request)
    removed = await _services().push.remove_subscription(payload.endpoint, caller.user_id)
    return {"status": "unsubscribed", "found": removed}


# ---------------------------
# WebSocket
# ---------------------------
@app.websocket("/ws")
async def alerts_socket(
    websocket: WebSocket,
    user_id: Optional[str] = Query(None, alias="userId"),
    authority_id: Optional[str] = Query(None, alias="authorityId"),
    agency_id: Optional[str] = Query(None, alias="agencyId"),
):
    services = _services()
    rooms = []
    if user_id:
        rooms.append(user_room(user_id))
    if authority_id:
        rooms.append(authority_room(authority_id))
    if agency_id:
        rooms.append(agency_room(agency_id))
    await services.rooms.connect(websocket, rooms)
    await websocket.send_json({"type": "connected", "rooms": rooms})
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                continue
            if message.get("action") == "join-authority" and message.get("authorityId"):
                room = authority_room(message["authorityId"])
                await services.rooms.join(websocket, room)
                await websocket.send_json({"type": "joined", "room": room})
    except WebSocketDisconnect:
        pass
    finally:
        services.rooms.disconnect(websocket)
