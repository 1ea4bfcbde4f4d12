import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from alert_storage import AlertStorage, BoundaryAlert, ProximityAlert, TimeAlert


def _boundary(ts, alert_id="b1", user="u1"):
    return BoundaryAlert(
        alert_id=alert_id,
        level="Critical",
        subject_user_id=user,
        authority_id="auth-1",
        agency_id="A1",
        fired_at=ts,
        dedupe_key=f"{user}|boundary|Boundary",
        message="Approaching end of authority, MP 19.8",
        boundary="end",
        milepost=19.8,
        distance_miles=0.2,
        threshold_miles=0.5,
        method="straight-line",
    )


def _proximity(ts, alert_id="p1"):
    return ProximityAlert(
        alert_id=alert_id,
        level="Warning",
        subject_user_id="u1",
        authority_id="auth-1",
        fired_at=ts,
        dedupe_key="u1|u2|Proximity",
        message="Worker on the same track 0.40 mi away",
        other_user_id="u2",
        other_authority_id="auth-2",
        distance_miles=0.4,
        threshold_miles=0.5,
        method="track-based",
    )


def test_payload_shape():
    ts = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    payload = _boundary(ts).to_payload()
    assert set(payload) == {"type", "level", "message", "details", "timestamp"}
    assert payload["type"] == "Boundary"
    assert payload["timestamp"] == "2024-05-01T10:00:00Z"
    assert payload["details"]["milepost"] == 19.8
    assert payload["details"]["distanceMiles"] == 0.2
    assert payload["details"]["authorityId"] == "auth-1"


def test_events_grouped_by_day_and_restored_with_variant_fields(tmp_path):
    storage = AlertStorage(tmp_path)
    day_one = datetime(2024, 5, 1, 23, 30, tzinfo=timezone.utc)
    day_two = datetime(2024, 5, 2, 0, 15, tzinfo=timezone.utc)

    storage.write_events([_boundary(day_one), _proximity(day_two)])

    assert (tmp_path / "2024-05-01.csv").exists()
    assert (tmp_path / "2024-05-02.csv").exists()

    events = storage.query_events(day_one - timedelta(hours=1), day_two + timedelta(hours=1))
    assert [type(e) for e in events] == [BoundaryAlert, ProximityAlert]
    boundary, proximity = events
    assert boundary.milepost == 19.8
    assert boundary.boundary == "end"
    assert boundary.agency_id == "A1"
    assert proximity.other_user_id == "u2"
    assert proximity.fired_at == day_two


def test_query_filters_by_user_and_counterpart(tmp_path):
    storage = AlertStorage(tmp_path)
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    storage.write_events([_boundary(ts, "b1", user="u3"), _proximity(ts + timedelta(minutes=1))])
    start, end = ts - timedelta(hours=1), ts + timedelta(hours=1)

    assert [e.alert_id for e in storage.query_events(start, end, user_id="u2")] == ["p1"]
    assert [e.alert_id for e in storage.query_events(start, end, user_id="u3")] == ["b1"]
    assert [e.alert_id for e in storage.query_events(start, end, authority_id="auth-2")] == ["p1"]
    assert [e.alert_id for e in storage.query_events(start, end, alert_types={"Boundary"})] == ["b1"]


def test_mark_read_sets_flag(tmp_path):
    storage = AlertStorage(tmp_path)
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    storage.write_events([_boundary(ts, "b1"), _boundary(ts, "b2")])
    storage.mark_read("b1", "u1")

    start, end = ts - timedelta(minutes=1), ts + timedelta(minutes=1)
    events = {e.alert_id: e for e in storage.query_events(start, end)}
    assert events["b1"].read is True
    assert events["b2"].read is False
    unread = storage.query_events(start, end, unread_only=True)
    assert [e.alert_id for e in unread] == ["b2"]
    assert storage.find_event("b2", start, end).alert_id == "b2"
    assert storage.find_event("nope", start, end) is None


def test_unknown_rows_are_skipped(tmp_path):
    storage = AlertStorage(tmp_path)
    ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    storage.write_events([_boundary(ts)])
    with (tmp_path / "2024-05-01.csv").open("a") as f:
        f.write("garbage,row\n")
        f.write("2024-05-01T12:00:00Z,x1,Mystery,Critical,u1,,,k,m,{}\n")

    events = storage.query_events(ts - timedelta(minutes=1), ts + timedelta(minutes=1))
    assert [e.alert_id for e in events] == ["b1"]


def test_time_alert_details_use_camel_case():
    alert = TimeAlert(
        alert_id="t1",
        level="Warning",
        subject_user_id="u1",
        authority_id="auth-1",
        fired_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        dedupe_key="auth-1|time|Time",
        minutes_remaining=12.0,
        threshold_minutes=15.0,
    )
    details = alert.to_payload()["details"]
    assert details["minutesRemaining"] == 12.0
    assert details["thresholdMinutes"] == 15.0
