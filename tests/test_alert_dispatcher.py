import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

from pywebpush import WebPushException

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from alert_config import default_thresholds
from alert_dispatcher import AlertDispatcher
from alert_storage import AlertStorage, OverlapAlert, ProximityAlert
from email_notifier import EmailNotifier
from push_subscriptions import PushSubscriptionStore
from user_directory import UserDirectory, UserRecord


FIRED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingRooms:
    def __init__(self, storage_dir=None):
        self.storage_dir = storage_dir
        self.sent = []

    def broadcast_json(self, room, message):
        if self.storage_dir is not None:
            assert (self.storage_dir / "2024-05-01.csv").exists()
        self.sent.append((room, message))
        return 1


class RecordingEmail:
    def __init__(self):
        self.sent = []

    async def send_async(self, recipients, subject, body):
        self.sent.append((list(recipients), subject, body))


def _users():
    return UserDirectory([
        UserRecord("u1", "A1", name="Sam Ortiz"),
        UserRecord("u2", "A1", name="Pat Lee"),
        UserRecord("s1", "A1", name="Chris Day", email="chris@example.com", role="Supervisor"),
    ])


def _proximity():
    return ProximityAlert(
        alert_id="p1",
        level="Warning",
        subject_user_id="u1",
        authority_id="auth-1",
        agency_id="A1",
        fired_at=FIRED_AT,
        dedupe_key="u1|u2|Proximity",
        message="Worker on the same track 0.40 mi away",
        other_user_id="u2",
        other_authority_id="auth-2",
        distance_miles=0.4,
        threshold_miles=0.5,
        method="track-based",
    )


def _overlap(source="creation"):
    return OverlapAlert(
        alert_id="o1",
        level="Critical",
        subject_user_id="u2",
        authority_id="auth-2",
        agency_id="A1",
        fired_at=FIRED_AT,
        dedupe_key="x|creation|Overlap",
        message="New authority overlaps MP 10-15",
        other_user_id="u1",
        other_authority_id="auth-1",
        overlap_begin_mp=10.0,
        overlap_end_mp=15.0,
        source=source,
    )


def _dispatcher(tmp_path, rooms=None, email=None, push_sender=None, vapid_key=""):
    storage = AlertStorage(tmp_path / "alerts")
    kwargs = {}
    if push_sender is not None:
        kwargs["push_sender"] = push_sender
    return AlertDispatcher(
        storage=storage,
        rooms=rooms or RecordingRooms(),
        push_store=PushSubscriptionStore(tmp_path / "push_subscriptions.json"),
        email=email or RecordingEmail(),
        users=_users(),
        vapid_private_key=vapid_key,
        vapid_subject="mailto:ops@example.com",
        **kwargs,
    )


def test_event_is_persisted_before_socket_delivery(tmp_path):
    rooms = RecordingRooms(storage_dir=tmp_path / "alerts")
    dispatcher = _dispatcher(tmp_path, rooms=rooms)

    asyncio.run(dispatcher.dispatch(_proximity()))

    targets = [room for room, _ in rooms.sent]
    assert targets == ["user-u1", "user-u2", "authority-auth-1", "authority-auth-2"]
    payload = rooms.sent[0][1]
    assert payload["type"] == "Proximity"
    assert dispatcher.delivered["socket"] == 4


def test_overlap_alert_reaches_agency_room_and_supervisors(tmp_path):
    rooms = RecordingRooms()
    email = RecordingEmail()
    dispatcher = _dispatcher(tmp_path, rooms=rooms, email=email)

    asyncio.run(dispatcher.dispatch(_overlap()))

    assert "agency-A1" in [room for room, _ in rooms.sent]
    assert len(email.sent) == 1
    recipients, subject, body = email.sent[0]
    assert recipients == ["chris@example.com"]
    assert "MP 10.0-15.0" in subject
    assert "Pat Lee" in body and "Sam Ortiz" in body


def test_scan_overlap_does_not_email(tmp_path):
    email = RecordingEmail()
    dispatcher = _dispatcher(tmp_path, email=email)
    asyncio.run(dispatcher.dispatch(_overlap(source="scan")))
    assert email.sent == []


def test_email_failure_is_logged_not_raised(tmp_path):
    dispatcher = _dispatcher(tmp_path, email=EmailNotifier(host=None))
    asyncio.run(dispatcher.dispatch(_overlap()))
    assert dispatcher.failures["email"] == 1
    assert dispatcher.delivered["email"] == 0


def test_push_delivered_to_both_users(tmp_path):
    calls = []

    def sender(**kwargs):
        calls.append(kwargs["subscription_info"]["endpoint"])

    dispatcher = _dispatcher(tmp_path, push_sender=sender, vapid_key="private-key")

    async def scenario():
        await dispatcher.push_store.add_subscription("u1", "https://push/u1", {"p256dh": "k", "auth": "a"})
        await dispatcher.push_store.add_subscription("u2", "https://push/u2", {"p256dh": "k", "auth": "a"})
        await dispatcher.dispatch(_proximity())

    asyncio.run(scenario())
    assert sorted(calls) == ["https://push/u1", "https://push/u2"]
    assert dispatcher.delivered["push"] == 2


def test_push_skipped_without_vapid_key(tmp_path):
    calls = []
    dispatcher = _dispatcher(tmp_path, push_sender=lambda **kw: calls.append(kw))

    async def scenario():
        await dispatcher.push_store.add_subscription("u1", "https://push/u1", {"p256dh": "k", "auth": "a"})
        await dispatcher.dispatch(_proximity())

    asyncio.run(scenario())
    assert calls == []


def test_gone_push_subscription_is_removed(tmp_path):
    def sender(**kwargs):
        raise WebPushException("gone", response=SimpleNamespace(status_code=410))

    dispatcher = _dispatcher(tmp_path, push_sender=sender, vapid_key="private-key")

    async def scenario():
        await dispatcher.push_store.add_subscription("u1", "https://push/u1", {"p256dh": "k", "auth": "a"})
        await dispatcher.dispatch(_proximity())
        return await dispatcher.push_store.count()

    assert asyncio.run(scenario()) == 0
    assert dispatcher.failures["push"] == 0


def test_other_push_errors_count_as_failures(tmp_path):
    def sender(**kwargs):
        raise WebPushException("server error", response=SimpleNamespace(status_code=500))

    dispatcher = _dispatcher(tmp_path, push_sender=sender, vapid_key="private-key")

    async def scenario():
        await dispatcher.push_store.add_subscription("u1", "https://push/u1", {"p256dh": "k", "auth": "a"})
        await dispatcher.dispatch(_proximity())
        return await dispatcher.push_store.count()

    assert asyncio.run(scenario()) == 1
    assert dispatcher.failures["push"] == 1


def test_dispatch_nowait_runs_in_background(tmp_path):
    dispatcher = _dispatcher(tmp_path)

    async def scenario():
        task = dispatcher.dispatch_nowait(_proximity())
        assert dispatcher.pending_count == 1
        await task
        await asyncio.sleep(0)
        return dispatcher.pending_count

    assert asyncio.run(scenario()) == 0
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    end = datetime(2024, 5, 2, tzinfo=timezone.utc)
    assert [e.alert_id for e in dispatcher.storage.query_events(start, end)] == ["p1"]


def test_config_change_notice_lists_levels(tmp_path):
    email = RecordingEmail()
    dispatcher = _dispatcher(tmp_path, email=email)
    asyncio.run(dispatcher.notify_config_change("A1", "Speed", default_thresholds("A1", "Speed"), "s1"))
    recipients, subject, body = email.sent[0]
    assert recipients == ["chris@example.com"]
    assert subject == "Alert configuration changed: Speed"
    assert "Chris Day" in body
    assert "Critical: 40" in body
