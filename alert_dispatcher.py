from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from pywebpush import WebPushException, webpush

from alert_config import AlertThreshold
from alert_storage import AlertEvent, AlertStorage, OverlapAlert
from email_notifier import EmailNotifier
from push_subscriptions import PushSubscriptionStore
from socket_rooms import RoomManager, agency_room, authority_room, user_room
from track_errors import DeliveryError
from user_directory import UserDirectory


CHANNEL_SOCKET = "socket"
CHANNEL_PUSH = "push"
CHANNEL_EMAIL = "email"
DEFAULT_CHANNELS = (CHANNEL_SOCKET, CHANNEL_PUSH, CHANNEL_EMAIL)

# Push endpoints answering with these are gone for good
EXPIRED_SUBSCRIPTION_STATUSES = (404, 410)


class AlertDispatcher:
    """
    Persists alert events, then fans them out to socket rooms, Web Push and email.

    Delivery is best effort: a failed channel is logged with its recipient and
    cause and never fails the caller. Persistence errors do propagate.
    """

    def __init__(
        self,
        storage: AlertStorage,
        rooms: RoomManager,
        push_store: PushSubscriptionStore,
        email: EmailNotifier,
        users: UserDirectory,
        vapid_private_key: str = "",
        vapid_subject: str = "",
        push_sender: Callable[..., object] = webpush,
    ):
        self.storage = storage
        self.rooms = rooms
        self.push_store = push_store
        self.email = email
        self.users = users
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self._push_sender = push_sender
        self._pending: Set[asyncio.Task] = set()
        self.delivered: Dict[str, int] = {CHANNEL_SOCKET: 0, CHANNEL_PUSH: 0, CHANNEL_EMAIL: 0}
        self.failures: Dict[str, int] = {CHANNEL_SOCKET: 0, CHANNEL_PUSH: 0, CHANNEL_EMAIL: 0}

    @property
    def push_configured(self) -> bool:
        return bool(self.vapid_private_key)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _recipients(self, event: AlertEvent) -> List[str]:
        users = [event.subject_user_id]
        other = event.counterpart_user_id
        if other and other not in users:
            users.append(other)
        return users

    async def dispatch(
        self, event: AlertEvent, channels: Sequence[str] = DEFAULT_CHANNELS
    ) -> AlertEvent:
        self.storage.write_events([event])
        payload = event.to_payload()

        if CHANNEL_SOCKET in channels:
            self._send_socket(event, payload)
        if CHANNEL_PUSH in channels:
            for user_id in self._recipients(event):
                await self._send_push(user_id, payload)
        if CHANNEL_EMAIL in channels and isinstance(event, OverlapAlert) and event.source == "creation":
            await self._send_overlap_email(event)
        return event

    def spawn(self, coro: Awaitable[object]) -> asyncio.Task:
        """Run ``coro`` in the background; the task is tracked but never awaited on shutdown."""
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def dispatch_nowait(
        self, event: AlertEvent, channels: Sequence[str] = DEFAULT_CHANNELS
    ) -> asyncio.Task:
        return self.spawn(self.dispatch(event, channels))

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            print(f"[dispatcher] background dispatch failed: {exc}")

    def _send_socket(self, event: AlertEvent, payload: dict) -> None:
        rooms = [user_room(uid) for uid in self._recipients(event)]
        if event.authority_id:
            rooms.append(authority_room(event.authority_id))
        if event.counterpart_authority_id:
            rooms.append(authority_room(event.counterpart_authority_id))
        if isinstance(event, OverlapAlert) and event.agency_id:
            rooms.append(agency_room(event.agency_id))
        try:
            sent = sum(self.rooms.broadcast_json(room, payload) for room in rooms)
        except Exception as exc:
            self._log_failure(DeliveryError(CHANNEL_SOCKET, ",".join(rooms), exc))
            return
        self.delivered[CHANNEL_SOCKET] += sent

    async def _send_push(self, user_id: str, payload: dict) -> None:
        if not self.push_configured:
            return
        subscriptions = await self.push_store.get_user_subscriptions(user_id)
        if not subscriptions:
            return
        notification = {
            "title": f"{payload['level']} {payload['type']} alert",
            "body": (payload.get("message") or "")[:200],
            "tag": f"alert-{payload['details'].get('alertId')}",
            "data": payload,
        }
        for sub in subscriptions:
            try:
                await asyncio.to_thread(
                    self._push_sender,
                    subscription_info=sub.to_subscription_info(),
                    data=json.dumps(notification),
                    vapid_private_key=self.vapid_private_key,
                    vapid_claims={"sub": self.vapid_subject},
                )
                self.delivered[CHANNEL_PUSH] += 1
            except WebPushException as e:
                status = getattr(e.response, "status_code", None) if e.response is not None else None
                if status in EXPIRED_SUBSCRIPTION_STATUSES:
                    print(f"[dispatcher] removing expired push subscription for user {user_id}")
                    await self.push_store.remove_subscription(sub.endpoint)
                else:
                    self._log_failure(DeliveryError(CHANNEL_PUSH, user_id, e))
            except Exception as err:
                self._log_failure(DeliveryError(CHANNEL_PUSH, user_id, err))

    async def _send_email(self, recipients: Sequence[str], subject: str, body: str) -> None:
        if not recipients:
            return
        try:
            await self.email.send_async(recipients, subject, body)
            self.delivered[CHANNEL_EMAIL] += 1
        except DeliveryError as exc:
            self._log_failure(exc)
        except Exception as exc:
            self._log_failure(DeliveryError(CHANNEL_EMAIL, ", ".join(recipients), exc))

    async def _send_overlap_email(self, event: OverlapAlert) -> None:
        recipients = self.users.supervisor_emails(event.agency_id or "")
        subject = f"Authority overlap alert: MP {event.overlap_begin_mp}-{event.overlap_end_mp}"
        lines = [
            "A new authority overlaps an existing one.",
            "",
            f"New authority: {event.authority_id} held by {self.users.display_name(event.subject_user_id)}",
            f"Existing authority: {event.other_authority_id} held by "
            f"{self.users.display_name(event.other_user_id)}",
            f"Overlap: MP {event.overlap_begin_mp} to MP {event.overlap_end_mp}",
            f"Severity: {event.level}",
            "",
            "Both workers have been notified. Please coordinate before work continues.",
        ]
        await self._send_email(recipients, subject, "\n".join(lines))

    async def notify_config_change(
        self,
        agency_id: str,
        config_type: str,
        thresholds: Iterable[AlertThreshold],
        changed_by: Optional[str] = None,
    ) -> None:
        recipients = self.users.supervisor_emails(agency_id)
        who = self.users.display_name(changed_by) if changed_by else "an administrator"
        lines = [f"{config_type} alert thresholds were changed by {who}.", ""]
        for t in thresholds:
            if config_type == "Speed":
                value = f"{t.speed_mph} mph"
            elif config_type == "Time":
                value = f"{t.time_minutes} min"
            else:
                value = f"{t.distance_miles} mi"
            state = "enabled" if t.enabled else "disabled"
            lines.append(f"  {t.level}: {value} ({state})")
        await self._send_email(recipients, f"Alert configuration changed: {config_type}", "\n".join(lines))

    def _log_failure(self, exc: DeliveryError) -> None:
        self.failures[exc.channel] = self.failures.get(exc.channel, 0) + 1
        print(f"[dispatcher] {exc.channel} delivery failed recipient={exc.recipient} cause={exc.cause}")

    def stats(self) -> dict:
        return {
            "delivered": dict(self.delivered),
            "failures": dict(self.failures),
            "pending": self.pending_count,
        }


__all__ = ["AlertDispatcher", "CHANNEL_EMAIL", "CHANNEL_PUSH", "CHANNEL_SOCKET", "DEFAULT_CHANNELS"]
