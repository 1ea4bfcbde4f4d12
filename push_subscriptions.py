"""Web Push endpoints registered by field workers for alert delivery."""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PushSubscription:
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: str
    user_agent: Optional[str] = None

    def to_subscription_info(self) -> dict:
        """Shape pywebpush expects for ``subscription_info``."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    def to_entry(self) -> dict:
        entry = self.to_subscription_info()
        entry.update(userId=self.user_id, createdAt=self.created_at, userAgent=self.user_agent)
        return entry

    @classmethod
    def from_entry(cls, entry: dict) -> Optional["PushSubscription"]:
        keys = entry.get("keys") if isinstance(entry.get("keys"), dict) else {}
        user_id = entry.get("userId")
        endpoint = entry.get("endpoint")
        if not user_id or not endpoint or not keys.get("p256dh") or not keys.get("auth"):
            return None
        return cls(
            user_id=str(user_id),
            endpoint=str(endpoint),
            p256dh=str(keys["p256dh"]),
            auth=str(keys["auth"]),
            created_at=entry.get("createdAt") or _now_iso(),
            user_agent=entry.get("userAgent"),
        )


class PushSubscriptionStore:
    """
    Endpoints grouped by owning user, persisted as one JSON file.

    An endpoint belongs to at most one user; re-registering it under another
    user moves it.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._by_endpoint: Dict[str, PushSubscription] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[push] could not read {self._path.name}: {exc}")
            return
        for entry in raw.get("subscriptions", []) if isinstance(raw, dict) else []:
            sub = PushSubscription.from_entry(entry) if isinstance(entry, dict) else None
            if sub is not None:
                self._by_endpoint[sub.endpoint] = sub

    async def _persist(self) -> None:
        body = json.dumps(
            {"subscriptions": [s.to_entry() for s in self._by_endpoint.values()], "updatedAt": _now_iso()},
            indent=2,
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(body)
        tmp_path.replace(self._path)

    async def add_subscription(
        self, user_id: str, endpoint: str, keys: dict, user_agent: Optional[str] = None
    ) -> bool:
        """Register ``endpoint`` for ``user_id``. Returns True for an endpoint not seen before."""
        sub = PushSubscription.from_entry(
            {"userId": user_id, "endpoint": endpoint, "keys": keys, "userAgent": user_agent}
        )
        if sub is None:
            return False
        async with self._lock:
            previous = self._by_endpoint.get(endpoint)
            if previous is not None and previous.user_id != sub.user_id:
                print(f"[push] endpoint moved from user {previous.user_id} to {sub.user_id}")
            self._by_endpoint[endpoint] = sub
            await self._persist()
        return previous is None

    async def remove_subscription(self, endpoint: str, user_id: Optional[str] = None) -> bool:
        """Drop ``endpoint``; with ``user_id`` only when that user owns it."""
        async with self._lock:
            sub = self._by_endpoint.get(endpoint)
            if sub is None or (user_id is not None and sub.user_id != str(user_id)):
                return False
            del self._by_endpoint[endpoint]
            await self._persist()
            return True

    async def get_user_subscriptions(self, user_id: str) -> List[PushSubscription]:
        async with self._lock:
            return [s for s in self._by_endpoint.values() if s.user_id == str(user_id)]

    async def count(self) -> int:
        async with self._lock:
            return len(self._by_endpoint)


__all__ = ["PushSubscription", "PushSubscriptionStore"]
