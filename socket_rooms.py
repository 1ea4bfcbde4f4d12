from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Set

from fastapi import WebSocket


def user_room(user_id: object) -> str:
    return f"user-{user_id}"


def authority_room(authority_id: object) -> str:
    return f"authority-{authority_id}"


def agency_room(agency_id: object) -> str:
    return f"agency-{agency_id}"


class RoomManager:
    """WebSocket connections grouped into named rooms."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._memberships: Dict[WebSocket, Set[str]] = {}
        self._pending: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, rooms: Iterable[str] = ()) -> None:
        await websocket.accept()
        async with self._lock:
            self._memberships.setdefault(websocket, set())
        for room in rooms:
            await self.join(websocket, room)

    async def join(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(websocket)
            self._memberships.setdefault(websocket, set()).add(room)

    def disconnect(self, websocket: WebSocket) -> None:
        # best-effort
        rooms = self._memberships.pop(websocket, set())
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                self._rooms.pop(room, None)

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def connection_count(self) -> int:
        return len(self._memberships)

    def broadcast_json(self, room: str, message: Dict[str, Any]) -> int:
        """Schedule ``message`` to every member of ``room``; returns the number of sends queued."""
        # Fire-and-forget: schedule sends on current loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return 0

        members = list(self._rooms.get(room, ()))
        for ws in members:
            task = loop.create_task(self._safe_send(ws, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(members)

    async def _safe_send(self, websocket: WebSocket, message: Dict[str, Any]) -> None:
        try:
            await websocket.send_json(message)
        except Exception as exc:
            print(f"[sockets] send failed, dropping connection: {exc}")
            self.disconnect(websocket)


__all__ = ["RoomManager", "agency_room", "authority_room", "user_room"]
