"""Board rooms and event fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

LOGGER = logging.getLogger(__name__)


class Subscriber(Protocol):
    id: str

    def deliver(self, message: Dict[str, Any]) -> None: ...


class Room:
    """Sessions subscribed to one board."""

    def __init__(self, board_id: str) -> None:
        self.board_id = board_id
        self.subscribers: Dict[str, Subscriber] = {}
        self.lock = asyncio.Lock()
        self.closed = False


class RoomBroadcaster:
    """Maps board ids to the sessions viewing them.

    Each room carries its own lock so traffic on one board never waits on
    another. The registry lock only guards creating and discarding rooms.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self._subscriptions: Dict[str, set[str]] = {}
        self._registry_lock = asyncio.Lock()

    async def _open_room(self, board_id: str) -> Room:
        async with self._registry_lock:
            room = self._rooms.get(board_id)
            if room is None:
                room = Room(board_id)
                self._rooms[board_id] = room
            return room

    async def _discard_if_empty(self, room: Room) -> None:
        async with self._registry_lock:
            async with room.lock:
                if room.subscribers or room.closed:
                    return
                room.closed = True
                if self._rooms.get(room.board_id) is room:
                    del self._rooms[room.board_id]

    async def subscribe(self, session: Subscriber, board_id: str) -> None:
        while True:
            room = await self._open_room(board_id)
            async with room.lock:
                if room.closed:
                    continue
                room.subscribers[session.id] = session
                break
        self._subscriptions.setdefault(session.id, set()).add(board_id)
        LOGGER.info("session %s joined board %s", session.id, board_id)

    async def unsubscribe(self, session_id: str, board_id: str) -> bool:
        boards = self._subscriptions.get(session_id)
        if boards is not None:
            boards.discard(board_id)
            if not boards:
                del self._subscriptions[session_id]
        room = self._rooms.get(board_id)
        if room is None:
            return False
        async with room.lock:
            removed = room.subscribers.pop(session_id, None) is not None
        if removed:
            LOGGER.info("session %s left board %s", session_id, board_id)
            await self._discard_if_empty(room)
        return removed

    async def unsubscribe_all(self, session_id: str) -> None:
        for board_id in list(self._subscriptions.get(session_id, ())):
            await self.unsubscribe(session_id, board_id)
        self._subscriptions.pop(session_id, None)

    async def publish(
        self,
        board_id: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        """Deliver ``event`` to every session in the room except ``exclude``.

        Returns the number of sessions the event was handed to.
        """
        room = self._rooms.get(board_id)
        if room is None:
            return 0
        message = {"event": event, "data": data}
        delivered = 0
        async with room.lock:
            for sid, session in room.subscribers.items():
                if sid == exclude:
                    continue
                session.deliver(message)
                delivered += 1
        LOGGER.debug("published %s to %d session(s) in board %s", event, delivered, board_id)
        return delivered

    def subscribers(self, board_id: str) -> set[str]:
        room = self._rooms.get(board_id)
        return set(room.subscribers) if room else set()

    def subscriptions(self, session_id: str) -> set[str]:
        return set(self._subscriptions.get(session_id, ()))

    @property
    def room_count(self) -> int:
        return len(self._rooms)
