"""Realtime connections: handshake, room membership and event relay."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from . import commands
from .access import board_for_id, require_member
from .auth import TokenService, parse_bearer
from .errors import AppError, InternalError, ValidationError
from .rooms import RoomBroadcaster
from .storage import HierarchyStore

LOGGER = logging.getLogger(__name__)

RELAY_EVENTS = frozenset({"task-created", "task-updated", "task-moved", "task-deleted"})

OUTBOX_LIMIT = 256


class ClientSession:
    """One authenticated WebSocket connection.

    Outbound messages go through a queue drained by a single writer task so
    a session receives events in the order they were published to it.
    """

    def __init__(self, websocket: WebSocket, user_id: str, max_queue: int = OUTBOX_LIMIT) -> None:
        self.id = f"S-{uuid.uuid4().hex[:8]}"
        self.websocket = websocket
        self.user_id = user_id
        self.alive = True
        self.overflowed = False
        self._outbox: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue(maxsize=max_queue + 1)
        self._max_queue = max_queue

    def deliver(self, message: Dict[str, Any]) -> None:
        if not self.alive:
            return
        if self._outbox.qsize() >= self._max_queue:
            LOGGER.warning("outbox full for %s, dropping session", self.id)
            self.overflowed = True
            self.close()
            return
        self._outbox.put_nowait(message)

    def send_error(self, message: str, event: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"message": message}
        if event:
            payload["event"] = event
        self.deliver({"event": "error", "data": payload})

    async def run_writer(self) -> None:
        while True:
            message = await self._outbox.get()
            if message is None or not self.alive:
                if self.overflowed:
                    await self._close_socket(status.WS_1013_TRY_AGAIN_LATER)
                return
            try:
                await self.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError, OSError):
                LOGGER.debug("send failed, stopping writer for %s", self.id)
                self.alive = False
                return

    async def _close_socket(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except (WebSocketDisconnect, RuntimeError, OSError):
            LOGGER.debug("close failed for %s", self.id)

    def close(self) -> None:
        if not self.alive:
            return
        self.alive = False
        # one slot is always kept free for the stop marker
        self._outbox.put_nowait(None)


def _authenticate(session_factory: sessionmaker, tokens: TokenService, token: Optional[str]) -> str:
    try:
        with session_factory() as db:
            return commands.authenticate(HierarchyStore(db), tokens, token).id
    except SQLAlchemyError as exc:
        LOGGER.exception("user lookup failed during handshake")
        raise InternalError(str(exc)) from exc


def _check_member(session_factory: sessionmaker, user_id: str, board_id: str) -> None:
    try:
        with session_factory() as db:
            board = board_for_id(HierarchyStore(db), board_id)
            require_member(user_id, board)
    except SQLAlchemyError as exc:
        LOGGER.exception("membership lookup failed for board %s", board_id)
        raise InternalError(str(exc)) from exc


def _board_id(data: Any) -> str:
    if isinstance(data, str):
        board_id = data.strip()
    elif isinstance(data, dict):
        board_id = str(data.get("boardId") or "").strip()
    else:
        board_id = ""
    if not board_id:
        raise ValidationError("boardId is required")
    return board_id


class SessionManager:
    """Routes client events to the broadcaster after re-checking access."""

    def __init__(
        self,
        session_factory: sessionmaker,
        tokens: TokenService,
        broadcaster: RoomBroadcaster,
        max_queue: int = OUTBOX_LIMIT,
    ) -> None:
        self.session_factory = session_factory
        self.tokens = tokens
        self.broadcaster = broadcaster
        self.max_queue = max_queue

    async def handle(self, websocket: WebSocket) -> None:
        token = websocket.query_params.get("token") or parse_bearer(websocket.headers.get("authorization"))
        try:
            user_id = await run_in_threadpool(_authenticate, self.session_factory, self.tokens, token)
        except AppError as exc:
            LOGGER.warning("realtime handshake rejected: %s", exc.message)
            code = status.WS_1011_INTERNAL_ERROR if exc.status_code >= 500 else status.WS_1008_POLICY_VIOLATION
            await websocket.close(code=code)
            return

        await websocket.accept()
        session = ClientSession(websocket, user_id, self.max_queue)
        writer = asyncio.create_task(session.run_writer())
        LOGGER.info("session connected: %s (user %s)", session.id, user_id)
        session.deliver({"event": "connected", "data": {"sessionId": session.id, "userId": user_id}})
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except WebSocketDisconnect:
                    break
                except (ValueError, KeyError):
                    # undecodable text or a binary frame
                    session.send_error("Malformed message")
                    continue
                await self.dispatch(session, message)
        finally:
            await self.broadcaster.unsubscribe_all(session.id)
            session.close()
            await writer
            LOGGER.info("session closed: %s", session.id)

    async def dispatch(self, session: ClientSession, message: Any) -> None:
        if not isinstance(message, dict):
            session.send_error("Message must be an object")
            return
        event = str(message.get("event") or "")
        data = message.get("data")
        try:
            if event == "join-board":
                board_id = _board_id(data)
                await run_in_threadpool(_check_member, self.session_factory, session.user_id, board_id)
                await self.broadcaster.subscribe(session, board_id)
                session.deliver({"event": "joined", "data": {"boardId": board_id}})
            elif event == "leave-board":
                board_id = _board_id(data)
                await self.broadcaster.unsubscribe(session.id, board_id)
                session.deliver({"event": "left", "data": {"boardId": board_id}})
            elif event in RELAY_EVENTS:
                await self.relay(session, event, data)
            elif event == "ping":
                session.deliver({"event": "pong", "data": None})
            else:
                session.send_error("Unknown event", event or None)
        except AppError as exc:
            LOGGER.warning("session %s event %s rejected: %s", session.id, event, exc.message)
            message = "Internal server error" if exc.status_code >= 500 else exc.message
            session.send_error(message, event)

    async def relay(self, session: ClientSession, event: str, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValidationError("Event payload must be an object")
        board_id = _board_id(data)
        await run_in_threadpool(_check_member, self.session_factory, session.user_id, board_id)
        await self.broadcaster.publish(board_id, event, data, exclude=session.id)
