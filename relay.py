"""Realtime relay: chat delivery and call signaling over one socket per user.

A connection is authenticated once, when it opens, from the session cookie
sent with the upgrade request. Frames from a connection that failed to
authenticate are ignored; the socket is not closed. Frames from one connection
are handled strictly one after another, frames from different connections
interleave freely.
"""
import enum
import logging
from collections import Counter

from fastapi import WebSocket, WebSocketDisconnect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

import events
from auth import resolve_session
from config import SESSION_COOKIE_NAME
from schemas import MessageResponse
from store import MessageStore
from websocket import ConnectionRegistry

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    ACKED = "acked"                # chat stored and acked, receiver offline
    DELIVERED = "delivered"        # reached a live receiver
    DROPPED = "dropped"            # signal for a receiver that is not connected
    IGNORED = "ignored"            # connection is not authenticated
    MALFORMED = "malformed"
    STORE_FAILED = "store_failed"


class Relay:
    def __init__(self, store: MessageStore, session_factory: sessionmaker,
                 registry: ConnectionRegistry | None = None):
        self.store = store
        self.session_factory = session_factory
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.stats: Counter = Counter()

    def authenticate(self, token: str | None) -> str | None:
        with self.session_factory() as db:
            user = resolve_session(db, token)
            return user.id if user else None

    async def serve(self, websocket: WebSocket) -> None:
        token = websocket.cookies.get(SESSION_COOKIE_NAME)
        user_id = await run_in_threadpool(self.authenticate, token) if token else None

        if user_id:
            self.registry.register(user_id, websocket)
            logger.info("User %s connected", user_id)
        else:
            logger.info("Unauthenticated socket opened, its frames will be ignored")

        try:
            await websocket.accept()
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes") or b""
                await self.dispatch(user_id, websocket, raw)
        except WebSocketDisconnect:
            logger.debug("Socket for user %s closed while sending", user_id)
        finally:
            if user_id:
                self.registry.unregister(user_id, websocket)
                logger.info("User %s disconnected", user_id)

    async def dispatch(self, user_id: str | None, websocket: WebSocket, raw: str | bytes) -> Outcome:
        outcome = await self._dispatch(user_id, websocket, raw)
        self.stats[outcome.value] += 1
        return outcome

    async def _dispatch(self, user_id, websocket, raw) -> Outcome:
        if not user_id:
            logger.debug("Ignoring frame on unauthenticated socket")
            return Outcome.IGNORED

        event = events.parse_event(raw)
        if event is None:
            logger.debug("Discarding malformed frame from user %s", user_id)
            return Outcome.MALFORMED

        if isinstance(event, events.ChatEvent):
            return await self._chat(user_id, websocket, event)
        if isinstance(event, events.CallSignalEvent):
            frame = events.call_signal(user_id, event.signal_data)
        else:
            frame = events.call_end(user_id)

        if await self.registry.send(event.receiver_id, frame):
            return Outcome.DELIVERED
        logger.debug("Dropping %s from %s, user %s is offline", event.type, user_id, event.receiver_id)
        return Outcome.DROPPED

    async def _chat(self, user_id: str, websocket: WebSocket, event: events.ChatEvent) -> Outcome:
        try:
            message = await run_in_threadpool(
                self.store.create_message, user_id, event.receiver_id, event.content
            )
        except SQLAlchemyError:
            logger.exception("Failed to store chat from %s to %s", user_id, event.receiver_id)
            return Outcome.STORE_FAILED

        try:
            await websocket.send_json(events.chat_ack(message))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            # stored already, so the receiver still gets it
            logger.warning("Could not ack message %s to user %s: %s", message.id, user_id, exc)

        if await self.deliver(message):
            return Outcome.DELIVERED
        return Outcome.ACKED

    async def deliver(self, message: MessageResponse) -> bool:
        """Push a stored message to its receiver if they are connected."""
        return await self.registry.send(message.receiver_id, events.chat_new(message))
