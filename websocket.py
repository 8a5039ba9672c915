import logging

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


def is_open(ws: WebSocket) -> bool:
    return (
        ws.client_state == WebSocketState.CONNECTED
        and ws.application_state == WebSocketState.CONNECTED
    )


class ConnectionRegistry:
    """Maps a user id to the single live socket recognised for that user.

    None of the methods await, so each one runs to completion on the event
    loop without interleaving with another register/unregister.
    """

    def __init__(self):
        self._connections: dict[str, WebSocket] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, user_id: str, ws: WebSocket) -> None:
        previous = self._connections.get(user_id)
        self._connections[user_id] = ws
        if previous is not None and previous is not ws:
            # the old socket is left open, it just stops receiving routed frames
            logger.info("Connection for user %s superseded by a newer one", user_id)

    def lookup(self, user_id: str) -> WebSocket | None:
        return self._connections.get(user_id)

    def unregister(self, user_id: str, ws: WebSocket) -> bool:
        if self._connections.get(user_id) is not ws:
            return False
        del self._connections[user_id]
        return True

    def is_online(self, user_id: str) -> bool:
        ws = self._connections.get(user_id)
        return ws is not None and is_open(ws)

    async def send(self, user_id: str, message: dict) -> bool:
        ws = self._connections.get(user_id)
        if ws is None or not is_open(ws):
            return False
        try:
            await ws.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.warning("Could not deliver %s to user %s: %s", message.get("type"), user_id, exc)
            return False
        return True
