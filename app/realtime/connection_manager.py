"""
Live WebSocket connections and room membership for this process.

Rooms:
- user_{id}    every socket of one user
- astrologers  every connected astrologer
- chat_{id}    sockets that joined one chat session

Frames are JSON text: {"event": <name>, "data": {...}}.
"""

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ASTROLOGERS_ROOM = "astrologers"


def chat_room(session_id: str) -> str:
    return f"chat_{session_id}"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"


class ConnectionManager:
    # TODO: relay room emits over Redis pub/sub so sockets held by other
    # worker processes receive them when REALTIME_REGISTRY_BACKEND=redis.

    def __init__(self):
        self._sockets: dict[str, WebSocket] = {}
        self._rooms: dict[str, set[str]] = {}

    @property
    def connection_count(self) -> int:
        return len(self._sockets)

    def register(self, socket_id: str, websocket: WebSocket) -> None:
        self._sockets[socket_id] = websocket

    def join(self, socket_id: str, room: str) -> None:
        self._rooms.setdefault(room, set()).add(socket_id)

    def leave(self, socket_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(socket_id)
        if not members:
            del self._rooms[room]

    def rooms_of(self, socket_id: str) -> set[str]:
        return {room for room, members in self._rooms.items() if socket_id in members}

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def leave_all(self, socket_id: str) -> None:
        for room in list(self._rooms):
            self.leave(socket_id, room)

    def unregister(self, socket_id: str) -> None:
        self.leave_all(socket_id)
        self._sockets.pop(socket_id, None)

    async def send(self, socket_id: str, event: str, data: dict) -> bool:
        websocket = self._sockets.get(socket_id)
        if websocket is None:
            return False

        try:
            await websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            return True
        except Exception as e:
            # A dead socket is cleaned up by its own receive loop
            logger.warning("Socket send failed", socket_id=socket_id, event_name=event, error=str(e))
            return False

    async def emit_to_room(
        self, room: str, event: str, data: dict, exclude: str | None = None
    ) -> int:
        """Send to every socket in `room`. Returns how many sends succeeded."""
        delivered = 0
        for socket_id in sorted(self._rooms.get(room, ())):
            if socket_id == exclude:
                continue
            if await self.send(socket_id, event, data):
                delivered += 1

        logger.debug("Room emit", room=room, event_name=event, delivered=delivered)
        return delivered
