"""Socket.IO transport built on ``python-socketio``'s ``AsyncClient``.

Speaks the classroom server's event vocabulary:

- ``joinRoom {roomId, user}`` answered by ``roomData {room}``
- ``userJoined {user, users}`` / ``userLeft {userId, users}``
- ``sendMessage {roomId, message, user}`` broadcast back as ``newMessage``
- ``editMessage {roomId, messageId, text, user}`` and
  ``addReaction {roomId, messageId, reaction, user}``, both broadcast back as
  ``messageUpdated {roomId, message}``
- ``moderateUser {roomId, target, user}`` broadcast back as
  ``participantUpdated {roomId, user}``
- ``updatePoll {roomId, poll, user}`` and ``votePoll {roomId, pollId, option,
  user}``, both broadcast back as ``pollUpdated {roomId, poll}``
- ``error {message}``

``roomId`` on the wire is the room's join code.

The server must echo the client's message id in ``newMessage``. A server that
assigns its own ids still works: the echo is matched to the pending local
copy by author and text.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import socketio
from socketio import exceptions as sio_exceptions

from classchat.config import Settings
from classchat.errors import TransportError
from classchat.realtime.events import (
    IdentityPayload,
    MessagePayload,
    MessageUpdatedEvent,
    NewMessageEvent,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    ParticipantPayload,
    ParticipantUpdatedEvent,
    PollPayload,
    PollUpdatedEvent,
    RoomSnapshotEvent,
    TransportErrorEvent,
)
from classchat.realtime.transport import RealtimeTransport

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_user(data: dict) -> ParticipantPayload:
    return ParticipantPayload(
        id=str(data.get("id", "")),
        name=data.get("name") or data.get("display_name") or "",
        role=data.get("role", "student"),
        violations=int(data.get("violations", 0) or 0),
        silenced_until=data.get("silencedUntil") or data.get("silenced_until"),
        banned=bool(data.get("banned", False)),
        is_online=bool(data.get("isOnline", data.get("is_online", True))),
        joined_at=data.get("joinedAt") or data.get("joined_at"),
    )


def decode_message(room_id: str, data: dict) -> MessagePayload:
    """Decode a server message; accepts the server's ``{text, user}`` shape."""
    user = data.get("user") or {}
    fields: dict[str, Any] = {
        "id": str(data.get("id", "")),
        "room_id": room_id,
        "text": data.get("text", data.get("content", "")),
        "author_id": str(data.get("author_id") or user.get("id", "")),
        "author_name": data.get("author_name") or user.get("name", ""),
        "author_role": data.get("author_role") or user.get("role", "student"),
        "reply_to": data.get("reply_to") or data.get("replyTo"),
        "reactions": data.get("reactions") or {},
        "is_system": bool(data.get("is_system", data.get("isSystemMessage", False))),
        "is_edited": bool(data.get("is_edited", data.get("isEdited", False))),
        "poll_id": data.get("poll_id") or data.get("pollId"),
    }
    timestamp = data.get("created_at") or data.get("timestamp")
    if timestamp:
        fields["created_at"] = timestamp
    edited = data.get("edited_at") or data.get("editedAt")
    if edited:
        fields["edited_at"] = edited
    return MessagePayload(**fields)


def decode_poll(data: dict) -> PollPayload:
    fields: dict[str, Any] = {
        "id": str(data.get("id", "")),
        "question": data.get("question", ""),
        "options": list(data.get("options") or []),
        "votes": {k: [str(v) for v in voters] for k, voters in (data.get("votes") or {}).items()},
        "is_active": bool(data.get("is_active", data.get("isActive", True))),
        "created_by": str(data.get("created_by") or data.get("createdBy") or ""),
        "creator_name": data.get("creator_name") or data.get("creatorName") or "",
    }
    for key, alias in (("created_at", "createdAt"), ("closed_at", "closedAt")):
        value = data.get(key) or data.get(alias)
        if value:
            fields[key] = value
    return PollPayload(**fields)


def decode_room_data(data: dict) -> RoomSnapshotEvent:
    room = data.get("room", data)
    code = str(room.get("code") or room.get("roomId") or room.get("id", ""))
    room_id = str(room.get("id") or code)
    active = room.get("activePoll") or room.get("active_poll")
    return RoomSnapshotEvent(
        room_id=room_id,
        code=code.upper(),
        name=room.get("name") or "Classroom",
        owner_id=room.get("teacherId") or room.get("owner_id") or "",
        owner_name=room.get("teacherName") or room.get("owner_name") or "",
        participants=[decode_user(u) for u in room.get("users", room.get("participants", []))],
        messages=[decode_message(room_id, m) for m in room.get("messages", [])],
        active_poll=decode_poll(active) if active else None,
        polls=[decode_poll(p) for p in room.get("polls", [])],
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class SocketIOTransport(RealtimeTransport):
    """Realtime transport over a Socket.IO connection."""

    def __init__(self, url: str, join_timeout: float = 10.0, client: Optional[socketio.AsyncClient] = None):
        super().__init__()
        self.url = url
        self.join_timeout = join_timeout
        self._sio = client or socketio.AsyncClient(reconnection=True)
        self._pending_joins: dict[str, asyncio.Future] = {}
        self._room_ids: dict[str, str] = {}  # code -> room id
        self._connected_once = False

        self._sio.on("connect", self._on_connect)
        self._sio.on("disconnect", self._on_disconnect)
        self._sio.on("roomData", self._on_room_data)
        self._sio.on("userJoined", self._on_user_joined)
        self._sio.on("userLeft", self._on_user_left)
        self._sio.on("newMessage", self._on_new_message)
        self._sio.on("messageUpdated", self._on_message_updated)
        self._sio.on("participantUpdated", self._on_participant_updated)
        self._sio.on("pollUpdated", self._on_poll_updated)
        self._sio.on("error", self._on_error)

    @classmethod
    def from_settings(
        cls, url: str, settings: Settings, client: Optional[socketio.AsyncClient] = None
    ) -> SocketIOTransport:
        """Build a transport whose join timeout comes from *settings*."""
        return cls(url, join_timeout=settings.join_timeout_seconds, client=client)

    @property
    def connected(self) -> bool:
        return self._sio.connected

    async def connect(self) -> None:
        try:
            await self._sio.connect(self.url)
        except sio_exceptions.ConnectionError as e:
            raise TransportError(f"Could not connect to {self.url}", cause=e) from e

    async def disconnect(self) -> None:
        await self._sio.disconnect()

    async def _emit(self, event: str, data: dict) -> None:
        try:
            await self._sio.emit(event, data)
        except sio_exceptions.SocketIOError as e:
            raise TransportError(f"Failed to send '{event}'", cause=e) from e

    # -- inbound ----------------------------------------------------------------

    async def _on_connect(self) -> None:
        if self._connected_once:
            logger.info("Reconnected to %s", self.url)
            await self.fire_reconnect()
        self._connected_once = True

    async def _on_disconnect(self, *args) -> None:
        logger.info("Disconnected from %s", self.url)
        for future in self._pending_joins.values():
            if not future.done():
                future.set_exception(TransportError("Connection lost while joining"))

    async def _on_room_data(self, data: dict) -> None:
        snapshot = decode_room_data(data)
        self._room_ids[snapshot.code] = snapshot.room_id
        future = self._pending_joins.get(snapshot.code)
        if future is not None and not future.done():
            future.set_result(snapshot)
            return
        self.dispatch(snapshot)

    async def _on_user_joined(self, data: dict) -> None:
        user = decode_user(data.get("user") or {})
        room_id = str(data.get("roomId") or self._single_room_id())
        self.dispatch(
            ParticipantJoinedEvent(
                room_id=room_id,
                user=user,
                participants=[decode_user(u) for u in data.get("users", [])],
            )
        )

    async def _on_user_left(self, data: dict) -> None:
        room_id = str(data.get("roomId") or self._single_room_id())
        self.dispatch(
            ParticipantLeftEvent(
                room_id=room_id,
                user_id=str(data.get("userId", "")),
                participants=[decode_user(u) for u in data.get("users", [])],
            )
        )

    async def _on_new_message(self, data: dict) -> None:
        room_id = str(data.get("roomId") or self._single_room_id())
        self.dispatch(NewMessageEvent(room_id=room_id, message=decode_message(room_id, data)))

    async def _on_message_updated(self, data: dict) -> None:
        room_id = self._room_id_of(data)
        message = decode_message(room_id, data.get("message") or data)
        self.dispatch(MessageUpdatedEvent(room_id=room_id, message=message))

    async def _on_participant_updated(self, data: dict) -> None:
        room_id = self._room_id_of(data)
        self.dispatch(ParticipantUpdatedEvent(room_id=room_id, user=decode_user(data.get("user") or {})))

    async def _on_poll_updated(self, data: dict) -> None:
        room_id = self._room_id_of(data)
        self.dispatch(PollUpdatedEvent(room_id=room_id, poll=decode_poll(data.get("poll") or {})))

    async def _on_error(self, data: Any) -> None:
        message = data.get("message", "Unknown error") if isinstance(data, dict) else str(data)
        logger.warning("Server reported error: %s", message)
        for future in self._pending_joins.values():
            if not future.done():
                future.set_exception(TransportError(message))
        self.dispatch(TransportErrorEvent(message=message))

    def _room_id_of(self, data: dict) -> str:
        code = str(data.get("roomId") or "").upper()
        return self._room_ids.get(code) or code or self._single_room_id()

    def _single_room_id(self) -> str:
        # The server only tags broadcasts with the room implicitly; a client
        # is in at most one room at a time.
        return next(iter(self._room_ids.values()), "")

    # -- outbound ---------------------------------------------------------------

    async def open_room(self, snapshot: RoomSnapshotEvent) -> None:
        # The server creates rooms on first join.
        self._room_ids[snapshot.code] = snapshot.room_id

    async def join(self, code: str, identity: IdentityPayload) -> RoomSnapshotEvent:
        code = code.strip().upper()
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending_joins[code] = future
        try:
            await self._emit("joinRoom", {"roomId": code, "user": identity.model_dump()})
            return await asyncio.wait_for(future, timeout=self.join_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out joining room {code}", cause=e) from e
        finally:
            self._pending_joins.pop(code, None)

    async def leave(self, code: str, user_id: str) -> None:
        code = code.strip().upper()
        await self._emit("leaveRoom", {"roomId": code, "userId": user_id})
        self._room_ids.pop(code, None)

    async def send_message(self, code: str, message: MessagePayload, author: IdentityPayload) -> None:
        await self._emit(
            "sendMessage",
            {
                "roomId": code.strip().upper(),
                "message": message.model_dump(mode="json"),
                "user": author.model_dump(),
            },
        )

    async def edit_message(self, code: str, message_id: str, text: str, author: IdentityPayload) -> None:
        await self._emit(
            "editMessage",
            {"roomId": code.strip().upper(), "messageId": message_id, "text": text, "user": author.model_dump()},
        )

    async def react(self, code: str, message_id: str, symbol: str, author: IdentityPayload) -> None:
        await self._emit(
            "addReaction",
            {"roomId": code.strip().upper(), "messageId": message_id, "reaction": symbol, "user": author.model_dump()},
        )

    async def update_participant(
        self, code: str, participant: ParticipantPayload, author: IdentityPayload
    ) -> None:
        await self._emit(
            "moderateUser",
            {
                "roomId": code.strip().upper(),
                "target": participant.model_dump(mode="json"),
                "user": author.model_dump(),
            },
        )

    async def publish_poll(self, code: str, poll: PollPayload, author: IdentityPayload) -> None:
        await self._emit(
            "updatePoll",
            {"roomId": code.strip().upper(), "poll": poll.model_dump(mode="json"), "user": author.model_dump()},
        )

    async def vote(self, code: str, poll_id: str, option: str, author: IdentityPayload) -> None:
        await self._emit(
            "votePoll",
            {"roomId": code.strip().upper(), "pollId": poll_id, "option": option, "user": author.model_dump()},
        )
