"""Realtime transport interface and an in-process loopback implementation.

A transport delivers room joins, messages, moderation and poll changes
between clients and an authoritative room server. The session orchestrator
subscribes to inbound events and publishes its own mutations through the
transport.

:class:`LoopbackHub` is a complete in-process room server: several
:class:`LoopbackTransport` clients can share one hub, which makes it useful
for offline sessions and for exercising reconnects deterministically. The
hub enforces what a server must not trust clients for: bans, silences, room
ownership for moderation and polls, and one vote per voter.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

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
    TransportEvent,
)
from classchat.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

EventHandler = Callable[[TransportEvent], None]
ReconnectCallback = Callable[[], Awaitable[None]]


class RealtimeTransport(ABC):
    """Base class for transports. Subclasses implement the network calls."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._reconnect_callbacks: list[ReconnectCallback] = []

    def subscribe(self, handler: EventHandler) -> None:
        """Register a handler for inbound events."""
        if handler not in self._handlers:
            self._handlers.append(handler)

    def on_reconnect(self, callback: ReconnectCallback) -> None:
        """Register a coroutine function to run after the connection comes back."""
        if callback not in self._reconnect_callbacks:
            self._reconnect_callbacks.append(callback)

    def dispatch(self, event: TransportEvent) -> None:
        for handler in list(self._handlers):
            handler(event)

    async def fire_reconnect(self) -> None:
        for callback in list(self._reconnect_callbacks):
            await callback()

    # -- network operations ---------------------------------------------------

    @abstractmethod
    async def open_room(self, snapshot: RoomSnapshotEvent) -> None:
        """Make a newly created room known to the server. Idempotent."""

    @abstractmethod
    async def join(self, code: str, identity: IdentityPayload) -> RoomSnapshotEvent:
        """Join room *code*; returns the full room state. Idempotent."""

    @abstractmethod
    async def leave(self, code: str, user_id: str) -> None:
        """Leave room *code*. Idempotent."""

    @abstractmethod
    async def send_message(self, code: str, message: MessagePayload, author: IdentityPayload) -> None:
        """Publish *message*; the server echoes it back as a ``NewMessageEvent``.

        System notices are sent by the room owner with ``is_system`` set.
        """

    @abstractmethod
    async def edit_message(self, code: str, message_id: str, text: str, author: IdentityPayload) -> None:
        """Replace the text of one of *author*'s messages. Echoed as ``MessageUpdatedEvent``."""

    @abstractmethod
    async def react(self, code: str, message_id: str, symbol: str, author: IdentityPayload) -> None:
        """Toggle *author*'s reaction. Echoed as ``MessageUpdatedEvent``."""

    @abstractmethod
    async def update_participant(
        self, code: str, participant: ParticipantPayload, author: IdentityPayload
    ) -> None:
        """Publish a participant's moderation state. Echoed as ``ParticipantUpdatedEvent``."""

    @abstractmethod
    async def publish_poll(self, code: str, poll: PollPayload, author: IdentityPayload) -> None:
        """Publish a created or closed poll. Echoed as ``PollUpdatedEvent``."""

    @abstractmethod
    async def vote(self, code: str, poll_id: str, option: str, author: IdentityPayload) -> None:
        """Cast *author*'s vote. Echoed as ``PollUpdatedEvent``."""


# ---------------------------------------------------------------------------
# Loopback
# ---------------------------------------------------------------------------


@dataclass
class _HubRoom:
    room_id: str
    code: str
    name: str
    owner_id: str = ""
    owner_name: str = ""
    participants: dict[str, ParticipantPayload] = field(default_factory=dict)
    messages: list[MessagePayload] = field(default_factory=list)
    polls: dict[str, PollPayload] = field(default_factory=dict)
    banned_ids: set[str] = field(default_factory=set)
    members: list["LoopbackTransport"] = field(default_factory=list)

    @property
    def active_poll(self) -> Optional[PollPayload]:
        for poll in self.polls.values():
            if poll.is_active:
                return poll
        return None

    def message(self, message_id: str) -> Optional[MessagePayload]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None


class LoopbackHub:
    """In-process authoritative room server."""

    def __init__(self, message_tail: int = 50, clock: Clock = utcnow) -> None:
        self.message_tail = message_tail
        self._clock = clock
        self._rooms: dict[str, _HubRoom] = {}

    def room_codes(self) -> list[str]:
        return list(self._rooms)

    def _room(self, code: str) -> _HubRoom:
        room = self._rooms.get(code.strip().upper())
        if room is None:
            raise TransportError(f"Room '{code}' not found")
        return room

    def _snapshot(self, room: _HubRoom) -> RoomSnapshotEvent:
        tail = room.messages[-self.message_tail:] if self.message_tail else []
        active = room.active_poll
        return RoomSnapshotEvent(
            room_id=room.room_id,
            code=room.code,
            name=room.name,
            owner_id=room.owner_id,
            owner_name=room.owner_name,
            participants=[p.model_copy() for p in room.participants.values()],
            messages=[m.model_copy(deep=True) for m in tail],
            active_poll=active.model_copy(deep=True) if active else None,
            polls=[p.model_copy(deep=True) for p in room.polls.values()],
        )

    def _broadcast(self, room: _HubRoom, event: TransportEvent, exclude=None) -> None:
        for member in list(room.members):
            if member is exclude or not member.connected:
                continue
            member.dispatch(copy.deepcopy(event))

    # -- authorization ----------------------------------------------------------

    def _member(self, room: _HubRoom, author: IdentityPayload) -> ParticipantPayload:
        if author.id in room.banned_ids:
            raise TransportError("You have been banned from this room")
        participant = room.participants.get(author.id)
        if participant is None:
            raise TransportError("Not a member of this room")
        return participant

    def _poster(self, room: _HubRoom, author: IdentityPayload) -> ParticipantPayload:
        participant = self._member(room, author)
        if participant.silenced_until is not None and participant.silenced_until > self._clock():
            raise TransportError("You are silenced and cannot send messages")
        return participant

    @staticmethod
    def _require_owner(room: _HubRoom, author: IdentityPayload) -> None:
        if not room.owner_id or author.id != room.owner_id:
            raise TransportError("Only the room owner can do that")

    # -- rooms ------------------------------------------------------------------

    def open_room(self, snapshot: RoomSnapshotEvent) -> None:
        if snapshot.code in self._rooms:
            return
        polls = {p.id: p.model_copy(deep=True) for p in snapshot.polls}
        if snapshot.active_poll is not None:
            polls[snapshot.active_poll.id] = snapshot.active_poll.model_copy(deep=True)
        self._rooms[snapshot.code] = _HubRoom(
            room_id=snapshot.room_id,
            code=snapshot.code,
            name=snapshot.name,
            owner_id=snapshot.owner_id,
            owner_name=snapshot.owner_name,
            participants={p.id: p.model_copy() for p in snapshot.participants},
            messages=[m.model_copy(deep=True) for m in snapshot.messages],
            polls=polls,
        )

    def close_room(self, code: str) -> None:
        self._rooms.pop(code.strip().upper(), None)

    def join(self, client: "LoopbackTransport", code: str, identity: IdentityPayload) -> RoomSnapshotEvent:
        room = self._room(code)
        if identity.id in room.banned_ids:
            raise TransportError("You have been banned from this room")
        if client not in room.members:
            room.members.append(client)

        existing = room.participants.get(identity.id)
        if existing is not None:
            existing.is_online = True
        else:
            user = ParticipantPayload(
                id=identity.id, name=identity.name, role=identity.role, joined_at=self._clock()
            )
            room.participants[identity.id] = user
            self._broadcast(
                room,
                ParticipantJoinedEvent(
                    room_id=room.room_id,
                    user=user,
                    participants=list(room.participants.values()),
                ),
                exclude=client,
            )
        return self._snapshot(room)

    def leave(self, client: "LoopbackTransport", code: str, user_id: str) -> None:
        room = self._rooms.get(code.strip().upper())
        if room is None:
            return
        if client in room.members:
            room.members.remove(client)
        if room.participants.pop(user_id, None) is not None:
            self._broadcast(
                room,
                ParticipantLeftEvent(
                    room_id=room.room_id,
                    user_id=user_id,
                    participants=list(room.participants.values()),
                ),
            )

    # -- messages ---------------------------------------------------------------

    def send(
        self, client: "LoopbackTransport", code: str, message: MessagePayload, author: IdentityPayload
    ) -> None:
        room = self._room(code)
        if message.is_system:
            self._require_owner(room, author)
        else:
            if message.author_id != author.id:
                raise TransportError("Message author does not match sender")
            self._poster(room, author)
        event = NewMessageEvent(room_id=room.room_id, message=message.model_copy(deep=True))
        if room.message(message.id) is not None:
            # Retried send: confirm to the sender only.
            client.dispatch(event)
            return
        room.messages.append(message.model_copy(deep=True))
        self._broadcast(room, event)

    def edit(self, code: str, message_id: str, text: str, author: IdentityPayload) -> None:
        room = self._room(code)
        self._poster(room, author)
        message = room.message(message_id)
        if message is None:
            raise TransportError("Message not found")
        if message.is_system or message.author_id != author.id:
            raise TransportError("You can only edit your own messages")
        message.text = text
        message.is_edited = True
        message.edited_at = self._clock()
        self._broadcast(room, MessageUpdatedEvent(room_id=room.room_id, message=message))

    def react(self, code: str, message_id: str, symbol: str, author: IdentityPayload) -> None:
        room = self._room(code)
        self._member(room, author)
        message = room.message(message_id)
        if message is None:
            raise TransportError("Message not found")
        users = message.reactions.get(symbol, [])
        if author.id in users:
            users.remove(author.id)
        else:
            users.append(author.id)
        if users:
            message.reactions[symbol] = users
        else:
            message.reactions.pop(symbol, None)
        self._broadcast(room, MessageUpdatedEvent(room_id=room.room_id, message=message))

    # -- moderation -------------------------------------------------------------

    def update_participant(self, code: str, update: ParticipantPayload, author: IdentityPayload) -> None:
        """Store a participant's moderation state.

        The owner's word is final. Anyone else may only report penalties
        against themselves, and those can only grow.
        """
        room = self._room(code)
        owner = bool(room.owner_id) and author.id == room.owner_id
        if not owner and author.id != update.id:
            raise TransportError("Only the room owner can moderate other participants")

        if update.banned:
            room.participants.pop(update.id, None)
            room.banned_ids.add(update.id)
            stored = update.model_copy()
        else:
            stored = room.participants.get(update.id)
            if stored is None:
                raise TransportError("User not found in this room")
            if owner:
                stored.violations = update.violations
                stored.silenced_until = update.silenced_until
            else:
                stored.violations = max(stored.violations, update.violations)
                if update.silenced_until is not None and (
                    stored.silenced_until is None or update.silenced_until > stored.silenced_until
                ):
                    stored.silenced_until = update.silenced_until
        logger.debug("Participant %s updated in room %s", update.id, room.code)
        self._broadcast(room, ParticipantUpdatedEvent(room_id=room.room_id, user=stored))

    # -- polls ------------------------------------------------------------------

    def publish_poll(self, code: str, poll: PollPayload, author: IdentityPayload) -> None:
        room = self._room(code)
        self._require_owner(room, author)
        stored = room.polls.get(poll.id)
        if stored is None:
            stored = poll.model_copy(deep=True)
            room.polls[poll.id] = stored
        else:
            # Votes are only ever changed through vote().
            stored.is_active = poll.is_active
            stored.closed_at = poll.closed_at
        if stored.is_active:
            for other in room.polls.values():
                if other.id != stored.id and other.is_active:
                    other.is_active = False
                    other.closed_at = other.closed_at or self._clock()
        self._broadcast(room, PollUpdatedEvent(room_id=room.room_id, poll=stored))

    def vote(self, code: str, poll_id: str, option: str, author: IdentityPayload) -> None:
        room = self._room(code)
        self._member(room, author)
        poll = room.polls.get(poll_id)
        if poll is None:
            raise TransportError("Poll not found")
        if not poll.is_active:
            raise TransportError("This poll is no longer active")
        if option not in poll.options:
            raise TransportError("Invalid poll option")
        for opt in list(poll.votes):
            voters = [v for v in poll.votes[opt] if v != author.id]
            if voters:
                poll.votes[opt] = voters
            else:
                del poll.votes[opt]
        poll.votes.setdefault(option, []).append(author.id)
        self._broadcast(room, PollUpdatedEvent(room_id=room.room_id, poll=poll))


class LoopbackTransport(RealtimeTransport):
    """A client connection to a :class:`LoopbackHub`."""

    def __init__(self, hub: LoopbackHub) -> None:
        super().__init__()
        self.hub = hub
        self.connected = True

    def _require_connection(self) -> None:
        if not self.connected:
            raise TransportError("Not connected")

    def disconnect(self) -> None:
        self.connected = False

    async def reconnect(self) -> None:
        self.connected = True
        await self.fire_reconnect()

    async def open_room(self, snapshot: RoomSnapshotEvent) -> None:
        self._require_connection()
        self.hub.open_room(snapshot)

    async def join(self, code: str, identity: IdentityPayload) -> RoomSnapshotEvent:
        self._require_connection()
        return self.hub.join(self, code, identity)

    async def leave(self, code: str, user_id: str) -> None:
        self._require_connection()
        self.hub.leave(self, code, user_id)

    async def send_message(self, code: str, message: MessagePayload, author: IdentityPayload) -> None:
        self._require_connection()
        self.hub.send(self, code, message, author)

    async def edit_message(self, code: str, message_id: str, text: str, author: IdentityPayload) -> None:
        self._require_connection()
        self.hub.edit(code, message_id, text, author)

    async def react(self, code: str, message_id: str, symbol: str, author: IdentityPayload) -> None:
        self._require_connection()
        self.hub.react(code, message_id, symbol, author)

    async def update_participant(
        self, code: str, participant: ParticipantPayload, author: IdentityPayload
    ) -> None:
        self._require_connection()
        self.hub.update_participant(code, participant, author)

    async def publish_poll(self, code: str, poll: PollPayload, author: IdentityPayload) -> None:
        self._require_connection()
        self.hub.publish_poll(code, poll, author)

    async def vote(self, code: str, poll_id: str, option: str, author: IdentityPayload) -> None:
        self._require_connection()
        self.hub.vote(code, poll_id, option, author)
