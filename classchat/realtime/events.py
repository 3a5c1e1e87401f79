"""Pydantic models for realtime transport events.

These models describe the shape of what travels between a client and the
authoritative room server, independent of wire framing. Conversion helpers
map them to and from the room dataclasses.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

from classchat.identity.models import Role, User
from classchat.rooms.models import Message, Participant, Poll
from classchat.utils.clock import utcnow


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class IdentityPayload(BaseModel):
    """The identity a client presents when joining."""

    id: str
    name: str
    role: str = Role.student.value


class ParticipantPayload(BaseModel):
    """Mirrors classchat.rooms.models.Participant."""

    id: str
    name: str
    role: str = Role.student.value
    violations: int = 0
    silenced_until: Optional[datetime] = None
    banned: bool = False
    is_online: bool = True
    joined_at: Optional[datetime] = None


class MessagePayload(BaseModel):
    """Mirrors classchat.rooms.models.Message."""

    id: str
    room_id: str = ""
    text: str
    author_id: str
    author_name: str = ""
    author_role: str = Role.student.value
    created_at: datetime = Field(default_factory=utcnow)
    reply_to: Optional[str] = None
    reactions: dict[str, list[str]] = Field(default_factory=dict)
    is_system: bool = False
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    poll_id: Optional[str] = None


class PollPayload(BaseModel):
    """Mirrors classchat.rooms.models.Poll."""

    id: str
    question: str
    options: list[str]
    votes: dict[str, list[str]] = Field(default_factory=dict)
    is_active: bool = True
    created_by: str = ""
    creator_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class RoomSnapshotEvent(BaseModel):
    """Full authoritative room state. Replaces local state for the room."""

    room_id: str
    code: str
    name: str = "Classroom"
    owner_id: str = ""
    owner_name: str = ""
    participants: list[ParticipantPayload] = Field(default_factory=list)
    messages: list[MessagePayload] = Field(default_factory=list)
    active_poll: Optional[PollPayload] = None
    polls: list[PollPayload] = Field(default_factory=list)


class ParticipantJoinedEvent(BaseModel):
    room_id: str
    user: ParticipantPayload
    participants: list[ParticipantPayload] = Field(default_factory=list)


class ParticipantLeftEvent(BaseModel):
    room_id: str
    user_id: str
    participants: list[ParticipantPayload] = Field(default_factory=list)


class NewMessageEvent(BaseModel):
    room_id: str
    message: MessagePayload


class MessageUpdatedEvent(BaseModel):
    """An edit or reaction change. Carries the server's copy of the message."""

    room_id: str
    message: MessagePayload


class ParticipantUpdatedEvent(BaseModel):
    """A moderation change: violations, silence or ban of one participant."""

    room_id: str
    user: ParticipantPayload


class PollUpdatedEvent(BaseModel):
    """A poll was created, voted on or closed. Carries the full vote sets."""

    room_id: str
    poll: PollPayload


class TransportErrorEvent(BaseModel):
    """A remote failure report. Never mutates room state."""

    message: str


TransportEvent = Union[
    RoomSnapshotEvent,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    NewMessageEvent,
    MessageUpdatedEvent,
    ParticipantUpdatedEvent,
    PollUpdatedEvent,
    TransportErrorEvent,
]


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def identity_from_user(user: User) -> IdentityPayload:
    return IdentityPayload(id=user.id, name=user.display_name, role=user.role.value)


def participant_to_payload(p: Participant) -> ParticipantPayload:
    return ParticipantPayload(
        id=p.id,
        name=p.display_name,
        role=p.role.value,
        violations=p.violations,
        silenced_until=p.silenced_until,
        banned=p.banned,
        is_online=p.is_online,
        joined_at=p.joined_at,
    )


def payload_to_participant(p: ParticipantPayload) -> Participant:
    try:
        role = Role(p.role)
    except ValueError:
        role = Role.student
    joined = p.joined_at or utcnow()
    return Participant(
        id=p.id,
        role=role,
        display_name=p.name,
        violations=p.violations,
        silenced_until=p.silenced_until,
        banned=p.banned,
        is_online=p.is_online,
        joined_at=joined,
        last_active=joined,
    )


def message_to_payload(m: Message) -> MessagePayload:
    return MessagePayload(
        id=m.id,
        room_id=m.room_id,
        text=m.text,
        author_id=m.author_id,
        author_name=m.author_name,
        author_role=m.author_role,
        created_at=m.created_at,
        reply_to=m.reply_to,
        reactions={k: list(v) for k, v in m.reactions.items()},
        is_system=m.is_system,
        is_edited=m.is_edited,
        edited_at=m.edited_at,
        poll_id=m.poll_id,
    )


def payload_to_message(p: MessagePayload, room_id: str) -> Message:
    return Message(
        id=p.id,
        room_id=room_id,
        author_id=p.author_id,
        author_name=p.author_name,
        author_role=p.author_role,
        text=p.text,
        created_at=p.created_at,
        reply_to=p.reply_to,
        reactions={k: list(v) for k, v in p.reactions.items()},
        is_system=p.is_system,
        is_edited=p.is_edited,
        edited_at=p.edited_at,
        poll_id=p.poll_id,
        pending=False,
    )


def poll_to_payload(p: Poll) -> PollPayload:
    return PollPayload(
        id=p.id,
        question=p.question,
        options=list(p.options),
        votes={k: list(v) for k, v in p.votes.items()},
        is_active=p.is_active,
        created_by=p.created_by,
        creator_name=p.creator_name,
        created_at=p.created_at,
        closed_at=p.closed_at,
    )


def payload_to_poll(p: PollPayload, room_id: str) -> Poll:
    votes = {k: list(v) for k, v in p.votes.items()}
    return Poll(
        id=p.id,
        room_id=room_id,
        question=p.question,
        options=list(p.options),
        created_by=p.created_by,
        creator_name=p.creator_name,
        votes=votes,
        total_votes=sum(len(v) for v in votes.values()),
        is_active=p.is_active,
        created_at=p.created_at,
        closed_at=p.closed_at,
    )
