"""Room data models — rooms, messages, polls, participants."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from classchat.identity.models import Role, User
from classchat.utils.clock import utcnow
from classchat.utils.ids import new_id

SYSTEM_USER_ID = "system"
SYSTEM_USER_NAME = "System"


class ModerationAction(str, Enum):
    """Kinds of entries in a room's moderation log."""

    silenced = "silenced"
    banned = "banned"
    auto_silenced = "auto_silenced"
    auto_banned = "auto_banned"
    unsilenced = "unsilenced"


@dataclass
class ModerationLogEntry:
    """Audit record for one moderation action."""

    id: str
    user_id: str
    moderator_id: str  # "system" for content-policy penalties
    action: ModerationAction
    timestamp: datetime
    duration_minutes: Optional[int] = None
    reason: str = ""


@dataclass
class Participant:
    """A user as seen by a room."""

    id: str
    role: Role
    display_name: str
    violations: int = 0
    silenced_until: Optional[datetime] = None
    banned: bool = False
    is_online: bool = True
    joined_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if isinstance(self.role, str):
            self.role = Role(self.role)

    @classmethod
    def from_user(cls, user: User, now: Optional[datetime] = None) -> Participant:
        now = now or utcnow()
        return cls(
            id=user.id,
            role=user.role,
            display_name=user.display_name,
            violations=user.violations,
            silenced_until=user.silenced_until,
            banned=user.banned,
            is_online=True,
            joined_at=now,
            last_active=now,
        )

    @property
    def public_label(self) -> str:
        """How moderation notices refer to this participant."""
        return self.display_name if self.role == Role.teacher else "A student"


@dataclass
class Message:
    """A chat message or system notice."""

    id: str
    room_id: str
    author_id: str
    author_name: str
    author_role: str  # "student" | "teacher" | "system"
    text: str
    created_at: datetime = field(default_factory=utcnow)
    reply_to: Optional[str] = None
    reactions: dict[str, list[str]] = field(default_factory=dict)
    is_system: bool = False
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    poll_id: Optional[str] = None
    pending: bool = False  # Local copy not yet confirmed by the remote side

    @classmethod
    def system(
        cls, room_id: str, text: str, now: Optional[datetime] = None, poll_id: Optional[str] = None
    ) -> Message:
        """Build a system-authored notice."""
        return cls(
            id=new_id(),
            room_id=room_id,
            author_id=SYSTEM_USER_ID,
            author_name=SYSTEM_USER_NAME,
            author_role="system",
            text=text,
            created_at=now or utcnow(),
            is_system=True,
            poll_id=poll_id,
        )

    def reaction_count_for(self, user_id: str) -> int:
        return sum(1 for users in self.reactions.values() if user_id in users)


@dataclass
class Poll:
    """A poll. ``total_votes`` is maintained incrementally."""

    id: str
    room_id: str
    question: str
    options: list[str]
    created_by: str
    creator_name: str = ""
    votes: dict[str, list[str]] = field(default_factory=dict)
    total_votes: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    last_voted_at: Optional[datetime] = None

    def recount(self) -> int:
        """Count votes from the raw vote sets."""
        return sum(len(voters) for voters in self.votes.values())

    def vote_of(self, user_id: str) -> Optional[str]:
        for option, voters in self.votes.items():
            if user_id in voters:
                return option
        return None


@dataclass
class PollResult:
    option: str
    votes: int
    percentage: int


@dataclass
class Room:
    """A classroom session."""

    id: str
    code: str
    name: str
    owner_id: str = ""  # Empty when the owner is unknown (room learned from a remote snapshot)
    owner_name: str = ""
    is_active: bool = True
    messages: list[Message] = field(default_factory=list)
    polls: list[Poll] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)
    banned_user_ids: set[str] = field(default_factory=set)
    moderation_log: list[ModerationLogEntry] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_activity: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.id == user_id:
                return p
        return None

    def has_participant(self, user_id: str) -> bool:
        return self.participant(user_id) is not None

    def message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def poll(self, poll_id: str) -> Optional[Poll]:
        for p in self.polls:
            if p.id == poll_id:
                return p
        return None

    @property
    def active_poll(self) -> Optional[Poll]:
        for p in self.polls:
            if p.is_active:
                return p
        return None

    @property
    def online_count(self) -> int:
        return sum(1 for p in self.participants if p.is_online)

    def is_owner(self, user_id: str) -> bool:
        return bool(self.owner_id) and self.owner_id == user_id
