"""Session-level models: membership state, send results, persisted snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from classchat.identity.models import User
from classchat.rooms.models import Message, Room


class MembershipState(str, Enum):
    """Where the local user stands with respect to the current room."""

    disconnected = "disconnected"
    joining = "joining"
    joined = "joined"
    reconciling = "reconciling"
    left = "left"


@dataclass
class SendResult:
    """Outcome of a successful send. ``warning`` flags a delivered warned message."""

    message: Message
    warning: bool = False
    published: bool = False


@dataclass
class SessionSnapshot:
    """Everything persisted between runs."""

    current_user: Optional[User] = None
    current_room_id: Optional[str] = None
    current_room_code: Optional[str] = None
    membership: MembershipState = MembershipState.disconnected
    rooms: list[Room] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.current_user is None and not self.rooms
