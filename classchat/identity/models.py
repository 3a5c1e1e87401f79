"""Identity domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from classchat.utils.clock import minutes_until, utcnow


class Role(str, Enum):
    """Participant role within a room."""

    student = "student"
    teacher = "teacher"


@dataclass
class User:
    """The local session identity."""

    id: str
    role: Role
    display_name: str
    violations: int = 0
    silenced_until: Optional[datetime] = None
    silence_reason: str = ""
    banned: bool = False
    ban_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if isinstance(self.role, str):
            self.role = Role(self.role)

    @property
    def is_teacher(self) -> bool:
        return self.role == Role.teacher

    def is_silenced(self, now: datetime) -> bool:
        return self.silenced_until is not None and now < self.silenced_until

    def silence_remaining_minutes(self, now: datetime) -> int:
        if self.silenced_until is None:
            return 0
        return minutes_until(self.silenced_until, now)
