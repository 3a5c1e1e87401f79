"""Room registry — the single owner of every room and its nested data.

One registry is constructed per process and handed to whoever needs it.
Every read returns a deep copy, and every write goes through :meth:`commit`
(or one of the lifecycle methods built on it), so no caller can observe or
produce a half-applied update.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from classchat.config import Limits
from classchat.errors import (
    AuthorizationError,
    BannedError,
    ConflictError,
    RoomNotFoundError,
    ValidationError,
)
from classchat.identity.models import Role, User
from classchat.rooms.models import Participant, Room
from classchat.utils.clock import Clock, utcnow
from classchat.utils.ids import generate_room_code, new_id

logger = logging.getLogger(__name__)


@dataclass
class RegistryStats:
    """Cheap counters for liveness reporting."""

    rooms: int = 0
    active_rooms: int = 0
    participants: int = 0
    online: int = 0


class RoomRegistry:
    """In-memory collection of rooms keyed by id."""

    def __init__(
        self,
        limits: Optional[Limits] = None,
        clock: Clock = utcnow,
        rooms: Iterable[Room] = (),
    ) -> None:
        self._limits = limits or Limits()
        self._clock = clock
        self._rooms: dict[str, Room] = {}
        self.load(rooms)

    # ------------------------------------------------------------------
    # Bulk state
    # ------------------------------------------------------------------

    def load(self, rooms: Iterable[Room]) -> None:
        """Replace the registry contents with *rooms*."""
        self._rooms = {r.id: copy.deepcopy(r) for r in rooms}

    def list_rooms(self) -> list[Room]:
        return [copy.deepcopy(r) for r in self._rooms.values()]

    def count(self) -> int:
        return len(self._rooms)

    def stats(self) -> RegistryStats:
        stats = RegistryStats(rooms=len(self._rooms))
        for room in self._rooms.values():
            if room.is_active:
                stats.active_rooms += 1
            stats.participants += len(room.participants)
            stats.online += room.online_count
        return stats

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_by_id(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        return copy.deepcopy(room) if room else None

    def get(self, room_id: str) -> Room:
        room = self.find_by_id(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    def find_by_code(self, code: str) -> Optional[Room]:
        """Find a room by join code, preferring an active room."""
        code = (code or "").strip().upper()
        if not code:
            return None
        matches = [r for r in self._rooms.values() if r.code == code]
        if not matches:
            return None
        matches.sort(key=lambda r: r.is_active, reverse=True)
        return copy.deepcopy(matches[0])

    def active_room_for(self, teacher_id: str) -> Optional[Room]:
        for room in self._rooms.values():
            if room.is_active and room.owner_id == teacher_id:
                return copy.deepcopy(room)
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(self, room: Room) -> Room:
        """Replace the stored snapshot of an existing room."""
        if room.id not in self._rooms:
            raise RoomNotFoundError(room.id)
        self._rooms[room.id] = copy.deepcopy(room)
        return copy.deepcopy(room)

    def upsert(self, room: Room) -> Room:
        """Insert or replace a room (used for rooms learned from the network)."""
        self._rooms[room.id] = copy.deepcopy(room)
        return copy.deepcopy(room)

    def delete(self, room_id: str) -> bool:
        return self._rooms.pop(room_id, None) is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_room(self, owner: User, name: str) -> Room:
        """Create a room owned by *owner*, who joins it immediately."""
        if owner.role != Role.teacher:
            raise AuthorizationError("Only teachers can create rooms")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Room name cannot be empty")
        if len(name) > self._limits.max_room_name_length:
            raise ValidationError(
                f"Room name must be at most {self._limits.max_room_name_length} characters"
            )
        if self.active_room_for(owner.id) is not None:
            raise ConflictError(
                "You already have an active classroom. Please end it before creating a new one."
            )

        now = self._clock()
        existing_codes = {r.code for r in self._rooms.values()}
        room = Room(
            id=new_id(),
            code=generate_room_code(existing_codes, self._limits.room_code_length),
            name=name,
            owner_id=owner.id,
            owner_name=owner.display_name,
            participants=[Participant.from_user(owner, now)],
            created_at=now,
            updated_at=now,
            last_activity=now,
        )
        self._rooms[room.id] = room
        logger.info("Created room %s (%s) for %s", room.id, room.code, owner.id)
        return copy.deepcopy(room)

    def end_room(self, room_id: str, requester: User) -> Room:
        """Mark a room inactive. Only its owning teacher may do this."""
        room = self.get(room_id)
        if requester.role != Role.teacher or not room.is_owner(requester.id):
            raise AuthorizationError("Only the teacher who owns this classroom can end it")
        if room.is_active:
            now = self._clock()
            room.is_active = False
            room.ended_at = now
            room.updated_at = now
            for poll in room.polls:
                if poll.is_active:
                    poll.is_active = False
                    poll.closed_at = now
            logger.info("Ended room %s", room.id)
        return self.commit(room)

    def add_participant(self, room_id: str, participant: Participant) -> Room:
        """Add *participant*, or mark them online again if already present."""
        room = self.get(room_id)
        if participant.id in room.banned_user_ids:
            raise BannedError("You have been banned from this room")
        now = self._clock()
        existing = room.participant(participant.id)
        if existing is not None:
            existing.is_online = True
            existing.last_active = now
        else:
            room.participants.append(copy.deepcopy(participant))
        room.updated_at = now
        return self.commit(room)

    def remove_participant(self, room_id: str, user_id: str) -> Optional[Room]:
        """Remove a participant. Returns None if the room was garbage-collected.

        Rooms without an owning teacher are dropped once empty; a teacher's
        own room is always kept so the teacher can come back.
        """
        room = self.get(room_id)
        before = len(room.participants)
        room.participants = [p for p in room.participants if p.id != user_id]
        if len(room.participants) == before:
            return room

        if not room.participants and not room.owner_id:
            self.delete(room.id)
            logger.info("Removed empty room %s", room.id)
            return None

        room.updated_at = self._clock()
        return self.commit(room)
