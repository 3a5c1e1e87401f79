"""Poll engine — create, vote, close and tally.

Invariants:
- at most one active poll per room; creating a poll deactivates the others
- one vote per user per poll; a new vote replaces the previous one
- ``Poll.total_votes`` is updated incrementally and always equals
  ``Poll.recount()``

Operations take a room snapshot and return a :class:`PollDelta`; the caller
commits it.
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from classchat.config import Limits
from classchat.errors import (
    AuthorizationError,
    ConflictError,
    NotInRoomError,
    PollNotFoundError,
    ValidationError,
)
from classchat.identity.models import Role, User
from classchat.rooms.models import Message, Poll, PollResult, Room
from classchat.utils.ids import new_id


@dataclass
class PollDelta:
    """New poll list for a room plus an optional system notice."""

    polls: list[Poll]
    poll: Poll
    notice: Optional[Message] = None
    changed: bool = True


def results(poll: Poll) -> list[PollResult]:
    """Per-option vote counts and rounded percentages, in option order."""
    total = poll.total_votes
    out = []
    for option in poll.options:
        count = len(poll.votes.get(option, []))
        pct = math.floor(count * 100 / total + 0.5) if total > 0 else 0
        out.append(PollResult(option=option, votes=count, percentage=pct))
    return out


def active_poll(room: Room) -> Optional[Poll]:
    poll = room.active_poll
    return copy.deepcopy(poll) if poll else None


def user_vote(poll: Poll, user_id: str) -> Optional[str]:
    return poll.vote_of(user_id)


class PollEngine:
    """Validates and applies poll operations against a room snapshot."""

    def __init__(self, limits: Optional[Limits] = None) -> None:
        self._limits = limits or Limits()

    def _clean_options(self, options: Iterable[str]) -> list[str]:
        cleaned = [str(o).strip() for o in options or []]
        cleaned = [o for o in cleaned if o]
        if len(set(cleaned)) != len(cleaned):
            raise ValidationError("Poll options must be unique")
        if len(cleaned) < self._limits.min_poll_options:
            raise ValidationError(f"Poll must have at least {self._limits.min_poll_options} options")
        if len(cleaned) > self._limits.max_poll_options:
            raise ValidationError(f"Poll can have at most {self._limits.max_poll_options} options")
        for option in cleaned:
            if len(option) > self._limits.max_poll_option_length:
                raise ValidationError(
                    f"Poll options must be at most {self._limits.max_poll_option_length} characters"
                )
        return cleaned

    def create_poll(
        self,
        room: Room,
        question: str,
        options: Iterable[str],
        creator: User,
        now: datetime,
    ) -> PollDelta:
        """Create a poll and make it the room's only active poll."""
        if creator.role != Role.teacher:
            raise AuthorizationError("Only teachers can create polls")
        if not room.is_active or not (room.has_participant(creator.id) or room.is_owner(creator.id)):
            raise NotInRoomError()

        question = (question or "").strip()
        if not question:
            raise ValidationError("Poll question cannot be empty")
        if len(question) > self._limits.max_poll_question_length:
            raise ValidationError(
                f"Poll question must be at most {self._limits.max_poll_question_length} characters"
            )
        cleaned = self._clean_options(options)

        polls = copy.deepcopy(room.polls)
        for existing in polls:
            if existing.is_active:
                existing.is_active = False
                existing.closed_at = existing.closed_at or now

        poll = Poll(
            id=new_id(),
            room_id=room.id,
            question=question,
            options=cleaned,
            created_by=creator.id,
            creator_name=creator.display_name,
            created_at=now,
        )
        polls.append(poll)
        notice = Message.system(room.id, f"\U0001F4CA New poll: {question}", now, poll_id=poll.id)
        return PollDelta(polls=polls, poll=copy.deepcopy(poll), notice=notice)

    def vote(self, room: Room, poll_id: str, option: str, voter_id: str, now: datetime) -> PollDelta:
        """Record *voter_id*'s vote, replacing any earlier vote in the same poll."""
        polls = copy.deepcopy(room.polls)
        poll = next((p for p in polls if p.id == poll_id), None)
        if poll is None:
            raise PollNotFoundError(poll_id)
        if not poll.is_active:
            raise ConflictError("This poll is no longer active")
        if option not in poll.options:
            raise ValidationError("Invalid poll option")
        if not room.has_participant(voter_id):
            raise NotInRoomError("You must be in the room to vote")

        for opt in list(poll.votes):
            voters = poll.votes[opt]
            if voter_id in voters:
                voters.remove(voter_id)
                poll.total_votes -= 1
                if not voters:
                    del poll.votes[opt]

        poll.votes.setdefault(option, []).append(voter_id)
        poll.total_votes += 1
        poll.last_voted_at = now
        return PollDelta(polls=polls, poll=copy.deepcopy(poll))

    def close_poll(self, room: Room, poll_id: str, requester: User, now: datetime) -> PollDelta:
        """Close a poll. Closing an already-closed poll changes nothing."""
        if requester.role != Role.teacher:
            raise AuthorizationError("Only teachers can close polls")
        polls = copy.deepcopy(room.polls)
        poll = next((p for p in polls if p.id == poll_id), None)
        if poll is None:
            raise PollNotFoundError(poll_id)
        if not poll.is_active:
            return PollDelta(polls=polls, poll=copy.deepcopy(poll), changed=False)

        poll.is_active = False
        poll.closed_at = now
        notice = Message.system(room.id, f"\U0001F4CA Poll closed: {poll.question}", now, poll_id=poll.id)
        return PollDelta(polls=polls, poll=copy.deepcopy(poll), notice=notice)
