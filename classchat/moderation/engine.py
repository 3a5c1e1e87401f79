"""Moderation engine — silences, bans and content-policy penalties.

The engine never writes to the room registry. Each operation returns a
proposed delta (updated participant or user, audit entry, system notice)
which the session orchestrator commits in one step.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from classchat.errors import AuthorizationError, ConflictError, ValidationError
from classchat.identity.models import Role, User
from classchat.moderation.content_filter import ContentVerdict
from classchat.moderation.escalation import (
    EscalationDecision,
    EscalationTable,
    PenaltyAction,
    ViolationTrigger,
    default_escalation_table,
)
from classchat.rooms.models import (
    SYSTEM_USER_ID,
    Message,
    ModerationAction,
    ModerationLogEntry,
    Participant,
    Room,
)
from classchat.utils.ids import new_id

BAN_REASON = "Multiple violations of community guidelines"
SILENCE_REASON = "Multiple warnings for inappropriate content"


@dataclass
class ModerationOutcome:
    """Proposed result of a teacher's moderation action."""

    target: Participant
    action: ModerationAction
    log_entry: ModerationLogEntry
    notice: Message
    decision: Optional[EscalationDecision] = None

    @property
    def banned(self) -> bool:
        return self.action == ModerationAction.banned


@dataclass
class ContentPenalty:
    """Proposed result of a content-policy violation by the local user."""

    user: User
    trigger: ViolationTrigger
    decision: EscalationDecision
    log_entry: Optional[ModerationLogEntry] = None

    @property
    def banned(self) -> bool:
        return self.decision.banned

    @property
    def silenced(self) -> bool:
        return self.decision.silenced


class ModerationEngine:
    """Applies the escalation table to moderation and content violations."""

    def __init__(self, table: Optional[EscalationTable] = None) -> None:
        self.table = table or default_escalation_table()

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _require_moderator(room: Room, moderator: User) -> None:
        if moderator.role != Role.teacher or not (
            room.is_owner(moderator.id) or room.has_participant(moderator.id)
        ):
            raise AuthorizationError("Only teachers can moderate users")

    @staticmethod
    def _require_target(room: Room, target_id: str, moderator: User) -> Participant:
        target = room.participant(target_id)
        if target is None:
            raise AuthorizationError("User not found in this room")
        if target.role == Role.teacher and target.id != moderator.id:
            raise AuthorizationError("You cannot moderate other teachers")
        return copy.deepcopy(target)

    # -- teacher actions ------------------------------------------------------

    def silence(
        self,
        room: Room,
        target_id: str,
        duration_minutes: int,
        moderator: User,
        now: datetime,
    ) -> ModerationOutcome:
        """Silence *target_id* for *duration_minutes*, escalating to a ban.

        A repeat offender silenced for long enough is banned instead: removed
        from the room, flagged banned, and not silenced.
        """
        self._require_moderator(room, moderator)
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        target = self._require_target(room, target_id, moderator)

        decision = self.table.evaluate(ViolationTrigger.MODERATOR, target.violations, duration_minutes)
        target.violations = decision.violations

        if decision.banned:
            target.banned = True
            target.silenced_until = None
            action = ModerationAction.banned
            text = f"{target.public_label} has been banned for violating community guidelines."
            duration = None
        else:
            minutes = decision.silence_minutes or duration_minutes
            target.silenced_until = now + timedelta(minutes=minutes)
            action = ModerationAction.silenced
            text = f"{target.public_label} has been silenced for {minutes} minutes."
            duration = minutes

        entry = ModerationLogEntry(
            id=new_id(),
            user_id=target.id,
            moderator_id=moderator.id,
            action=action,
            timestamp=now,
            duration_minutes=duration,
            reason="Inappropriate behavior",
        )
        return ModerationOutcome(
            target=target,
            action=action,
            log_entry=entry,
            notice=Message.system(room.id, text, now),
            decision=decision,
        )

    def unsilence(self, room: Room, target_id: str, moderator: User, now: datetime) -> ModerationOutcome:
        """Lift an active silence early. Violations are kept."""
        self._require_moderator(room, moderator)
        target = self._require_target(room, target_id, moderator)
        if target.silenced_until is None or target.silenced_until <= now:
            raise ConflictError("User is not silenced")

        target.silenced_until = None
        entry = ModerationLogEntry(
            id=new_id(),
            user_id=target.id,
            moderator_id=moderator.id,
            action=ModerationAction.unsilenced,
            timestamp=now,
        )
        return ModerationOutcome(
            target=target,
            action=ModerationAction.unsilenced,
            log_entry=entry,
            notice=Message.system(room.id, f"{target.public_label} can send messages again.", now),
        )

    # -- content policy -------------------------------------------------------

    def apply_content_violation(self, user: User, verdict: ContentVerdict, now: datetime) -> ContentPenalty:
        """Record a content violation against *user* and escalate if due."""
        if verdict.prohibited:
            trigger = ViolationTrigger.PROHIBITED
        elif verdict.warning:
            trigger = ViolationTrigger.WARNING
        else:
            raise ValueError("Clean content is not a violation")

        decision = self.table.evaluate(trigger, user.violations)
        updated = replace(user, violations=decision.violations)
        entry = None

        if decision.action == PenaltyAction.BAN:
            updated.banned = True
            updated.ban_reason = BAN_REASON
            updated.silenced_until = None
            entry = ModerationLogEntry(
                id=new_id(),
                user_id=user.id,
                moderator_id=SYSTEM_USER_ID,
                action=ModerationAction.auto_banned,
                timestamp=now,
                reason=BAN_REASON,
            )
        elif decision.action == PenaltyAction.SILENCE:
            minutes = decision.silence_minutes or 0
            updated.silenced_until = now + timedelta(minutes=minutes)
            updated.silence_reason = SILENCE_REASON
            entry = ModerationLogEntry(
                id=new_id(),
                user_id=user.id,
                moderator_id=SYSTEM_USER_ID,
                action=ModerationAction.auto_silenced,
                timestamp=now,
                duration_minutes=minutes,
                reason=SILENCE_REASON,
            )

        return ContentPenalty(user=updated, trigger=trigger, decision=decision, log_entry=entry)
