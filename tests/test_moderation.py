"""Tests for the moderation engine."""

from datetime import timedelta

import pytest

from classchat.errors import AuthorizationError, ConflictError, ValidationError
from classchat.identity.models import Role, User
from classchat.moderation.content_filter import ContentVerdict
from classchat.moderation.engine import ModerationEngine
from classchat.rooms.models import ModerationAction, Participant, Room


def _room(clock, violations: int = 0) -> Room:
    teacher = User(id="t1", role=Role.teacher, display_name="Ada")
    student = User(id="s1", role=Role.student, display_name="Codezilla 1", violations=violations)
    other = User(id="t2", role=Role.teacher, display_name="Grace")
    return Room(
        id="r1",
        code="ABC123",
        name="Algebra",
        owner_id="t1",
        owner_name="Ada",
        participants=[
            Participant.from_user(teacher, clock.now),
            Participant.from_user(student, clock.now),
            Participant.from_user(other, clock.now),
        ],
    )


TEACHER = User(id="t1", role=Role.teacher, display_name="Ada")


def test_silence_sets_deadline_and_notice(clock):
    room = _room(clock, violations=2)
    outcome = ModerationEngine().silence(room, "s1", 20, TEACHER, clock.now)

    assert outcome.action == ModerationAction.silenced
    assert not outcome.banned
    assert outcome.target.violations == 3
    assert outcome.target.silenced_until == clock.now + timedelta(minutes=20)
    assert outcome.notice.is_system
    assert outcome.notice.text == "A student has been silenced for 20 minutes."
    assert "Codezilla" not in outcome.notice.text
    assert outcome.log_entry.duration_minutes == 20
    assert outcome.log_entry.moderator_id == "t1"
    # proposal only: the room itself is untouched
    assert room.participant("s1").violations == 2


def test_silence_escalates_to_ban(clock):
    room = _room(clock, violations=3)
    outcome = ModerationEngine().silence(room, "s1", 20, TEACHER, clock.now)

    assert outcome.banned
    assert outcome.target.banned
    assert outcome.target.silenced_until is None
    assert outcome.target.violations == 4
    assert outcome.notice.text == "A student has been banned for violating community guidelines."


def test_short_silence_of_repeat_offender_is_not_a_ban(clock):
    room = _room(clock, violations=5)
    outcome = ModerationEngine().silence(room, "s1", 10, TEACHER, clock.now)
    assert not outcome.banned
    assert outcome.target.silenced_until is not None


def test_only_teachers_in_room_may_silence(clock):
    room = _room(clock)
    engine = ModerationEngine()
    with pytest.raises(AuthorizationError):
        engine.silence(room, "t1", 5, User(id="s1", role=Role.student, display_name="x"), clock.now)
    with pytest.raises(AuthorizationError):
        engine.silence(room, "s1", 5, User(id="t9", role=Role.teacher, display_name="Zed"), clock.now)


def test_cannot_silence_other_teacher(clock):
    with pytest.raises(AuthorizationError):
        ModerationEngine().silence(_room(clock), "t2", 5, TEACHER, clock.now)


def test_target_must_be_in_room(clock):
    with pytest.raises(AuthorizationError):
        ModerationEngine().silence(_room(clock), "nobody", 5, TEACHER, clock.now)


@pytest.mark.parametrize("duration", [0, -5, 2.5, True, "10"])
def test_duration_must_be_positive_int(clock, duration):
    with pytest.raises(ValidationError):
        ModerationEngine().silence(_room(clock), "s1", duration, TEACHER, clock.now)


def test_unsilence(clock):
    engine = ModerationEngine()
    room = _room(clock)
    with pytest.raises(ConflictError):
        engine.unsilence(room, "s1", TEACHER, clock.now)

    room.participant("s1").silenced_until = clock.now + timedelta(minutes=5)
    outcome = engine.unsilence(room, "s1", TEACHER, clock.now)
    assert outcome.target.silenced_until is None
    assert outcome.action == ModerationAction.unsilenced
    assert outcome.notice.is_system


def test_content_violation_prohibited(clock):
    engine = ModerationEngine()
    user = User(id="s1", role=Role.student, display_name="x")

    first = engine.apply_content_violation(user, ContentVerdict(prohibited=True), clock.now)
    assert first.user.violations == 2
    assert not first.banned
    assert first.log_entry is None
    assert user.violations == 0

    second = engine.apply_content_violation(first.user, ContentVerdict(prohibited=True), clock.now)
    assert second.banned
    assert second.user.banned
    assert second.user.ban_reason
    assert second.log_entry.action == ModerationAction.auto_banned


def test_content_violation_warning_silences_for_an_hour(clock):
    engine = ModerationEngine()
    user = User(id="s1", role=Role.student, display_name="x", violations=3)
    penalty = engine.apply_content_violation(user, ContentVerdict(warning=True), clock.now)

    assert penalty.silenced
    assert penalty.user.violations == 4
    assert penalty.user.silenced_until == clock.now + timedelta(minutes=60)
    assert penalty.log_entry.action == ModerationAction.auto_silenced
    assert penalty.log_entry.duration_minutes == 60


def test_clean_verdict_is_not_a_violation(clock):
    with pytest.raises(ValueError):
        ModerationEngine().apply_content_violation(
            User(id="s1", role=Role.student, display_name="x"), ContentVerdict(), clock.now
        )
