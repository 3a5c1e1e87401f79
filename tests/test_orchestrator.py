"""Tests for the session orchestrator in local (transport-less) mode.

Several orchestrators share one room registry, the way several sessions on
one device share local state.
"""

import asyncio

import pytest

from classchat.config import Limits, Settings
from classchat.errors import (
    AuthorizationError,
    BannedError,
    ConflictError,
    ContentRejectedError,
    MessageNotFoundError,
    NotInRoomError,
    RoomNotFoundError,
    SilencedError,
    ValidationError,
)
from classchat.moderation.content_filter import ContentFilter
from classchat.rooms.models import ModerationAction
from classchat.rooms.registry import RoomRegistry
from classchat.session.models import MembershipState
from classchat.session.orchestrator import SessionOrchestrator


def _classroom(clock, settings=None):
    """A teacher with a room and one student in it."""
    settings = settings or Settings()
    registry = RoomRegistry(settings.limits, clock)
    teacher = SessionOrchestrator(settings, registry=registry, clock=clock)
    student = SessionOrchestrator(settings, registry=registry, clock=clock)
    teacher.login("teacher", "Ada")
    student.login("student")
    room = asyncio.run(teacher.create_room("Algebra"))
    asyncio.run(student.join_room(room.code))
    return teacher, student, room


def _send(session, text, **kwargs):
    return asyncio.run(session.send_message(text, **kwargs))


def test_send_clean_message(clock):
    teacher, student, room = _classroom(clock)
    result = _send(student, "What is a matrix?")

    assert not result.warning
    assert not result.published
    stored = teacher.current_room.message(result.message.id)
    assert stored.text == "What is a matrix?"
    assert stored.author_role == "student"
    assert not stored.pending
    assert stored.reactions == {}
    assert teacher.current_room.last_activity == clock.now


def test_send_trims_and_validates(clock):
    _, student, _ = _classroom(clock, Settings(limits=Limits(max_message_length=10)))
    with pytest.raises(ValidationError):
        _send(student, "   ")
    with pytest.raises(ValidationError):
        _send(student, "x" * 11)
    assert _send(student, "  hi  ").message.text == "hi"


def test_send_requires_room(clock):
    session = SessionOrchestrator(clock=clock)
    session.login("student")
    with pytest.raises(NotInRoomError):
        _send(session, "hello")
    assert session.last_error


def test_reply_must_exist(clock):
    teacher, student, _ = _classroom(clock)
    first = _send(teacher, "Question time").message
    with pytest.raises(ValidationError):
        _send(student, "answer", reply_to="missing")
    assert _send(student, "answer", reply_to=first.id).message.reply_to == first.id


def test_prohibited_message_is_never_stored(clock):
    teacher, student, room = _classroom(clock)

    with pytest.raises(ContentRejectedError) as exc:
        _send(student, "there is a BOMB in here")
    assert not exc.value.warning
    assert student.identity.current.violations == 2
    assert not student.identity.current.banned
    assert teacher.current_room.messages == []

    # Still allowed to talk after the first offence
    _send(student, "sorry")

    with pytest.raises(BannedError):
        _send(student, "bomb")
    user = student.identity.current
    assert user.banned
    assert user.violations == 4
    assert student.current_room_id is None
    assert student.membership == MembershipState.left

    room = teacher.current_room
    assert not room.has_participant(user.id)
    assert user.id in room.banned_user_ids
    assert [m.text for m in room.messages] == ["sorry"]
    assert room.moderation_log[-1].action == ModerationAction.auto_banned

    with pytest.raises(BannedError):
        asyncio.run(student.join_room(room.code))


def test_warned_message_held_back_by_default(clock):
    teacher, student, _ = _classroom(clock)
    with pytest.raises(ContentRejectedError) as exc:
        _send(student, "this is stupid")
    assert exc.value.warning
    assert not exc.value.silenced
    assert teacher.current_room.messages == []
    assert student.identity.current.violations == 1


def test_warned_message_delivered_when_configured(clock):
    teacher, student, _ = _classroom(clock, Settings(deliver_warned_messages=True))
    result = _send(student, "this is stupid")
    assert result.warning
    assert teacher.current_room.message(result.message.id) is not None
    assert teacher.current_room.participant(student.identity.current.id).violations == 1


def test_repeated_warnings_silence_for_an_hour(clock):
    _, student, _ = _classroom(clock)
    for _ in range(3):
        with pytest.raises(ContentRejectedError):
            _send(student, "crap")

    with pytest.raises(ContentRejectedError) as exc:
        _send(student, "crap")
    assert exc.value.silenced

    with pytest.raises(SilencedError) as exc:
        _send(student, "hello")
    assert exc.value.remaining_minutes == 60

    clock.advance(minutes=60)
    _send(student, "hello again")


def test_teacher_silence_blocks_student(clock):
    teacher, student, room = _classroom(clock)
    student_id = student.identity.current.id

    outcome = asyncio.run(teacher.silence_user(student_id, 5))
    assert not outcome.banned
    notice = teacher.current_room.messages[-1]
    assert notice.is_system
    assert notice.text == "A student has been silenced for 5 minutes."

    clock.advance(minutes=1, seconds=30)
    with pytest.raises(SilencedError) as exc:
        _send(student, "let me talk")
    assert exc.value.remaining_minutes == 4
    assert student.identity.current.violations == 1

    asyncio.run(teacher.unsilence_user(student_id))
    _send(student, "thanks")


def test_teacher_silence_escalates_to_ban(clock):
    teacher, student, room = _classroom(clock)
    student_id = student.identity.current.id
    for _ in range(3):
        with pytest.raises(ContentRejectedError):
            _send(student, "dumb")

    outcome = asyncio.run(teacher.silence_user(student_id, 20))
    assert outcome.banned
    room = teacher.current_room
    assert not room.has_participant(student_id)
    assert student_id in room.banned_user_ids
    assert room.messages[-1].text == "A student has been banned for violating community guidelines."

    with pytest.raises(BannedError):
        _send(student, "hello?")
    with pytest.raises(BannedError):
        asyncio.run(student.join_room(room.code))


def test_students_cannot_moderate(clock):
    teacher, student, _ = _classroom(clock)
    with pytest.raises(AuthorizationError):
        asyncio.run(student.silence_user(teacher.identity.current.id, 5))


def test_reactions_toggle_and_cap(clock):
    teacher, student, _ = _classroom(clock)
    messages = [_send(teacher, f"point {i}").message for i in range(6)]

    for m in messages[:5]:
        reacted = asyncio.run(student.react(m.id, "\U0001F44D"))
        assert reacted.reactions["\U0001F44D"] == [student.identity.current.id]

    with pytest.raises(ConflictError):
        asyncio.run(student.react(messages[5].id, "\U0001F44D"))

    untoggled = asyncio.run(student.react(messages[0].id, "\U0001F44D"))
    assert untoggled.reactions == {}
    asyncio.run(student.react(messages[5].id, "\U0001F389"))

    with pytest.raises(ValidationError):
        asyncio.run(student.react(messages[1].id, ""))
    with pytest.raises(ValidationError):
        asyncio.run(student.react(messages[1].id, "toolong"))
    with pytest.raises(MessageNotFoundError):
        asyncio.run(student.react("missing", "\U0001F44D"))


def test_edit_own_message_only(clock):
    teacher, student, _ = _classroom(clock)
    mine = _send(student, "teh answer").message
    theirs = _send(teacher, "Welcome").message

    clock.advance(minutes=1)
    edited = asyncio.run(student.edit_message(mine.id, "the answer"))
    assert edited.text == "the answer"
    assert edited.is_edited
    assert edited.edited_at == clock.now

    with pytest.raises(AuthorizationError):
        asyncio.run(student.edit_message(theirs.id, "hacked"))
    with pytest.raises(ContentRejectedError):
        asyncio.run(student.edit_message(mine.id, "bomb"))
    assert teacher.current_room.message(mine.id).text == "the answer"


def test_polls_through_orchestrator(clock):
    teacher, student, _ = _classroom(clock)
    poll = asyncio.run(teacher.create_poll("Ready?", ["Yes", "No"]))
    assert teacher.current_room.messages[-1].poll_id == poll.id

    asyncio.run(student.vote(poll.id, "No"))
    asyncio.run(student.vote(poll.id, "Yes"))
    assert [(r.option, r.votes) for r in teacher.poll_results()] == [("Yes", 1), ("No", 0)]

    with pytest.raises(AuthorizationError):
        asyncio.run(student.close_poll(poll.id))
    closed = asyncio.run(teacher.close_poll(poll.id))
    again = asyncio.run(teacher.close_poll(poll.id))
    assert closed == again
    assert teacher.active_poll() is None
    assert teacher.current_room.messages[-1].text == "\U0001F4CA Poll closed: Ready?"


def test_join_unknown_or_ended_room(clock):
    teacher, student, room = _classroom(clock)
    other = SessionOrchestrator(registry=teacher.registry, clock=clock)
    other.login("student")
    with pytest.raises(RoomNotFoundError):
        asyncio.run(other.join_room("ZZZZZZ"))

    teacher.end_room()
    assert teacher.current_room_id is None
    with pytest.raises(ConflictError):
        asyncio.run(other.join_room(room.code))


def test_only_owner_ends_room(clock):
    teacher, student, room = _classroom(clock)
    with pytest.raises(AuthorizationError):
        student.end_room(room.id)
    assert teacher.registry.get(room.id).is_active


def test_join_is_idempotent(clock):
    teacher, student, room = _classroom(clock)
    asyncio.run(student.join_room(room.code.lower()))
    assert len(teacher.current_room.participants) == 2


def test_logout_marks_offline(clock):
    teacher, student, room = _classroom(clock)
    student_id = student.identity.current.id
    asyncio.run(student.logout())
    asyncio.run(teacher.logout())

    room = teacher.registry.get(room.id)
    assert not room.participant(student_id).is_online
    # a teacher stays listed in their own room
    assert room.participant(room.owner_id).is_online
    assert student.identity.current is None
    assert student.membership == MembershipState.disconnected


def test_leave_room(clock):
    teacher, student, room = _classroom(clock)
    asyncio.run(student.leave_room())
    assert student.membership == MembershipState.left
    assert len(teacher.current_room.participants) == 1
    with pytest.raises(NotInRoomError):
        asyncio.run(student.leave_room())


def test_custom_filter_word_boundaries(clock):
    settings = Settings(content_filter=ContentFilter(prohibited_terms=["ass"], warning_terms=[]))
    teacher, student, _ = _classroom(clock, settings)
    _send(student, "a classic assignment")
    with pytest.raises(ContentRejectedError):
        _send(student, "ass")
