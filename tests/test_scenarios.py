"""End-to-end classroom scenarios."""

import asyncio
from datetime import timedelta

import pytest

from classchat.errors import BannedError, ConflictError, ContentRejectedError
from classchat.rooms.registry import RoomRegistry
from classchat.session.orchestrator import SessionOrchestrator


def _session(registry, clock, role, name=None):
    session = SessionOrchestrator(registry=registry, clock=clock)
    session.login(role, name)
    return session


def test_teacher_opens_room_and_student_joins(clock):
    registry = RoomRegistry(clock=clock)
    ada = _session(registry, clock, "teacher", "Ada")
    room = asyncio.run(ada.create_room("Algebra"))
    assert len(room.code) == 6

    student = _session(registry, clock, "student")
    asyncio.run(student.join_room(room.code))

    room = registry.get(room.id)
    assert len(room.participants) == 2
    assert registry.stats().online == 2


def test_warning_term_is_held_back_without_ban(clock):
    registry = RoomRegistry(clock=clock)
    ada = _session(registry, clock, "teacher", "Ada")
    room = asyncio.run(ada.create_room("Algebra"))
    student = _session(registry, clock, "student")
    asyncio.run(student.join_room(room.code))

    with pytest.raises(ContentRejectedError):
        asyncio.run(student.send_message("fuck this class"))

    room = registry.get(room.id)
    assert room.messages == []
    assert student.identity.current.violations == 1
    assert not student.identity.current.banned
    assert room.has_participant(student.identity.current.id)


def test_two_students_vote_yes(clock):
    registry = RoomRegistry(clock=clock)
    ada = _session(registry, clock, "teacher", "Ada")
    room = asyncio.run(ada.create_room("Algebra"))
    students = [_session(registry, clock, "student") for _ in range(2)]
    for s in students:
        asyncio.run(s.join_room(room.code))

    poll = asyncio.run(ada.create_poll("Ready?", ["Yes", "No"]))
    for s in students:
        asyncio.run(s.vote(poll.id, "Yes"))

    results = [(r.option, r.votes, r.percentage) for r in ada.poll_results(poll.id)]
    assert results == [("Yes", 2, 100), ("No", 0, 0)]


def test_second_room_needs_first_ended(clock):
    registry = RoomRegistry(clock=clock)
    ada = _session(registry, clock, "teacher", "Ada")
    first = asyncio.run(ada.create_room("Algebra"))

    with pytest.raises(ConflictError):
        asyncio.run(ada.create_room("Geometry"))

    ada.end_room(first.id)
    second = asyncio.run(ada.create_room("Geometry"))
    assert second.is_active
    assert registry.stats().active_rooms == 1


def test_banned_on_second_prohibited_message_not_first(clock):
    registry = RoomRegistry(clock=clock)
    ada = _session(registry, clock, "teacher", "Ada")
    room = asyncio.run(ada.create_room("Algebra"))
    student = _session(registry, clock, "student")
    asyncio.run(student.join_room(room.code))

    with pytest.raises(ContentRejectedError):
        asyncio.run(student.send_message("I'll bring a bomb"))
    assert student.identity.current.violations == 2
    asyncio.run(student.send_message("just kidding, sorry"))

    with pytest.raises(BannedError):
        asyncio.run(student.send_message("bomb"))
    assert student.identity.current.banned


@pytest.mark.parametrize("prior, banned", [(3, True), (2, False)])
def test_twenty_minute_silence_of_repeat_offender(clock, prior, banned):
    registry = RoomRegistry(clock=clock)
    ada = _session(registry, clock, "teacher", "Ada")
    room = asyncio.run(ada.create_room("Algebra"))
    student = _session(registry, clock, "student")
    asyncio.run(student.join_room(room.code))
    student_id = student.identity.current.id

    room = registry.get(room.id)
    room.participant(student_id).violations = prior
    registry.commit(room)

    outcome = asyncio.run(ada.silence_user(student_id, 20))
    assert outcome.banned is banned
    if banned:
        assert outcome.target.silenced_until is None
        assert not registry.get(room.id).has_participant(student_id)
    else:
        assert outcome.target.silenced_until == clock.now + timedelta(minutes=20)
        assert registry.get(room.id).participant(student_id).silenced_until is not None
