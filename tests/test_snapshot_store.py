"""Tests for the local session snapshot store."""

import json
import tempfile
from datetime import timedelta
from pathlib import Path

from classchat.identity.models import Role, User
from classchat.rooms.models import Message, Participant, Poll, Room
from classchat.session.models import MembershipState, SessionSnapshot
from classchat.storage.snapshot_store import SnapshotStore


def _snapshot(clock) -> SessionSnapshot:
    user = User(
        id="s1",
        role=Role.student,
        display_name="Codezilla 238",
        violations=1,
        silenced_until=clock.now + timedelta(minutes=5),
        created_at=clock.now,
        last_active=clock.now,
    )
    room = Room(
        id="r1",
        code="ABC123",
        name="Algebra",
        owner_id="t1",
        owner_name="Ada",
        participants=[Participant.from_user(user, clock.now)],
        messages=[
            Message(
                id="m1",
                room_id="r1",
                author_id="s1",
                author_name="Codezilla 238",
                author_role="student",
                text="hi",
                created_at=clock.now,
                reactions={"\U0001F44D": ["t1"]},
                pending=True,
            )
        ],
        polls=[
            Poll(
                id="p1",
                room_id="r1",
                question="Ready?",
                options=["Yes", "No"],
                created_by="t1",
                votes={"Yes": ["s1"]},
                total_votes=1,
                created_at=clock.now,
            )
        ],
        banned_user_ids={"s9"},
        created_at=clock.now,
        updated_at=clock.now,
        last_activity=clock.now,
    )
    return SessionSnapshot(
        current_user=user,
        current_room_id="r1",
        current_room_code="ABC123",
        membership=MembershipState.joined,
        rooms=[room],
    )


def test_save_and_load(clock):
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(tmpdir)
        snapshot = _snapshot(clock)
        store.save(snapshot)
        store.save(snapshot)

        loaded = SnapshotStore(tmpdir).load()
        assert loaded == snapshot
        assert loaded.rooms[0].banned_user_ids == {"s9"}
        assert loaded.rooms[0].messages[0].pending


def test_missing_file_is_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        loaded = SnapshotStore(Path(tmpdir) / "nested").load()
        assert loaded.is_empty
        assert loaded.membership == MembershipState.disconnected


def test_corrupt_file_is_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(tmpdir)
        store.path.write_text("{not json")
        assert store.load().is_empty

        store.path.write_text(json.dumps(["a", "list"]))
        assert store.load().is_empty

        store.path.write_bytes(b"\xff\xfe\x00garbage")
        assert store.load().is_empty


def test_malformed_structure_is_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(tmpdir)
        store.path.write_text(json.dumps({"rooms": [{"name": "no id or code"}]}))
        assert store.load().is_empty

        store.path.write_text(json.dumps({"current_user": {"id": "x", "violations": "lots"}}))
        assert store.load().is_empty


def test_unknown_membership_falls_back(clock):
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(tmpdir)
        store.save(_snapshot(clock))
        data = json.loads(store.path.read_text())
        data["membership"] = "levitating"
        store.path.write_text(json.dumps(data))
        assert store.load().membership == MembershipState.disconnected


def test_clear(clock):
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SnapshotStore(tmpdir)
        assert not store.clear()
        store.save(_snapshot(clock))
        assert store.clear()
        assert store.load().is_empty
