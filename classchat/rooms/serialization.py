"""Plain-dict conversion for rooms and users, used by the local snapshot."""

from __future__ import annotations

from classchat.identity.models import Role, User
from classchat.rooms.models import (
    Message,
    ModerationAction,
    ModerationLogEntry,
    Participant,
    Poll,
    Room,
)
from classchat.utils.clock import from_iso, to_iso, utcnow


def _role(value) -> Role:
    try:
        return Role(value)
    except ValueError:
        return Role.student


def user_to_dict(u: User) -> dict:
    return {
        "id": u.id,
        "role": u.role.value,
        "display_name": u.display_name,
        "violations": u.violations,
        "silenced_until": to_iso(u.silenced_until),
        "silence_reason": u.silence_reason,
        "banned": u.banned,
        "ban_reason": u.ban_reason,
        "created_at": to_iso(u.created_at),
        "last_active": to_iso(u.last_active),
    }


def dict_to_user(d: dict) -> User:
    return User(
        id=d["id"],
        role=_role(d.get("role", "student")),
        display_name=d.get("display_name", ""),
        violations=int(d.get("violations", 0)),
        silenced_until=from_iso(d.get("silenced_until")),
        silence_reason=d.get("silence_reason", ""),
        banned=bool(d.get("banned", False)),
        ban_reason=d.get("ban_reason", ""),
        created_at=from_iso(d.get("created_at")) or utcnow(),
        last_active=from_iso(d.get("last_active")) or utcnow(),
    )


def participant_to_dict(p: Participant) -> dict:
    return {
        "id": p.id,
        "role": p.role.value,
        "display_name": p.display_name,
        "violations": p.violations,
        "silenced_until": to_iso(p.silenced_until),
        "banned": p.banned,
        "is_online": p.is_online,
        "joined_at": to_iso(p.joined_at),
        "last_active": to_iso(p.last_active),
    }


def dict_to_participant(d: dict) -> Participant:
    return Participant(
        id=d["id"],
        role=_role(d.get("role", "student")),
        display_name=d.get("display_name", ""),
        violations=int(d.get("violations", 0)),
        silenced_until=from_iso(d.get("silenced_until")),
        banned=bool(d.get("banned", False)),
        is_online=bool(d.get("is_online", True)),
        joined_at=from_iso(d.get("joined_at")) or utcnow(),
        last_active=from_iso(d.get("last_active")) or utcnow(),
    )


def message_to_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "room_id": m.room_id,
        "author_id": m.author_id,
        "author_name": m.author_name,
        "author_role": m.author_role,
        "text": m.text,
        "created_at": to_iso(m.created_at),
        "reply_to": m.reply_to,
        "reactions": {k: list(v) for k, v in m.reactions.items()},
        "is_system": m.is_system,
        "is_edited": m.is_edited,
        "edited_at": to_iso(m.edited_at),
        "poll_id": m.poll_id,
        "pending": m.pending,
    }


def dict_to_message(d: dict) -> Message:
    return Message(
        id=d["id"],
        room_id=d.get("room_id", ""),
        author_id=d.get("author_id", ""),
        author_name=d.get("author_name", ""),
        author_role=d.get("author_role", "student"),
        text=d.get("text", ""),
        created_at=from_iso(d.get("created_at")) or utcnow(),
        reply_to=d.get("reply_to"),
        reactions={k: list(v) for k, v in (d.get("reactions") or {}).items()},
        is_system=bool(d.get("is_system", False)),
        is_edited=bool(d.get("is_edited", False)),
        edited_at=from_iso(d.get("edited_at")),
        poll_id=d.get("poll_id"),
        pending=bool(d.get("pending", False)),
    )


def poll_to_dict(p: Poll) -> dict:
    return {
        "id": p.id,
        "room_id": p.room_id,
        "question": p.question,
        "options": list(p.options),
        "created_by": p.created_by,
        "creator_name": p.creator_name,
        "votes": {k: list(v) for k, v in p.votes.items()},
        "total_votes": p.total_votes,
        "is_active": p.is_active,
        "created_at": to_iso(p.created_at),
        "closed_at": to_iso(p.closed_at),
        "last_voted_at": to_iso(p.last_voted_at),
    }


def dict_to_poll(d: dict) -> Poll:
    votes = {k: list(v) for k, v in (d.get("votes") or {}).items()}
    return Poll(
        id=d["id"],
        room_id=d.get("room_id", ""),
        question=d.get("question", ""),
        options=list(d.get("options", [])),
        created_by=d.get("created_by", ""),
        creator_name=d.get("creator_name", ""),
        votes=votes,
        total_votes=int(d.get("total_votes", sum(len(v) for v in votes.values()))),
        is_active=bool(d.get("is_active", False)),
        created_at=from_iso(d.get("created_at")) or utcnow(),
        closed_at=from_iso(d.get("closed_at")),
        last_voted_at=from_iso(d.get("last_voted_at")),
    )


def log_entry_to_dict(e: ModerationLogEntry) -> dict:
    return {
        "id": e.id,
        "user_id": e.user_id,
        "moderator_id": e.moderator_id,
        "action": e.action.value,
        "timestamp": to_iso(e.timestamp),
        "duration_minutes": e.duration_minutes,
        "reason": e.reason,
    }


def dict_to_log_entry(d: dict) -> ModerationLogEntry:
    return ModerationLogEntry(
        id=d["id"],
        user_id=d.get("user_id", ""),
        moderator_id=d.get("moderator_id", ""),
        action=ModerationAction(d.get("action", "silenced")),
        timestamp=from_iso(d.get("timestamp")) or utcnow(),
        duration_minutes=d.get("duration_minutes"),
        reason=d.get("reason", ""),
    )


def room_to_dict(r: Room) -> dict:
    return {
        "id": r.id,
        "code": r.code,
        "name": r.name,
        "owner_id": r.owner_id,
        "owner_name": r.owner_name,
        "is_active": r.is_active,
        "messages": [message_to_dict(m) for m in r.messages],
        "polls": [poll_to_dict(p) for p in r.polls],
        "participants": [participant_to_dict(p) for p in r.participants],
        "banned_user_ids": sorted(r.banned_user_ids),
        "moderation_log": [log_entry_to_dict(e) for e in r.moderation_log],
        "created_at": to_iso(r.created_at),
        "updated_at": to_iso(r.updated_at),
        "last_activity": to_iso(r.last_activity),
        "ended_at": to_iso(r.ended_at),
    }


def dict_to_room(d: dict) -> Room:
    return Room(
        id=d["id"],
        code=d["code"],
        name=d.get("name", ""),
        owner_id=d.get("owner_id", ""),
        owner_name=d.get("owner_name", ""),
        is_active=bool(d.get("is_active", True)),
        messages=[dict_to_message(m) for m in d.get("messages", [])],
        polls=[dict_to_poll(p) for p in d.get("polls", [])],
        participants=[dict_to_participant(p) for p in d.get("participants", [])],
        banned_user_ids=set(d.get("banned_user_ids", [])),
        moderation_log=[dict_to_log_entry(e) for e in d.get("moderation_log", [])],
        created_at=from_iso(d.get("created_at")) or utcnow(),
        updated_at=from_iso(d.get("updated_at")) or utcnow(),
        last_activity=from_iso(d.get("last_activity")),
        ended_at=from_iso(d.get("ended_at")),
    )
