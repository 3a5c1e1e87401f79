"""Session orchestrator — the composition root of a ClassChat client.

The orchestrator validates each user action against the current identity
and room state, asks the content filter, moderation engine and poll engine
for a decision, and commits the result to the room registry in a single
step. Network calls to the realtime transport happen only after the local
commit, so a handler never leaves a half-applied update visible while it is
suspended.

Remote events are reconciled by id:

- a full room snapshot replaces the room's messages and participants
  (pending local copies are dropped)
- a ``NewMessageEvent`` whose id is already present confirms the local copy
  instead of adding a duplicate
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Awaitable, Iterable, Optional

from classchat.config import Settings
from classchat.errors import (
    AuthorizationError,
    BannedError,
    ClassChatError,
    ConflictError,
    ContentRejectedError,
    MessageNotFoundError,
    NotInRoomError,
    PollNotFoundError,
    RoomNotFoundError,
    SilencedError,
    TransportError,
    ValidationError,
)
from classchat.identity.manager import IdentityManager
from classchat.identity.models import Role, User
from classchat.moderation.engine import BAN_REASON, ModerationEngine, ModerationOutcome
from classchat.polls import engine as poll_engine
from classchat.polls.engine import PollDelta, PollEngine
from classchat.realtime.events import (
    MessageUpdatedEvent,
    NewMessageEvent,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    ParticipantPayload,
    ParticipantUpdatedEvent,
    PollUpdatedEvent,
    RoomSnapshotEvent,
    TransportErrorEvent,
    TransportEvent,
    identity_from_user,
    message_to_payload,
    participant_to_payload,
    payload_to_message,
    payload_to_participant,
    payload_to_poll,
    poll_to_payload,
)
from classchat.realtime.transport import RealtimeTransport
from classchat.rooms.models import Message, Participant, Poll, PollResult, Room
from classchat.rooms.registry import RoomRegistry
from classchat.session.models import MembershipState, SendResult, SessionSnapshot
from classchat.storage.snapshot_store import SnapshotStore
from classchat.utils.clock import Clock, utcnow
from classchat.utils.ids import new_id

logger = logging.getLogger(__name__)

PROHIBITED_NOTICE = (
    "Your message was removed because it violated our community guidelines. "
    "Further violations may result in a ban."
)
WARNING_NOTICE = (
    "Your message contains content that may be inappropriate. "
    "Please review our community guidelines."
)
SILENCED_NOTICE = (
    "Your message contains content that may be inappropriate. "
    "You have been temporarily silenced."
)
BANNED_NOTICE = "Your account has been banned due to repeated violations of our community guidelines."


def _later(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _merge_moderation(target: Participant, violations: int, silenced_until, banned: bool) -> None:
    """Fold moderation state into *target*; counters and penalties only grow."""
    target.violations = max(target.violations, violations)
    target.silenced_until = _later(target.silenced_until, silenced_until)
    target.banned = target.banned or banned


class SessionOrchestrator:
    """Coordinates identity, rooms, moderation, polls and the transport."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        registry: Optional[RoomRegistry] = None,
        identity: Optional[IdentityManager] = None,
        store: Optional[SnapshotStore] = None,
        transport: Optional[RealtimeTransport] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings or Settings()
        self._clock = clock
        self.registry = registry or RoomRegistry(self.settings.limits, clock)
        self.identity = identity or IdentityManager(self.settings.limits, clock)
        self.content_filter = self.settings.content_filter
        self.moderation = ModerationEngine(self.settings.escalation)
        self.polls = PollEngine(self.settings.limits)
        self._store = store
        self._transport: Optional[RealtimeTransport] = None

        self.current_room_id: Optional[str] = None
        self.current_room_code: Optional[str] = None
        self.membership = MembershipState.disconnected
        self.last_error: Optional[str] = None

        if transport is not None:
            self.attach_transport(transport)

    @classmethod
    def restore(
        cls,
        store: SnapshotStore,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[RealtimeTransport] = None,
        registry: Optional[RoomRegistry] = None,
        clock: Clock = utcnow,
    ) -> SessionOrchestrator:
        """Rebuild a session from the local snapshot (empty if unreadable)."""
        snapshot = store.load()
        orch = cls(settings, registry=registry, store=store, transport=transport, clock=clock)
        orch.registry.load(snapshot.rooms)
        orch.identity.restore(snapshot.current_user)
        room = orch.registry.find_by_id(snapshot.current_room_id) if snapshot.current_room_id else None
        if room is not None and snapshot.current_user is not None:
            orch.current_room_id = room.id
            orch.current_room_code = room.code
            # With a transport the room must be re-joined before it is live.
            orch.membership = MembershipState.disconnected if transport else MembershipState.joined
        logger.info("Restored session with %d room(s)", orch.registry.count())
        return orch

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def attach_transport(self, transport: RealtimeTransport) -> None:
        self._transport = transport
        transport.subscribe(self.handle_event)
        transport.on_reconnect(self._on_transport_reconnect)

    @property
    def transport(self) -> Optional[RealtimeTransport]:
        return self._transport

    def _now(self):
        return self._clock()

    def _fail(self, error: ClassChatError) -> ClassChatError:
        """Record and log *error*; the caller raises it."""
        self.last_error = str(error)
        logger.warning("%s: %s", type(error).__name__, error)
        return error

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self.snapshot())
        except OSError as e:
            self.last_error = "Could not save the session locally"
            logger.error("Failed to save session snapshot: %s", e)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            current_user=self.identity.current,
            current_room_id=self.current_room_id,
            current_room_code=self.current_room_code,
            membership=self.membership,
            rooms=self.registry.list_rooms(),
        )

    def _require_user(self) -> User:
        try:
            return self.identity.require()
        except AuthorizationError as e:
            raise self._fail(e) from None

    def _current_room(self) -> Room:
        if self.current_room_id is None:
            raise self._fail(NotInRoomError())
        room = self.registry.find_by_id(self.current_room_id)
        if room is None:
            self._clear_current(MembershipState.left)
            raise self._fail(NotInRoomError())
        return room

    def _clear_current(self, state: MembershipState) -> None:
        self.current_room_id = None
        self.current_room_code = None
        self.membership = state

    def _set_current(self, room: Room, state: MembershipState) -> None:
        self.current_room_id = room.id
        self.current_room_code = room.code
        self.membership = state

    def _refresh_self(self, room: Room) -> User:
        """Bring the identity in line with its participant record in *room*."""
        user = self._require_user()
        participant = room.participant(user.id)
        updated = replace(user)
        if participant is not None:
            updated.violations = participant.violations
            updated.silenced_until = participant.silenced_until
            updated.banned = user.banned or participant.banned
        if user.id in room.banned_user_ids:
            updated.banned = True
        if updated != user:
            updated = self.identity.update(updated)
        return updated

    def _room_event(self, room: Room) -> RoomSnapshotEvent:
        tail = self.settings.limits.snapshot_message_tail
        messages = [m for m in room.messages if not m.pending]
        active = room.active_poll
        return RoomSnapshotEvent(
            room_id=room.id,
            code=room.code,
            name=room.name,
            owner_id=room.owner_id,
            owner_name=room.owner_name,
            participants=[participant_to_payload(p) for p in room.participants],
            messages=[message_to_payload(m) for m in messages[-tail:]] if tail else [],
            active_poll=poll_to_payload(active) if active else None,
            polls=[poll_to_payload(p) for p in room.polls],
        )

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def login(self, role: Role | str | None, display_name: Optional[str] = None) -> User:
        try:
            user = self.identity.login(role, display_name)
        except ClassChatError as e:
            raise self._fail(e) from None
        self.last_error = None
        self._persist()
        return user

    async def logout(self) -> None:
        """Mark the user offline everywhere, leave the transport room, log out."""
        user = self.identity.current
        if user is None:
            return
        now = self._now()
        for room in self.registry.list_rooms():
            participant = room.participant(user.id)
            if participant is None:
                continue
            participant.last_active = now
            # A teacher stays listed as online in their own room.
            if not room.is_owner(user.id):
                participant.is_online = False
            room.updated_at = now
            self.registry.commit(room)

        code = self.current_room_code
        self.identity.logout()
        self._clear_current(MembershipState.disconnected)
        self._persist()

        if self._transport is not None and code:
            try:
                await self._transport.leave(code, user.id)
            except TransportError as e:
                raise self._fail(e) from None

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def create_room(self, name: str) -> Room:
        """Create a room owned by the logged-in teacher and enter it."""
        user = self._require_user()
        try:
            room = self.registry.create_room(user, name)
        except ClassChatError as e:
            raise self._fail(e) from None
        self._set_current(room, MembershipState.joined)
        self._persist()

        if self._transport is not None:
            self.membership = MembershipState.joining
            try:
                await self._transport.open_room(self._room_event(room))
                snapshot = await self._transport.join(room.code, identity_from_user(user))
            except TransportError as e:
                raise self._fail(e) from None
            room = self.apply_room_snapshot(snapshot)
        return room

    async def join_room(self, code: str) -> Room:
        """Join a room by its code, locally if known, otherwise via the transport."""
        user = self._require_user()
        code = (code or "").strip().upper()
        if not code:
            raise self._fail(ValidationError("Room code cannot be empty"))
        if user.banned:
            raise self._fail(BannedError(user.ban_reason))

        if self.current_room_id is not None:
            current = self.registry.find_by_id(self.current_room_id)
            if current is not None and current.code != code:
                await self.leave_room()

        local = self.registry.find_by_code(code)
        if local is not None and not local.is_active:
            raise self._fail(ConflictError("This classroom has ended"))

        if local is not None:
            try:
                room = self.registry.add_participant(local.id, Participant.from_user(user, self._now()))
            except ClassChatError as e:
                raise self._fail(e) from None
            room = self._merge_self_into(room, user)
            self._set_current(room, MembershipState.joined)
            self._refresh_self(room)
            self._persist()
        elif self._transport is None:
            raise self._fail(RoomNotFoundError(code))

        if self._transport is None:
            logger.info("Joined room %s locally", code)
            return room

        self.current_room_code = code
        self.membership = MembershipState.joining
        try:
            snapshot = await self._transport.join(code, identity_from_user(user))
        except TransportError as e:
            raise self._fail(e) from None
        return self.apply_room_snapshot(snapshot)

    def _merge_self_into(self, room: Room, user: User) -> Room:
        participant = room.participant(user.id)
        if participant is None:
            return room
        before = copy.deepcopy(participant)
        _merge_moderation(participant, user.violations, user.silenced_until, user.banned)
        if participant != before:
            room = self.registry.commit(room)
        return room

    async def leave_room(self) -> None:
        user = self._require_user()
        room = self._current_room()
        self.registry.remove_participant(room.id, user.id)
        self._clear_current(MembershipState.left)
        self._persist()
        if self._transport is not None:
            try:
                await self._transport.leave(room.code, user.id)
            except TransportError as e:
                raise self._fail(e) from None

    def end_room(self, room_id: Optional[str] = None) -> Room:
        """End a room (default: the current one). Only its owner may do this."""
        user = self._require_user()
        room_id = room_id or self.current_room_id
        if room_id is None:
            raise self._fail(NotInRoomError())
        try:
            room = self.registry.end_room(room_id, user)
        except ClassChatError as e:
            raise self._fail(e) from None
        if self.current_room_id == room.id:
            self._clear_current(MembershipState.left)
        self._persist()
        return room

    @property
    def current_room(self) -> Optional[Room]:
        return self.registry.find_by_id(self.current_room_id) if self.current_room_id else None

    def is_room_owner(self, room: Room) -> bool:
        user = self.identity.current
        return user is not None and room.is_owner(user.id)

    def find_participant(self, user_id: str) -> Optional[Participant]:
        """Look a user up in the current room first, then in every room."""
        rooms = self.registry.list_rooms()
        current = self.current_room
        if current is not None:
            rooms.insert(0, current)
        for room in rooms:
            participant = room.participant(user_id)
            if participant is not None:
                return participant
        return None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _check_can_post(self, room: Room) -> User:
        user = self._refresh_self(room)
        if user.banned:
            if room.has_participant(user.id):
                room.participants = [p for p in room.participants if p.id != user.id]
                self.registry.commit(room)
            self._clear_current(MembershipState.left)
            self._persist()
            raise self._fail(BannedError(user.ban_reason))
        if not room.has_participant(user.id):
            self._clear_current(MembershipState.left)
            raise self._fail(NotInRoomError())
        now = self._now()
        if user.is_silenced(now):
            raise self._fail(SilencedError(user.silence_remaining_minutes(now)))
        return user

    def _clean_text(self, text: Optional[str]) -> str:
        text = (text or "").strip()
        if not text:
            raise self._fail(ValidationError("Message cannot be empty"))
        if len(text) > self.settings.limits.max_message_length:
            raise self._fail(
                ValidationError(
                    f"Message must be at most {self.settings.limits.max_message_length} characters"
                )
            )
        return text

    async def _remote(self, call: Awaitable[None]) -> None:
        """Await one transport call; failures are recorded and re-raised."""
        try:
            await call
        except TransportError as e:
            raise self._fail(e) from None

    def _self_payload(self, user: User) -> ParticipantPayload:
        return participant_to_payload(Participant.from_user(user, self._now()))

    async def _screen(self, room: Room, user: User, text: str) -> bool:
        """Run the content filter once and apply any penalty.

        Returns True when a warned message may still be delivered; raises
        when the message must not be stored. The new moderation state is
        reported to the transport before anything is raised.
        """
        verdict = self.content_filter.classify(text)
        if verdict.clean:
            return False

        now = self._now()
        penalty = self.moderation.apply_content_violation(user, verdict, now)
        self.identity.update(penalty.user)

        participant = room.participant(user.id)
        if participant is not None:
            participant.violations = penalty.user.violations
            participant.silenced_until = penalty.user.silenced_until
            participant.banned = penalty.user.banned
        if penalty.log_entry is not None:
            room.moderation_log.append(penalty.log_entry)
        if penalty.banned:
            room.participants = [p for p in room.participants if p.id != user.id]
            room.banned_user_ids.add(user.id)
        room.updated_at = now
        self.registry.commit(room)
        if penalty.banned:
            self._clear_current(MembershipState.left)
        self._persist()

        logger.info(
            "Content violation by %s (%s): violations=%d action=%s",
            user.id,
            penalty.trigger.value,
            penalty.user.violations,
            penalty.decision.action.value,
        )

        if self._transport is not None:
            try:
                await self._transport.update_participant(
                    room.code, self._self_payload(penalty.user), identity_from_user(user)
                )
            except TransportError as e:
                # The content decision below is what the caller must see.
                self.last_error = str(e)
                logger.warning("Could not publish moderation state for %s: %s", user.id, e)

        if penalty.banned:
            raise self._fail(BannedError(BANNED_NOTICE))
        if verdict.prohibited:
            raise self._fail(ContentRejectedError(PROHIBITED_NOTICE))
        if penalty.silenced:
            raise self._fail(ContentRejectedError(SILENCED_NOTICE, warning=True, silenced=True))
        if not self.settings.deliver_warned_messages:
            raise self._fail(ContentRejectedError(WARNING_NOTICE, warning=True))
        return True

    async def send_message(self, text: str, reply_to: Optional[str] = None) -> SendResult:
        """Validate, screen and append a message, then publish it."""
        self._require_user()
        room = self._current_room()
        user = self._check_can_post(room)
        text = self._clean_text(text)
        if reply_to is not None and room.message(reply_to) is None:
            raise self._fail(ValidationError("The message you are replying to no longer exists"))

        warning = await self._screen(room, user, text)
        room = self.registry.get(room.id)

        now = self._now()
        message = Message(
            id=new_id(),
            room_id=room.id,
            author_id=user.id,
            author_name=user.display_name,
            author_role=user.role.value,
            text=text,
            created_at=now,
            reply_to=reply_to,
            pending=self._transport is not None,
        )
        room.messages.append(message)
        room.updated_at = now
        room.last_activity = now
        participant = room.participant(user.id)
        if participant is not None:
            participant.last_active = now
        self.registry.commit(room)
        self._persist()
        self.last_error = None

        result = SendResult(message=copy.deepcopy(message), warning=warning)
        if self._transport is not None:
            await self._publish(room.code, message, user)
            result.published = True
            confirmed = self.registry.get(room.id).message(message.id)
            if confirmed is not None:
                result.message = confirmed
        return result

    async def _publish(self, code: str, message: Message, user: User) -> None:
        await self._remote(
            self._transport.send_message(code, message_to_payload(message), identity_from_user(user))
        )

    async def resend(self, message_id: str) -> Message:
        """Publish a still-pending message again under the same id."""
        user = self._require_user()
        room = self._current_room()
        message = room.message(message_id)
        if message is None:
            raise self._fail(MessageNotFoundError(message_id))
        if message.author_id != user.id and not (message.is_system and room.is_owner(user.id)):
            raise self._fail(AuthorizationError("You can only resend your own messages"))
        if self._transport is None or not message.pending:
            return message
        await self._publish(room.code, message, user)
        return self.registry.get(room.id).message(message_id) or message

    def _latest_message(self, room_id: str, message: Message) -> Message:
        return self.registry.get(room_id).message(message.id) or message

    async def edit_message(self, message_id: str, text: str) -> Message:
        """Replace the text of one of the user's own messages."""
        self._require_user()
        room = self._current_room()
        user = self._check_can_post(room)
        message = room.message(message_id)
        if message is None:
            raise self._fail(MessageNotFoundError(message_id))
        if message.is_system or message.author_id != user.id:
            raise self._fail(AuthorizationError("You can only edit your own messages"))
        text = self._clean_text(text)

        await self._screen(room, user, text)
        room = self.registry.get(room.id)
        message = room.message(message_id)
        if message is None:
            raise self._fail(MessageNotFoundError(message_id))
        now = self._now()
        message.text = text
        message.is_edited = True
        message.edited_at = now
        room.updated_at = now
        self.registry.commit(room)
        self._persist()

        if self._transport is not None:
            await self._remote(
                self._transport.edit_message(room.code, message_id, text, identity_from_user(user))
            )
        return self._latest_message(room.id, message)

    async def react(self, message_id: str, symbol: str) -> Message:
        """Toggle the user's *symbol* reaction on a message."""
        user = self._require_user()
        room = self._current_room()
        if not room.has_participant(user.id):
            raise self._fail(NotInRoomError())
        if not symbol or not isinstance(symbol, str) or len(symbol) > self.settings.limits.max_reaction_length:
            raise self._fail(ValidationError("Invalid emoji"))
        message = room.message(message_id)
        if message is None:
            raise self._fail(MessageNotFoundError(message_id))

        users = message.reactions.get(symbol, [])
        if user.id in users:
            users.remove(user.id)
            if users:
                message.reactions[symbol] = users
            else:
                message.reactions.pop(symbol, None)
        else:
            held = sum(m.reaction_count_for(user.id) for m in room.messages)
            limit = self.settings.limits.max_reactions_per_user
            if held >= limit:
                raise self._fail(ConflictError(f"You can only have {limit} reactions at a time"))
            message.reactions[symbol] = users + [user.id]

        room.updated_at = self._now()
        self.registry.commit(room)
        self._persist()

        if self._transport is not None:
            await self._remote(
                self._transport.react(room.code, message_id, symbol, identity_from_user(user))
            )
        return self._latest_message(room.id, message)

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    def _commit_outcome(self, room: Room, outcome: ModerationOutcome) -> None:
        if outcome.banned:
            room.participants = [p for p in room.participants if p.id != outcome.target.id]
            room.banned_user_ids.add(outcome.target.id)
        else:
            room.participants = [
                outcome.target if p.id == outcome.target.id else p for p in room.participants
            ]
        outcome.notice.pending = self._transport is not None
        room.moderation_log.append(outcome.log_entry)
        room.messages.append(copy.deepcopy(outcome.notice))
        room.updated_at = outcome.log_entry.timestamp
        self.registry.commit(room)

    async def _publish_outcome(self, code: str, outcome: ModerationOutcome, moderator: User) -> None:
        if self._transport is None:
            return
        author = identity_from_user(moderator)
        await self._remote(
            self._transport.update_participant(code, participant_to_payload(outcome.target), author)
        )
        await self._remote(self._transport.send_message(code, message_to_payload(outcome.notice), author))

    async def silence_user(self, target_id: str, duration_minutes: int) -> ModerationOutcome:
        """Silence a participant; repeat offenders are banned instead."""
        moderator = self._require_user()
        room = self._current_room()
        try:
            outcome = self.moderation.silence(room, target_id, duration_minutes, moderator, self._now())
        except ClassChatError as e:
            raise self._fail(e) from None
        self._commit_outcome(room, outcome)
        if target_id == moderator.id:
            self._refresh_self(self.registry.get(room.id))
        logger.info("%s %s in room %s", outcome.action.value, target_id, room.id)
        self._persist()
        await self._publish_outcome(room.code, outcome, moderator)
        return outcome

    async def unsilence_user(self, target_id: str) -> ModerationOutcome:
        moderator = self._require_user()
        room = self._current_room()
        try:
            outcome = self.moderation.unsilence(room, target_id, moderator, self._now())
        except ClassChatError as e:
            raise self._fail(e) from None
        self._commit_outcome(room, outcome)
        self._persist()
        await self._publish_outcome(room.code, outcome, moderator)
        return outcome

    # ------------------------------------------------------------------
    # Polls
    # ------------------------------------------------------------------

    def _commit_polls(self, room: Room, delta: PollDelta) -> Poll:
        if not delta.changed:
            return delta.poll
        room.polls = delta.polls
        now = self._now()
        if delta.notice is not None:
            delta.notice.pending = self._transport is not None
            room.messages.append(copy.deepcopy(delta.notice))
        room.updated_at = now
        room.last_activity = now
        self.registry.commit(room)
        self._persist()
        return delta.poll

    async def _publish_poll(self, code: str, delta: PollDelta, user: User) -> None:
        if self._transport is None or not delta.changed:
            return
        author = identity_from_user(user)
        await self._remote(self._transport.publish_poll(code, poll_to_payload(delta.poll), author))
        if delta.notice is not None:
            await self._remote(self._transport.send_message(code, message_to_payload(delta.notice), author))

    def _latest_poll(self, room_id: str, poll: Poll) -> Poll:
        return self.registry.get(room_id).poll(poll.id) or poll

    async def create_poll(self, question: str, options: Iterable[str]) -> Poll:
        user = self._require_user()
        room = self._current_room()
        try:
            delta = self.polls.create_poll(room, question, options, user, self._now())
        except ClassChatError as e:
            raise self._fail(e) from None
        poll = self._commit_polls(room, delta)
        await self._publish_poll(room.code, delta, user)
        return self._latest_poll(room.id, poll)

    async def vote(self, poll_id: str, option: str) -> Poll:
        user = self._require_user()
        room = self._current_room()
        try:
            delta = self.polls.vote(room, poll_id, option, user.id, self._now())
        except ClassChatError as e:
            raise self._fail(e) from None
        poll = self._commit_polls(room, delta)
        if self._transport is not None:
            await self._remote(self._transport.vote(room.code, poll_id, option, identity_from_user(user)))
        return self._latest_poll(room.id, poll)

    async def close_poll(self, poll_id: str) -> Poll:
        user = self._require_user()
        room = self._current_room()
        try:
            delta = self.polls.close_poll(room, poll_id, user, self._now())
        except ClassChatError as e:
            raise self._fail(e) from None
        poll = self._commit_polls(room, delta)
        await self._publish_poll(room.code, delta, user)
        return self._latest_poll(room.id, poll)

    def active_poll(self) -> Optional[Poll]:
        room = self._current_room()
        return poll_engine.active_poll(room)

    def poll_results(self, poll_id: Optional[str] = None) -> list[PollResult]:
        room = self._current_room()
        poll = room.poll(poll_id) if poll_id else room.active_poll
        if poll is None:
            raise self._fail(PollNotFoundError(poll_id or "active"))
        return poll_engine.results(poll)

    # ------------------------------------------------------------------
    # Realtime reconciliation
    # ------------------------------------------------------------------

    def handle_event(self, event: TransportEvent) -> None:
        """Apply one inbound transport event. Runs to completion."""
        if isinstance(event, RoomSnapshotEvent):
            self.apply_room_snapshot(event)
        elif isinstance(event, NewMessageEvent):
            self.apply_new_message(event)
        elif isinstance(event, MessageUpdatedEvent):
            self.apply_message_update(event)
        elif isinstance(event, ParticipantUpdatedEvent):
            self.apply_participant_update(event)
        elif isinstance(event, PollUpdatedEvent):
            self.apply_poll_update(event)
        elif isinstance(event, ParticipantJoinedEvent):
            self._apply_participants(event.room_id, event.participants)
        elif isinstance(event, ParticipantLeftEvent):
            self._apply_participants(event.room_id, event.participants)
        elif isinstance(event, TransportErrorEvent):
            self.last_error = event.message
            logger.warning("Transport error: %s", event.message)
        else:
            logger.debug("Ignoring unknown event %r", event)

    def _find_room(self, ref: str) -> Optional[Room]:
        return self.registry.find_by_id(ref) or self.registry.find_by_code(ref)

    def _merged_participants(self, room: Room, payloads) -> list[Participant]:
        """Remote participant list, keeping locally known moderation state."""
        merged = []
        for payload in payloads:
            incoming = payload_to_participant(payload)
            if incoming.id in room.banned_user_ids:
                continue
            local = room.participant(incoming.id)
            if local is not None:
                _merge_moderation(incoming, local.violations, local.silenced_until, local.banned)
            merged.append(incoming)
        return merged

    @staticmethod
    def _upsert_poll(room: Room, incoming: Poll, now) -> None:
        """Replace a poll by id in place; an active poll closes the others."""
        if incoming.is_active:
            for p in room.polls:
                if p.is_active and p.id != incoming.id:
                    p.is_active = False
                    p.closed_at = p.closed_at or now
        for i, p in enumerate(room.polls):
            if p.id == incoming.id:
                room.polls[i] = incoming
                return
        room.polls.append(incoming)

    def apply_room_snapshot(self, snapshot: RoomSnapshotEvent) -> Room:
        """Replace a room's messages and participants with the remote state."""
        room = self._find_room(snapshot.room_id) or self.registry.find_by_code(snapshot.code)
        now = self._now()
        if room is None:
            room = Room(
                id=snapshot.room_id,
                code=snapshot.code.upper(),
                name=snapshot.name,
                owner_id=snapshot.owner_id,
                owner_name=snapshot.owner_name,
                created_at=now,
            )

        room.participants = self._merged_participants(room, snapshot.participants)
        room.messages = [payload_to_message(m, room.id) for m in snapshot.messages]

        for payload in snapshot.polls:
            self._upsert_poll(room, payload_to_poll(payload, room.id), now)
        if snapshot.active_poll is not None:
            self._upsert_poll(room, payload_to_poll(snapshot.active_poll, room.id), now)

        user = self.identity.current
        if user is not None:
            participant = room.participant(user.id)
            if participant is not None:
                _merge_moderation(participant, user.violations, user.silenced_until, user.banned)

        room.updated_at = now
        room = self.registry.upsert(room)

        if room.id == self.current_room_id or room.code == self.current_room_code:
            if self.membership in (
                MembershipState.joining,
                MembershipState.reconciling,
                MembershipState.disconnected,
            ):
                self.membership = MembershipState.joined
            self.current_room_id = room.id
            self.current_room_code = room.code
            if user is not None:
                self._refresh_self(room)
        self._persist()
        logger.debug(
            "Applied snapshot for room %s: %d participant(s), %d message(s)",
            room.id,
            len(room.participants),
            len(room.messages),
        )
        return room

    def apply_new_message(self, event: NewMessageEvent) -> Optional[Message]:
        """Add a broadcast message, or confirm the pending local copy.

        The copy is found by id, or failing that by author and text for a
        server that assigns its own message ids.
        """
        room = self._find_room(event.room_id) or self._find_room(event.message.room_id)
        if room is None:
            logger.debug("Dropping message %s for unknown room %s", event.message.id, event.room_id)
            return None
        incoming = payload_to_message(event.message, room.id)
        index = next((i for i, m in enumerate(room.messages) if m.id == incoming.id), None)
        if index is None:
            index = next(
                (
                    i
                    for i, m in enumerate(room.messages)
                    if m.pending and m.author_id == incoming.author_id and m.text == incoming.text
                ),
                None,
            )
        if index is not None:
            room.messages[index] = incoming
        else:
            room.messages.append(incoming)
            room.last_activity = incoming.created_at
        room.updated_at = self._now()
        self.registry.commit(room)
        self._persist()
        return incoming

    def apply_message_update(self, event: MessageUpdatedEvent) -> Optional[Message]:
        """Take the server's copy of an edited or reacted-to message."""
        room = self._find_room(event.room_id) or self._find_room(event.message.room_id)
        if room is None:
            logger.debug("Dropping update of %s for unknown room %s", event.message.id, event.room_id)
            return None
        incoming = payload_to_message(event.message, room.id)
        for i, existing in enumerate(room.messages):
            if existing.id == incoming.id:
                room.messages[i] = incoming
                break
        else:
            logger.debug("Ignoring update of unknown message %s", incoming.id)
            return None
        room.updated_at = self._now()
        self.registry.commit(room)
        self._persist()
        return incoming

    def apply_participant_update(self, event: ParticipantUpdatedEvent) -> None:
        """Apply a moderation decision published through the room server.

        Unlike snapshots, an update is authoritative: it can lift a silence.
        """
        room = self._find_room(event.room_id)
        if room is None:
            logger.debug("Ignoring moderation update for unknown room %s", event.room_id)
            return
        incoming = event.user
        if incoming.banned:
            room.participants = [p for p in room.participants if p.id != incoming.id]
            room.banned_user_ids.add(incoming.id)
        else:
            participant = room.participant(incoming.id)
            if participant is None:
                logger.debug("Ignoring moderation update for unknown participant %s", incoming.id)
                return
            participant.violations = incoming.violations
            participant.silenced_until = incoming.silenced_until
        room.updated_at = self._now()
        self.registry.commit(room)

        user = self.identity.current
        if user is not None and user.id == incoming.id:
            updated = replace(user, violations=incoming.violations, silenced_until=incoming.silenced_until)
            if incoming.banned:
                updated.banned = True
                updated.ban_reason = user.ban_reason or BAN_REASON
                if room.id == self.current_room_id:
                    self._clear_current(MembershipState.left)
            if updated != user:
                self.identity.update(updated)
            logger.info("Own moderation state changed in room %s", room.id)
        self._persist()

    def apply_poll_update(self, event: PollUpdatedEvent) -> Optional[Poll]:
        """Take the server's copy of a poll, vote sets included."""
        room = self._find_room(event.room_id)
        if room is None:
            logger.debug("Ignoring poll update for unknown room %s", event.room_id)
            return None
        now = self._now()
        incoming = payload_to_poll(event.poll, room.id)
        self._upsert_poll(room, incoming, now)
        room.updated_at = now
        self.registry.commit(room)
        self._persist()
        return incoming

    def _apply_participants(self, room_ref: str, payloads) -> None:
        room = self._find_room(room_ref)
        if room is None:
            logger.debug("Ignoring participant update for unknown room %s", room_ref)
            return
        room.participants = self._merged_participants(room, payloads)
        room.updated_at = self._now()
        self.registry.commit(room)
        self._persist()

    async def resync(self) -> Optional[Room]:
        """Re-join the remembered room after a reconnect.

        On failure the local state is left exactly as it was and the
        :class:`TransportError` is raised for the caller to decide on a retry.
        """
        user = self.identity.current
        if self._transport is None or user is None or not self.current_room_code:
            return None
        previous = self.membership
        if previous == MembershipState.left:
            return None
        self.membership = (
            MembershipState.reconciling if previous == MembershipState.joined else MembershipState.joining
        )
        room = self.current_room
        try:
            if room is not None and room.is_owner(user.id):
                await self._transport.open_room(self._room_event(room))
            snapshot = await self._transport.join(self.current_room_code, identity_from_user(user))
        except TransportError as e:
            self.membership = previous
            raise self._fail(e) from None
        return self.apply_room_snapshot(snapshot)

    async def _on_transport_reconnect(self) -> None:
        try:
            await self.resync()
        except TransportError:
            # Already recorded in last_error; retry policy belongs to the caller.
            pass
