"""Exception taxonomy for ClassChat.

Every operation that cannot complete raises one of these instead of silently
doing nothing. The message of each exception is safe to show to the user.
"""

from __future__ import annotations

from typing import Optional


class ClassChatError(Exception):
    """Base exception for all ClassChat errors."""


class ValidationError(ClassChatError):
    """Raised when user input is malformed (empty, too long, unknown option)."""


class ConflictError(ClassChatError):
    """Raised when an action would break an invariant, e.g. a second active room."""


class AuthorizationError(ClassChatError):
    """Raised when the acting user lacks the role or ownership required."""


class NotFoundError(ClassChatError):
    """Raised when a referenced entity does not exist."""


class RoomNotFoundError(NotFoundError):
    """Raised when a room cannot be found by id or code."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Room '{ref}' not found")


class PollNotFoundError(NotFoundError):
    """Raised when a poll id is unknown in the current room."""

    def __init__(self, poll_id: str):
        self.poll_id = poll_id
        super().__init__(f"Poll '{poll_id}' not found")


class MessageNotFoundError(NotFoundError):
    """Raised when a message id is unknown in the current room."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message '{message_id}' not found")


class NotInRoomError(ClassChatError):
    """Raised when an action needs a room but the user is not in one."""

    def __init__(self, message: str = "You must be in a room to do that"):
        super().__init__(message)


class SilencedError(ClassChatError):
    """Raised when a silenced user tries to post."""

    def __init__(self, remaining_minutes: int):
        self.remaining_minutes = remaining_minutes
        super().__init__(f"You are silenced for {remaining_minutes} more minutes")


class BannedError(ClassChatError):
    """Raised when a banned user tries to post or rejoin."""

    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(reason or "You have been banned from this room")


class ContentRejectedError(ClassChatError):
    """Raised when a message is blocked by the content policy.

    ``warning`` is set when only lower-severity terms matched, ``silenced``
    when the violation also triggered an automatic silence.
    """

    def __init__(self, message: str, *, warning: bool = False, silenced: bool = False):
        self.warning = warning
        self.silenced = silenced
        super().__init__(message)


class TransportError(ClassChatError):
    """Raised when the realtime transport fails. Retrying is safe."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
