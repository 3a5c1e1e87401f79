"""Identity & session manager — owns the local user's login lifecycle."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from classchat.config import Limits
from classchat.errors import AuthorizationError, ConflictError, ValidationError
from classchat.identity.models import Role, User
from classchat.identity.names import generate_anonymous_name
from classchat.utils.clock import Clock, utcnow
from classchat.utils.ids import new_id

logger = logging.getLogger(__name__)


class IdentityManager:
    """Creates and destroys the local identity.

    The manager never touches rooms: the orchestrator coordinates anything
    that spans identity and room state (e.g. marking the user offline before
    logout).
    """

    def __init__(self, limits: Optional[Limits] = None, clock: Clock = utcnow) -> None:
        self._limits = limits or Limits()
        self._clock = clock
        self._user: Optional[User] = None

    @property
    def current(self) -> Optional[User]:
        """A copy of the logged-in user, or None."""
        return replace(self._user) if self._user else None

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    def require(self) -> User:
        """Return the logged-in user or raise :class:`AuthorizationError`."""
        if self._user is None:
            raise AuthorizationError("You must be logged in")
        return replace(self._user)

    def login(self, role: Role | str | None, display_name: Optional[str] = None) -> User:
        """Create a new identity.

        Students get a generated anonymous name; teachers must supply one.
        """
        if self._user is not None:
            raise ConflictError("Already logged in; log out first")
        if not role:
            raise ValidationError("Invalid role")
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Invalid role '{role}'") from None

        if role == Role.teacher:
            name = (display_name or "").strip()
            if not name:
                raise ValidationError("Please enter your name")
            if len(name) > self._limits.max_display_name_length:
                raise ValidationError(
                    f"Name must be at most {self._limits.max_display_name_length} characters"
                )
        else:
            name = generate_anonymous_name()

        now = self._clock()
        self._user = User(id=new_id(), role=role, display_name=name, created_at=now, last_active=now)
        logger.info("Logged in %s as %s", self._user.id, role.value)
        return replace(self._user)

    def logout(self) -> None:
        if self._user is not None:
            logger.info("Logged out %s", self._user.id)
        self._user = None

    def update(self, user: User) -> User:
        """Commit a new snapshot of the logged-in user."""
        if self._user is None or user.id != self._user.id:
            raise AuthorizationError("Cannot update a user that is not logged in")
        self._user = replace(user)
        return replace(self._user)

    def restore(self, user: Optional[User]) -> None:
        """Reinstate an identity loaded from the local snapshot."""
        self._user = replace(user) if user else None
