"""File-based JSON snapshot of the local session.

Stores ``{current_user, current_room_id, membership, rooms}`` in
``<state_dir>/session.json``. The whole snapshot is rewritten on every
save, so repeated saves of the same state are harmless. A missing,
unreadable or malformed file loads as an empty session.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from classchat.rooms.serialization import dict_to_room, dict_to_user, room_to_dict, user_to_dict
from classchat.session.models import MembershipState, SessionSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class SnapshotStore:
    """Reads and writes the session snapshot."""

    FILE_NAME = "session.json"

    def __init__(self, base_dir: Optional[str | Path] = None) -> None:
        if base_dir is None:
            self._base = Path.home() / ".classchat"
        else:
            self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self.path = self._base / self.FILE_NAME

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_json(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Ignoring unreadable session snapshot %s: %s", self.path, e)
            return {}

    def _write_json(self, data: dict) -> None:
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str))
        os.replace(tmp, self.path)

    @staticmethod
    def _to_dict(snapshot: SessionSnapshot) -> dict:
        return {
            "version": SNAPSHOT_VERSION,
            "current_user": user_to_dict(snapshot.current_user) if snapshot.current_user else None,
            "current_room_id": snapshot.current_room_id,
            "current_room_code": snapshot.current_room_code,
            "membership": snapshot.membership.value,
            "rooms": [room_to_dict(r) for r in snapshot.rooms],
        }

    @staticmethod
    def _from_dict(data: dict) -> SessionSnapshot:
        user_data = data.get("current_user")
        try:
            membership = MembershipState(data.get("membership", "disconnected"))
        except ValueError:
            membership = MembershipState.disconnected
        return SessionSnapshot(
            current_user=dict_to_user(user_data) if user_data else None,
            current_room_id=data.get("current_room_id"),
            current_room_code=data.get("current_room_code"),
            membership=membership,
            rooms=[dict_to_room(r) for r in data.get("rooms", [])],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> SessionSnapshot:
        """Load the snapshot, or an empty one if there is nothing usable."""
        data = self._read_json()
        if not data:
            return SessionSnapshot()
        try:
            return self._from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Ignoring malformed session snapshot %s: %s", self.path, e)
            return SessionSnapshot()

    def save(self, snapshot: SessionSnapshot) -> None:
        self._write_json(self._to_dict(snapshot))

    def clear(self) -> bool:
        if self.path.exists():
            self.path.unlink()
            return True
        return False
