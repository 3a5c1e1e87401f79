"""Identifier and join-code generation."""

from __future__ import annotations

import secrets
import string
import uuid
from typing import Container

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def new_id() -> str:
    return str(uuid.uuid4())


def generate_room_code(existing: Container[str], length: int = 6) -> str:
    """Return a random uppercase alphanumeric code not present in *existing*."""
    while True:
        code = "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))
        if code not in existing:
            return code
