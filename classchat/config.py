"""Configuration for ClassChat.

Defaults reproduce the classroom client's behaviour. A YAML file can
override any part of it::

    limits:
      max_message_length: 500
    deliver_warned_messages: true
    content_policy:
      warning: [darn, heck]
    join_timeout_seconds: 5
    escalation:
      rules:
        - trigger: warning
          weight: 1
          steps:
            - {threshold: 3, action: silence, duration_minutes: 30}

``content_policy`` may instead name a YAML file holding the term lists.
``join_timeout_seconds`` bounds how long a Socket.IO join waits for the room
state. ``CLASSCHAT_CONFIG`` points at such a file and ``CLASSCHAT_STATE_DIR``
overrides where the local session snapshot is kept.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from classchat.moderation.content_filter import ContentFilter, filter_from_dict, load_term_lists
from classchat.moderation.escalation import (
    EscalationTable,
    default_escalation_table,
    parse_escalation_table,
)

CONFIG_ENV = "CLASSCHAT_CONFIG"
STATE_DIR_ENV = "CLASSCHAT_STATE_DIR"


@dataclass
class Limits:
    """Input limits and sizing constants."""

    max_message_length: int = 1000
    max_room_name_length: int = 50
    max_display_name_length: int = 30
    max_poll_question_length: int = 200
    max_poll_option_length: int = 100
    min_poll_options: int = 2
    max_poll_options: int = 4
    max_reactions_per_user: int = 5
    max_reaction_length: int = 4
    room_code_length: int = 6
    snapshot_message_tail: int = 50


def default_state_dir() -> Path:
    env = os.environ.get(STATE_DIR_ENV)
    return Path(env) if env else Path.home() / ".classchat"


@dataclass
class Settings:
    """Everything the session core needs to know about policy and limits."""

    limits: Limits = field(default_factory=Limits)
    escalation: EscalationTable = field(default_factory=default_escalation_table)
    content_filter: ContentFilter = field(default_factory=ContentFilter)
    # Warning-tier messages are held back unless this is set.
    deliver_warned_messages: bool = False
    join_timeout_seconds: float = 10.0
    state_dir: Path = field(default_factory=default_state_dir)


def _limits_from_dict(data: dict) -> Limits:
    known = {f.name for f in fields(Limits)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown limit(s) in config: {', '.join(sorted(unknown))}")
    return Limits(**{k: int(v) for k, v in data.items()})


def settings_from_dict(data: dict) -> Settings:
    """Build :class:`Settings` from a parsed config mapping."""
    settings = Settings()
    if data.get("limits"):
        settings.limits = _limits_from_dict(data["limits"])
    if data.get("escalation"):
        settings.escalation = parse_escalation_table(data["escalation"])
    policy = data.get("content_policy")
    if isinstance(policy, str):
        settings.content_filter = load_term_lists(Path(policy).expanduser())
    elif policy:
        settings.content_filter = filter_from_dict(policy)
    if "deliver_warned_messages" in data:
        settings.deliver_warned_messages = bool(data["deliver_warned_messages"])
    if "join_timeout_seconds" in data:
        settings.join_timeout_seconds = float(data["join_timeout_seconds"])
    if data.get("state_dir"):
        settings.state_dir = Path(data["state_dir"]).expanduser()
    return settings


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """Load settings from *path*, ``$CLASSCHAT_CONFIG``, or the defaults."""
    path = path or os.environ.get(CONFIG_ENV)
    if not path:
        return Settings()
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    settings = settings_from_dict(data)
    # The environment wins over the file for the state directory.
    if os.environ.get(STATE_DIR_ENV):
        settings.state_dir = default_state_dir()
    return settings
