"""Tests for settings loading."""

import tempfile
from pathlib import Path

import pytest
import yaml

from classchat.config import CONFIG_ENV, STATE_DIR_ENV, Settings, load_settings, settings_from_dict
from classchat.moderation.escalation import ViolationTrigger


def test_defaults():
    settings = Settings()
    assert settings.limits.max_message_length == 1000
    assert settings.limits.room_code_length == 6
    assert settings.limits.max_reactions_per_user == 5
    assert not settings.deliver_warned_messages
    assert settings.content_filter.classify("bomb").prohibited


def test_settings_from_dict():
    settings = settings_from_dict(
        {
            "limits": {"max_message_length": 200, "max_poll_options": 6},
            "deliver_warned_messages": True,
            "content_policy": {"warning": ["heck"]},
            "escalation": {
                "rules": [
                    {"trigger": "prohibited", "weight": 5, "steps": [{"threshold": 5, "action": "ban"}]}
                ]
            },
            "join_timeout_seconds": 2,
        }
    )
    assert settings.limits.max_message_length == 200
    assert settings.limits.max_poll_options == 6
    assert settings.limits.max_room_name_length == 50
    assert settings.deliver_warned_messages
    assert settings.content_filter.classify("heck").warning
    assert settings.content_filter.classify("bomb").prohibited
    assert settings.escalation.evaluate(ViolationTrigger.PROHIBITED, 0).banned
    assert settings.join_timeout_seconds == 2.0


def test_unknown_limit_rejected():
    with pytest.raises(ValueError):
        settings_from_dict({"limits": {"max_emoji": 3}})


def test_load_settings_from_env(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "classchat.yaml"
        path.write_text(yaml.dump({"limits": {"max_message_length": 42}, "state_dir": "/tmp/from-file"}))
        monkeypatch.setenv(CONFIG_ENV, str(path))
        monkeypatch.setenv(STATE_DIR_ENV, str(Path(tmpdir) / "state"))

        settings = load_settings()
        assert settings.limits.max_message_length == 42
        assert settings.state_dir == Path(tmpdir) / "state"


def test_load_settings_without_file(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV, raising=False)
    monkeypatch.delenv(STATE_DIR_ENV, raising=False)
    settings = load_settings()
    assert settings.limits.max_message_length == 1000
    assert settings.state_dir == Path.home() / ".classchat"


def test_config_must_be_mapping():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "bad.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_settings(path)


def test_content_policy_from_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "terms.yaml"
        path.write_text(yaml.dump({"warning": ["heck"]}))
        settings = settings_from_dict({"content_policy": str(path)})
        assert settings.content_filter.classify("oh heck").warning
        assert settings.content_filter.classify("bomb").prohibited


def test_content_policy_must_be_term_lists():
    with pytest.raises(ValueError):
        settings_from_dict({"content_policy": ["heck"]})
