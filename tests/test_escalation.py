"""Tests for the escalation table."""

import tempfile
from pathlib import Path

import pytest
import yaml

from classchat.moderation.escalation import (
    PenaltyAction,
    ViolationTrigger,
    default_escalation_table,
    load_escalation_table,
    parse_escalation_table,
    table_to_dict,
)


def test_moderator_silence_below_threshold():
    table = default_escalation_table()
    decision = table.evaluate(ViolationTrigger.MODERATOR, 2, 20)
    assert decision.violations == 3
    assert decision.silenced
    assert decision.silence_minutes == 20


def test_moderator_ban_needs_long_silence():
    table = default_escalation_table()
    assert table.evaluate(ViolationTrigger.MODERATOR, 3, 20).banned
    short = table.evaluate(ViolationTrigger.MODERATOR, 3, 19)
    assert short.silenced
    assert short.silence_minutes == 19
    assert short.violations == 4


def test_prohibited_bans_on_second_offence():
    table = default_escalation_table()
    first = table.evaluate(ViolationTrigger.PROHIBITED, 0)
    assert first.violations == 2
    assert first.action == PenaltyAction.NONE
    second = table.evaluate(ViolationTrigger.PROHIBITED, first.violations)
    assert second.violations == 4
    assert second.banned


def test_warning_ladder():
    table = default_escalation_table()
    actions = []
    violations = 0
    for _ in range(6):
        decision = table.evaluate(ViolationTrigger.WARNING, violations)
        violations = decision.violations
        actions.append(decision.action)
    assert actions == [
        PenaltyAction.NONE,
        PenaltyAction.NONE,
        PenaltyAction.NONE,
        PenaltyAction.SILENCE,
        PenaltyAction.SILENCE,
        PenaltyAction.BAN,
    ]
    assert table.evaluate(ViolationTrigger.WARNING, 3).silence_minutes == 60


def test_shared_counter_across_triggers():
    table = default_escalation_table()
    # Two warnings then one prohibited term: 1 + 1 + 2 = 4 -> ban
    v = table.evaluate(ViolationTrigger.WARNING, 0).violations
    v = table.evaluate(ViolationTrigger.WARNING, v).violations
    assert table.evaluate(ViolationTrigger.PROHIBITED, v).banned


def test_parse_overrides_one_rule():
    table = parse_escalation_table(
        {
            "rules": [
                {
                    "trigger": "warning",
                    "weight": 2,
                    "steps": [{"threshold": 2, "action": "silence", "duration_minutes": 5}],
                }
            ]
        }
    )
    decision = table.evaluate(ViolationTrigger.WARNING, 0)
    assert decision.silenced
    assert decision.silence_minutes == 5
    # untouched triggers keep their defaults
    assert table.rule(ViolationTrigger.PROHIBITED).weight == 2
    assert len(table.rule(ViolationTrigger.MODERATOR).steps) == 2


def test_parse_rejects_unknown_trigger():
    with pytest.raises(ValueError):
        parse_escalation_table({"rules": [{"trigger": "spam", "steps": []}]})


def test_table_dict_survives_yaml_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "escalation.yaml"
        path.write_text(yaml.dump(table_to_dict(default_escalation_table())))

        loaded = load_escalation_table(path)
        assert loaded.evaluate(ViolationTrigger.MODERATOR, 3, 30).banned
        assert loaded.evaluate(ViolationTrigger.WARNING, 3).silence_minutes == 60
