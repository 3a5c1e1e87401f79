"""Escalation table — violation thresholds expressed as data.

Both penalty paths (a teacher silencing a participant, and the content
filter catching a message) add to the same per-user violation counter. Each
path has its own rule: how many violations one incident is worth, and which
penalty applies once the counter crosses a threshold.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml


class ViolationTrigger(Enum):
    """What caused a violation to be recorded."""

    MODERATOR = "moderator"  # Teacher silenced the user
    PROHIBITED = "prohibited"  # Message matched a prohibited term
    WARNING = "warning"  # Message matched a warning term


class PenaltyAction(Enum):
    """Penalty applied once a threshold is reached."""

    NONE = "none"
    SILENCE = "silence"
    BAN = "ban"

    @property
    def severity(self) -> int:
        return {PenaltyAction.NONE: 0, PenaltyAction.SILENCE: 1, PenaltyAction.BAN: 2}[self]


@dataclass(frozen=True)
class EscalationStep:
    """One row of a rule: at ``threshold`` violations, apply ``action``."""

    threshold: int
    action: PenaltyAction
    duration_minutes: Optional[int] = None  # None = use the requested duration
    min_requested_minutes: int = 0  # Step only applies to requests at least this long


@dataclass(frozen=True)
class EscalationDecision:
    """Result of evaluating a rule against a violation count."""

    violations: int
    action: PenaltyAction
    silence_minutes: Optional[int] = None
    step: Optional[EscalationStep] = None

    @property
    def banned(self) -> bool:
        return self.action == PenaltyAction.BAN

    @property
    def silenced(self) -> bool:
        return self.action == PenaltyAction.SILENCE


@dataclass
class EscalationRule:
    """Weight and thresholds for a single trigger."""

    trigger: ViolationTrigger
    weight: int
    steps: list[EscalationStep] = field(default_factory=list)
    description: str = ""

    def evaluate(
        self, current_violations: int, requested_minutes: Optional[int] = None
    ) -> EscalationDecision:
        """Add this rule's weight to *current_violations* and pick the penalty.

        The applicable step with the highest threshold wins; on equal
        thresholds the more severe action wins.
        """
        violations = max(0, current_violations) + self.weight
        requested = requested_minutes or 0

        applicable = [
            s
            for s in self.steps
            if violations >= s.threshold and requested >= s.min_requested_minutes
        ]
        if not applicable:
            return EscalationDecision(violations=violations, action=PenaltyAction.NONE)

        step = max(applicable, key=lambda s: (s.threshold, s.action.severity))
        minutes = None
        if step.action == PenaltyAction.SILENCE:
            minutes = step.duration_minutes if step.duration_minutes is not None else requested_minutes
        return EscalationDecision(
            violations=violations,
            action=step.action,
            silence_minutes=minutes,
            step=step,
        )


@dataclass
class EscalationTable:
    """The complete set of escalation rules, one per trigger."""

    rules: dict[ViolationTrigger, EscalationRule] = field(default_factory=dict)

    def rule(self, trigger: ViolationTrigger) -> EscalationRule:
        try:
            return self.rules[trigger]
        except KeyError:
            raise KeyError(f"No escalation rule configured for '{trigger.value}'") from None

    def evaluate(
        self,
        trigger: ViolationTrigger,
        current_violations: int,
        requested_minutes: Optional[int] = None,
    ) -> EscalationDecision:
        return self.rule(trigger).evaluate(current_violations, requested_minutes)


def default_escalation_table() -> EscalationTable:
    """Thresholds used by the classroom client."""
    return EscalationTable(
        rules={
            ViolationTrigger.MODERATOR: EscalationRule(
                trigger=ViolationTrigger.MODERATOR,
                weight=1,
                description="Teacher silence; long silences of repeat offenders become bans",
                steps=[
                    EscalationStep(threshold=0, action=PenaltyAction.SILENCE),
                    EscalationStep(threshold=4, action=PenaltyAction.BAN, min_requested_minutes=20),
                ],
            ),
            ViolationTrigger.PROHIBITED: EscalationRule(
                trigger=ViolationTrigger.PROHIBITED,
                weight=2,
                description="Prohibited term; message removed",
                steps=[EscalationStep(threshold=3, action=PenaltyAction.BAN)],
            ),
            ViolationTrigger.WARNING: EscalationRule(
                trigger=ViolationTrigger.WARNING,
                weight=1,
                description="Warning term; user warned",
                steps=[
                    EscalationStep(threshold=4, action=PenaltyAction.SILENCE, duration_minutes=60),
                    EscalationStep(threshold=6, action=PenaltyAction.BAN),
                ],
            ),
        }
    )


def parse_escalation_table(data: dict) -> EscalationTable:
    """Build a table from a ``{"rules": [...]}`` mapping.

    Triggers absent from *data* keep their default rule.
    """
    table = default_escalation_table()
    for rule_data in data.get("rules", []) or []:
        trigger = ViolationTrigger(rule_data["trigger"])
        steps = [
            EscalationStep(
                threshold=int(s["threshold"]),
                action=PenaltyAction(s.get("action", "none")),
                duration_minutes=s.get("duration_minutes"),
                min_requested_minutes=int(s.get("min_requested_minutes", 0)),
            )
            for s in rule_data.get("steps", [])
        ]
        table.rules[trigger] = EscalationRule(
            trigger=trigger,
            weight=int(rule_data.get("weight", 1)),
            steps=steps,
            description=rule_data.get("description", ""),
        )
    return table


def load_escalation_table(path: str | Path) -> EscalationTable:
    """Load an escalation table from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return parse_escalation_table(data)


def table_to_dict(table: EscalationTable) -> dict:
    return {
        "rules": [
            {
                "trigger": rule.trigger.value,
                "weight": rule.weight,
                "description": rule.description,
                "steps": [
                    {
                        "threshold": s.threshold,
                        "action": s.action.value,
                        "duration_minutes": s.duration_minutes,
                        "min_requested_minutes": s.min_requested_minutes,
                    }
                    for s in rule.steps
                ],
            }
            for rule in table.rules.values()
        ]
    }
