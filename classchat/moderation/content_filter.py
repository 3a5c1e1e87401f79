"""Content policy filter for chat messages.

Classifies text against two disjoint term lists: *prohibited* terms (the
message is removed and the author heavily penalised) and *warning* terms
(the author is warned). Matching is whole-word on a normalised copy of the
text, so "classic" never trips a filter for "ass".
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import yaml

# ---------------------------------------------------------------------------
# Term lists
# ---------------------------------------------------------------------------

DEFAULT_PROHIBITED_TERMS: tuple[str, ...] = (
    # Self-harm and suicide
    "kill myself", "suicide", "end my life", "want to die", "end it all",
    "cut myself", "self-harm", "self harm", "hang myself", "jump off",
    "overdose", "od on", "swallow pills", "cutting myself",
    # Violence and threats
    "kill you", "hurt you", "shoot up", "bomb", "terrorist", "shoot you",
    "stab you", "attack you", "beat you", "hit you", "punch you",
    # Extremely offensive content
    "nigger", "faggot", "chink", "spic", "kike", "raghead",
    "pedo", "pedophile", "child porn", "cp", "loli", "shota",
    # Doxing and personal info
    "my address is", "phone number", "social security", "ssn", "credit card",
    "bank account", "home address", "personal info", "private info",
)

DEFAULT_WARNING_TERMS: tuple[str, ...] = (
    # English slurs and vulgarity
    "fuck", "fucking", "shit", "bitch", "bastard", "asshole", "dick", "piss",
    "cock", "cunt", "pussy", "motherfucker", "slut", "whore", "twat",
    "stupid", "idiot", "dumb", "loser", "suck", "crap", "shut up", "moron",
    "kill yourself", "die", "go to hell", "hang yourself",
    # Hate speech
    "nigga", "fag", "retard", "tranny", "dyke", "homo", "queer",
    # Romanised Hindi abuse
    "bhosdi", "bhosdike", "madarchod", "behenchod", "chutiya", "chutiye", "gandu",
    "lund", "gaand", "bhenchod", "mc", "bc", "randi", "chinal", "kamina", "harami",
    "kutte", "kaminey", "gaand mara", "chodu", "lavde", "launde", "chod", "gandfat",
    "jhant", "jhatu", "jhantichat", "lodu", "tatti", "madharchod", "chut", "chodna",
    "jhaatu", "jhaant", "jhantichod", "teri maa", "teri behen", "gand", "gandmara",
    "kutti", "kutta", "launda", "gand mein", "bhen ke", "maa ke", "lode", "lund le",
)

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def normalize(text: str) -> str:
    """Case-fold and collapse every run of non-alphanumerics to one space."""
    return _NON_ALNUM.sub(" ", text.casefold()).strip()


def _compile(terms: Iterable[str]) -> list[re.Pattern[str]]:
    patterns = []
    seen: set[str] = set()
    for term in terms:
        norm = normalize(term)
        if not norm or norm in seen:
            continue
        seen.add(norm)
        # Normalised text only contains [0-9a-z ], so alphanumeric lookarounds
        # are the word boundary.
        patterns.append(re.compile(rf"(?<![0-9a-z]){re.escape(norm)}(?![0-9a-z])"))
    return patterns


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentVerdict:
    """Result of classifying a piece of text."""

    prohibited: bool = False
    warning: bool = False

    @property
    def clean(self) -> bool:
        return not (self.prohibited or self.warning)


class ContentFilter:
    """Stateless classifier over a prohibited list and a warning list."""

    def __init__(
        self,
        prohibited_terms: Iterable[str] = DEFAULT_PROHIBITED_TERMS,
        warning_terms: Iterable[str] = DEFAULT_WARNING_TERMS,
    ) -> None:
        self.prohibited_terms = tuple(prohibited_terms)
        self.warning_terms = tuple(warning_terms)
        self._prohibited = _compile(self.prohibited_terms)
        self._warning = _compile(self.warning_terms)

    @staticmethod
    def _matches(patterns: list[re.Pattern[str]], text: str) -> bool:
        return any(p.search(text) for p in patterns)

    def classify(self, text: str) -> ContentVerdict:
        """Classify *text*. Prohibited matches take precedence over warnings."""
        norm = normalize(text)
        if self._matches(self._prohibited, norm):
            return ContentVerdict(prohibited=True, warning=False)
        return ContentVerdict(prohibited=False, warning=self._matches(self._warning, norm))


def filter_from_dict(data: dict) -> ContentFilter:
    """Build a filter from a mapping with ``prohibited`` and ``warning`` lists.

    A missing list falls back to the built-in defaults.
    """
    if not isinstance(data, dict):
        raise ValueError("Content policy must be a mapping of term lists")
    return ContentFilter(
        prohibited_terms=data.get("prohibited") or DEFAULT_PROHIBITED_TERMS,
        warning_terms=data.get("warning") or DEFAULT_WARNING_TERMS,
    )


def load_term_lists(path: str | Path) -> ContentFilter:
    """Build a filter from a YAML file of term lists."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return filter_from_dict(data)
