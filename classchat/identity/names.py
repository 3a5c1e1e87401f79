"""Anonymous display names for students, e.g. ``"Codezilla 238"``."""

from __future__ import annotations

import random
from typing import Optional

ANONYMOUS_HANDLES: tuple[str, ...] = (
    "Codezilla", "BugHunter", "NullNinja", "PixelMage", "SyntaxSage",
    "LoopLord", "BitBandit", "StackSamurai", "Hackonaut", "CryptoCat",
    "SnappyDev", "JSJuggler", "NullPointer", "ByteRider", "AsyncAlien",
    "404Genius", "CaffeinatedCoder", "ReactRogue", "NodeNerd", "DevDruid",
    "CommitKing", "LintLegend", "GitGoblin", "VimViper", "TerminalTiger",
)


def generate_anonymous_name(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return f"{rng.choice(ANONYMOUS_HANDLES)} {rng.randrange(1000)}"
