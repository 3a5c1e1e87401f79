"""ClassChat — anonymous classroom Q&A sessions.

Teachers open rooms, students join with a short code, and everyone exchanges
messages, reactions and polls under content filtering and moderation.
"""

__version__ = "0.1.0"
