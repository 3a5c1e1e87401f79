"""Session — the orchestrator that composes identity, rooms, polls and moderation."""
