"""Rooms — the registry that owns all room, message, poll and participant data."""
