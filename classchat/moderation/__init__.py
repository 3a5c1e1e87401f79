"""Moderation — content filtering, escalation thresholds and teacher actions."""
