"""Realtime — transport events, the transport interface and its implementations."""
