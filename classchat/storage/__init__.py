"""Storage — the local durable snapshot that stands in for a backing store."""
