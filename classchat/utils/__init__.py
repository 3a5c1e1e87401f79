"""Small helpers shared across ClassChat packages."""
