"""Identity — the local, anonymous user of a session.

Identities live only in memory (and the local snapshot); no real-world
identity is ever recorded.
"""
