"""State layer.

Conflict policy, change events and the write lock: the single source of
truth for how remote changes are merged into a session's local tree.
"""
