"""Deterministic identifiers for synced entities.

The same native conversation always hashes to the same row id, which is what
lets re-extraction overwrite rather than duplicate.
"""

import hashlib

_ID_LENGTH = 32


def create_conversation_id(source: str, native_id: str) -> str:
    """Derive a conversation id from its source name and the tool's own id."""
    return create_deterministic_id(source, native_id)


def create_deterministic_id(*parts: str | int) -> str:
    """Hash colon-joined parts into a 32-character hex id."""
    joined = ":".join(str(part) for part in parts)
    return hashlib.sha256(joined.encode()).hexdigest()[:_ID_LENGTH]
