"""Prefixed ID generation.

Public-facing IDs use a ``{prefix}_{random}`` format so their origin is
obvious at a glance:

- ``tj_a8Kx3nQ9mP2r``   -- chunked transcription job
- ``req_L7wBd4Fj9Ks2``  -- one chat request, used in logs

Provider-issued IDs (``thread_...``, ``assistant-...``) are kept as-is.
"""

import secrets
import string

_ALPHABET = string.ascii_letters + string.digits
_DEFAULT_LENGTH = 12


def generate_id(prefix: str, length: int = _DEFAULT_LENGTH) -> str:
    """Return ``"{prefix}_{random}"`` with *length* alphanumeric characters."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(length))
    return f"{prefix}_{suffix}"
