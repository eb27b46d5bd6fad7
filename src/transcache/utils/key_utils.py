from __future__ import annotations

MAX_KEY_LENGTH = 512


def validate_key(key: str | None) -> str:
    """Validate that key is a non-empty string without surrounding whitespace.

    Keys are used verbatim by every backend, so "cache_a" and " cache_a" would
    otherwise be two different items.
    """
    if key is None:
        raise ValueError("key is required")
    if not isinstance(key, str) or not key:
        raise ValueError("key must be a non-empty string")
    if key != key.strip():
        raise ValueError("key must not have leading or trailing whitespace")
    if len(key) > MAX_KEY_LENGTH:
        raise ValueError(f"key must be at most {MAX_KEY_LENGTH} characters")
    return key
