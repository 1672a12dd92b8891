"""Content fingerprints for change detection.

A fingerprint is the SHA-256 hex digest of a record's indexable text. It is
only used to decide whether a record changed since it was last indexed.
"""

import hashlib


def fingerprint(text: str) -> str:
    """Return the SHA-256 hex digest of ``text`` (UTF-8 encoded)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint_fields(*parts: str) -> str:
    """Fingerprint several fields joined by newlines, in the given order."""
    return fingerprint("\n".join(parts))
