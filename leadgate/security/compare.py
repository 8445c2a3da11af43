"""Timing-safe secret comparison shared by the session and machine-credential checks."""

from __future__ import annotations

import hmac


def safe_compare(candidate: str, expected: str) -> bool:
    """Compare two secrets without leaking the position of the first mismatch.

    Both strings are compared as UTF-8 bytes, so any Unicode content is handled.
    Unequal byte lengths return False immediately (the length is not secret);
    equal lengths are scanned in full by hmac.compare_digest().
    """
    candidate_bytes = candidate.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    if len(candidate_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(candidate_bytes, expected_bytes)
