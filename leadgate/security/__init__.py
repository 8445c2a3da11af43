"""leadgate secret handling.

Public API:
  - sanitize_byte_string() — clean a configured secret, raise ConfigError if unusable
  - mask_for_logging()     — redacted form for log lines
  - safe_compare()         — constant-time string comparison
  - ConfigError / ConfigErrorKind
"""

from __future__ import annotations

from leadgate.security.bytestring import (
    ConfigError,
    ConfigErrorKind,
    mask_for_logging,
    sanitize_byte_string,
)
from leadgate.security.compare import safe_compare

__all__ = [
    "ConfigError",
    "ConfigErrorKind",
    "mask_for_logging",
    "safe_compare",
    "sanitize_byte_string",
]
