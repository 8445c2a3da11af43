"""ByteString sanitisation for configured secrets and header values.

HTTP header values must be Latin-1 (every code point <= 255). Secrets pasted
into a hosting dashboard frequently carry an invisible UTF-8 BOM (U+FEFF) or
trailing whitespace, which breaks outbound requests and makes literal
comparisons fail for no visible reason. Every secret read from configuration
goes through sanitize_byte_string() before it is used.

Security invariants:
  - ConfigError messages, hints and to_safe_context() NEVER contain the raw value.
  - mask_for_logging() reveals at most the first 3 and last 3 characters.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional

# Edge characters removed before validation: tab, line breaks, space,
# no-break and typographic spaces, line/paragraph separators and BOM.
# Narrower than re's \s, which also matches U+001C..U+001F and NEL (U+0085);
# those are kept and reach validation unchanged.
_TRIM_CHARS = (
    "\t\n\x0b\x0c\r \u00a0\u1680\u2000-\u200a"
    "\u2028\u2029\u202f\u205f\u3000\ufeff"
)
_EDGE_RE = re.compile(f"^[{_TRIM_CHARS}]+|[{_TRIM_CHARS}]+$")

#: Highest code point representable in a single-byte header value.
_MAX_BYTE_CODE_POINT = 255

#: Placeholder returned by mask_for_logging() for short values.
MASK_PLACEHOLDER = "***"


class ConfigErrorKind(str, Enum):
    """Machine-readable configuration failure kinds."""

    CONFIG_MISSING = "CONFIG_MISSING"
    CONFIG_EMPTY = "CONFIG_EMPTY"
    INVALID_HEADER_VALUE = "INVALID_HEADER_VALUE"
    CONFIG_TOO_SHORT = "CONFIG_TOO_SHORT"


class ConfigError(Exception):
    """Raised when a configured value cannot be used safely.

    HTTP mapping: 500 with code='config_error' (or 'server_config_error' on the
    login route). The response body never includes the detail; handlers log
    to_safe_context() server-side instead.
    """

    def __init__(
        self,
        kind: ConfigErrorKind,
        label: str,
        message: str,
        hint: str,
        invalid_char_index: Optional[int] = None,
        invalid_char_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.label = label
        self.message = message
        self.hint = hint
        self.invalid_char_index = invalid_char_index
        self.invalid_char_code = invalid_char_code

    def to_safe_context(self) -> dict[str, Any]:
        """Return a log/JSON-safe projection of the error (never the raw value)."""
        context: dict[str, Any] = {
            "kind": self.kind.value,
            "label": self.label,
            "hint": self.hint,
        }
        if self.invalid_char_index is not None:
            context["invalid_char_index"] = self.invalid_char_index
            context["invalid_char_code"] = self.invalid_char_code
        return context


def sanitize_byte_string(raw: Optional[str], label: str) -> str:
    """Clean a configured string so it is safe as a header value or comparison target.

    Steps:
      1. None or "" → ConfigError(CONFIG_MISSING)
      2. Strip leading BOMs and surrounding whitespace
      3. Nothing left → ConfigError(CONFIG_EMPTY)
      4. Any code point > 255 → ConfigError(INVALID_HEADER_VALUE) carrying the
         first offending index and its code point

    Args:
        raw:   The raw value (e.g. from os.environ). May be None.
        label: Human-readable name for error messages (e.g. "CRON_SECRET").

    Returns:
        The cleaned string. sanitize_byte_string(result, label) == result.

    Raises:
        ConfigError: On any of the failure conditions above.
    """
    if not raw:
        raise ConfigError(
            ConfigErrorKind.CONFIG_MISSING,
            label=label,
            message=f"{label} is not configured",
            hint=f"Set {label} in environment variables and redeploy.",
        )

    cleaned = _EDGE_RE.sub("", raw)

    if not cleaned:
        raise ConfigError(
            ConfigErrorKind.CONFIG_EMPTY,
            label=label,
            message=f"{label} is empty after sanitization",
            hint=f"Re-set {label} in environment variables (was only whitespace/BOM).",
        )

    for index, char in enumerate(cleaned):
        code = ord(char)
        if code > _MAX_BYTE_CODE_POINT:
            raise ConfigError(
                ConfigErrorKind.INVALID_HEADER_VALUE,
                label=label,
                message=(
                    f"{label} contains non-Latin1 characters; "
                    "remove invisible characters and re-set the variable"
                ),
                hint=(
                    f"Re-copy {label} from source (avoid rich text editors). "
                    f"Character at index {index} has code {code}."
                ),
                invalid_char_index=index,
                invalid_char_code=code,
            )

    return cleaned


def mask_for_logging(value: str) -> str:
    """Mask a value for logs: first 3 + '…' + last 3, or '***' for short values."""
    if len(value) <= 6:
        return MASK_PLACEHOLDER
    return f"{value[:3]}…{value[-3:]}"
