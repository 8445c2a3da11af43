"""Machine-to-machine credential check for scheduled-job endpoints.

A single shared secret (CRON_SECRET) authorises job triggers. It is read on
every verification, not cached, so a rotated value takes effect on the next
request.

Transports, first match wins:
  1. Authorization: Bearer <secret>   (exact "Bearer " prefix, one space)
  2. x-cron-secret: <secret>
  3. ?secret=<secret>

Fail-closed: no configured secret, an unusable configured secret, a failing
secret source, or no presented credential all return False.
"""

from __future__ import annotations

import os
from typing import Callable, Optional

from leadgate.auth.session import RequestLike
from leadgate.constants import (
    BEARER_PREFIX,
    CRON_SECRET_ENV_VAR,
    CRON_SECRET_HEADER,
    CRON_SECRET_QUERY_PARAM,
)
from leadgate.models.errors import error_body
from leadgate.security.bytestring import ConfigError, sanitize_byte_string
from leadgate.security.compare import safe_compare
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

CRON_AUTH_ERROR_MESSAGE = "Invalid or missing cron secret"

# Shared 401 body for every job-trigger endpoint.
CRON_AUTH_ERROR_RESPONSE = error_body("unauthorized", CRON_AUTH_ERROR_MESSAGE)

SecretSource = Callable[[], Optional[str]]


def env_secret_source() -> Optional[str]:
    """Read CRON_SECRET from the process environment at call time."""
    return os.environ.get(CRON_SECRET_ENV_VAR)


def extract_presented_secret(request: RequestLike) -> Optional[str]:
    """Return the credential from the first transport that carries one."""
    authorization = request.headers.get("authorization")
    if authorization is not None and authorization.startswith(BEARER_PREFIX):
        return authorization[len(BEARER_PREFIX):]

    header_value = request.headers.get(CRON_SECRET_HEADER)
    if header_value is not None:
        return header_value

    return request.query_params.get(CRON_SECRET_QUERY_PARAM)


class MachineCredentialVerifier:
    """Verifies the shared job-trigger secret. Never raises.

    Usage:
        verifier = MachineCredentialVerifier()
        if not verifier.verify(request):
            return JSONResponse(CRON_AUTH_ERROR_RESPONSE, status_code=401)
    """

    def __init__(self, secret_source: SecretSource = env_secret_source) -> None:
        self._secret_source = secret_source

    def _configured_secret(self) -> Optional[str]:
        try:
            raw = self._secret_source()
        except Exception as exc:
            logger.warning(
                "cron_secret_source_failed",
                error_type=type(exc).__name__,
            )
            return None

        try:
            return sanitize_byte_string(raw, CRON_SECRET_ENV_VAR)
        except ConfigError as exc:
            logger.warning("cron_secret_not_configured", **exc.to_safe_context())
            return None

    def verify(self, request: RequestLike) -> bool:
        expected = self._configured_secret()
        if expected is None:
            return False

        presented = extract_presented_secret(request)
        if presented is None:
            return False
        return safe_compare(presented, expected)
