"""leadgate credential checks.

Public API:
  - SessionManager              — passcode check, signed session cookies (session.py)
  - MachineCredentialVerifier   — shared job-trigger secret check (machine.py)
  - env_secret_source()         — reads CRON_SECRET at call time (machine.py)
  - CRON_AUTH_ERROR_RESPONSE    — shared 401 body for job-trigger endpoints
  - RequestLike                 — headers + query_params capability interface

FastAPI dependencies (require_session, require_machine_credential) live in
leadgate.auth.dependencies; routes live in leadgate.auth.router.
"""

from __future__ import annotations

from leadgate.auth.machine import (
    CRON_AUTH_ERROR_RESPONSE,
    MachineCredentialVerifier,
    env_secret_source,
    extract_presented_secret,
)
from leadgate.auth.session import RequestLike, SessionManager

__all__ = [
    "CRON_AUTH_ERROR_RESPONSE",
    "MachineCredentialVerifier",
    "RequestLike",
    "SessionManager",
    "env_secret_source",
    "extract_presented_secret",
]
