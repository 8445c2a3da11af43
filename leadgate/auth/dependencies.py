"""FastAPI dependencies guarding operator and job-trigger routes.

  require_session             — 401 unless a valid lr_session cookie is present
  require_machine_credential  — 401 unless the shared job-trigger secret is presented

Both raise AuthDenied, which short-circuits the handler before it runs. The
response body never says why the credential was rejected.
"""

from __future__ import annotations

from fastapi import Depends, Request

from leadgate.auth.machine import CRON_AUTH_ERROR_MESSAGE
from leadgate.models.errors import AuthDenied
from leadgate.services import Gatekeeper, get_gatekeeper
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)


async def require_session(
    request: Request,
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> None:
    if not gatekeeper.session_manager.has_valid_session(request):
        raise AuthDenied("Authentication required")


async def require_machine_credential(
    request: Request,
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> None:
    if not gatekeeper.machine_verifier.verify(request):
        logger.warning("machine_credential_denied", path=str(request.url.path))
        raise AuthDenied(CRON_AUTH_ERROR_MESSAGE)
