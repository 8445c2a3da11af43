"""Job-trigger endpoints for rate-limit maintenance.

Provides:
  GET /api/cron/rate-limits/cleanup — delete windows older than retentionHours

Authentication (require_machine_credential):
  - Scheduler: Authorization: Bearer <CRON_SECRET>
  - Manual trigger: x-cron-secret header or ?secret= query param

Query params:
  - retentionHours=N  (default 24, must be >= 1)
  - dryRun=1|true     (report the run without deleting)

Response:
  {ok, runId, dryRun, retentionHours, deleted}
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from leadgate.auth.dependencies import require_machine_credential
from leadgate.constants import DEFAULT_RATE_LIMIT_RETENTION_HOURS
from leadgate.models.errors import build_error_response
from leadgate.ratelimit.protocol import StoreUnavailable
from leadgate.services import Gatekeeper, get_gatekeeper
from leadgate.utils.logger import get_logger
from leadgate.utils.ulid import generate_ulid

logger = get_logger(__name__)

router = APIRouter(tags=["cron"], dependencies=[Depends(require_machine_credential)])

_TRUTHY_FLAGS = frozenset({"1", "true"})


@router.get("/cron/rate-limits/cleanup")
async def cleanup_rate_limits(
    retention_hours: Optional[str] = Query(None, alias="retentionHours"),
    dry_run: Optional[str] = Query(None, alias="dryRun"),
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> JSONResponse:
    """Prune expired rate-limit windows from the backing store."""
    hours = DEFAULT_RATE_LIMIT_RETENTION_HOURS
    if retention_hours is not None:
        try:
            hours = int(retention_hours)
        except ValueError:
            hours = 0
        if hours < 1:
            return build_error_response(400, "invalid_param", "retentionHours must be >= 1")

    is_dry_run = (dry_run or "").lower() in _TRUTHY_FLAGS
    run_id = generate_ulid()

    deleted = 0
    if not is_dry_run:
        try:
            deleted = await gatekeeper.store.prune_expired(hours)
        except StoreUnavailable as exc:
            logger.error("rate_limit_cleanup_failed", run_id=run_id, error=str(exc))
            return build_error_response(503, "store_unavailable", "Rate limit store unavailable")

    logger.info(
        "rate_limit_cleanup_run",
        run_id=run_id,
        dry_run=is_dry_run,
        retention_hours=hours,
        deleted=deleted,
    )
    return JSONResponse(
        content={
            "ok": True,
            "runId": run_id,
            "dryRun": is_dry_run,
            "retentionHours": hours,
            "deleted": deleted,
        }
    )
