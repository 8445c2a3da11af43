"""Rate-limit store factory — backend selection and initialization.

Backend selection:
  1. SUPABASE_URL (or VITE_SUPABASE_URL) and SUPABASE_SERVICE_ROLE_KEY both set
     → SupabaseRateLimitStore
  2. Otherwise → LocalSQLiteRateLimitStore (default)

The service role key is sanitised with sanitize_byte_string() before it is
handed to the HTTP client. A key that fails sanitisation does NOT refuse
startup: the factory logs the safe error context and returns an
UnconfiguredRateLimitStore, so the limiter fails open and the cleanup
endpoint reports the store as unavailable.

PRAGMA version guard:
  LocalSQLiteRateLimitStore.initialize() raises RuntimeError on an unknown
  schema version. The FastAPI lifespan propagates it to refuse startup.
"""

from __future__ import annotations

from leadgate.config import StoreConfig
from leadgate.ratelimit.protocol import RateLimitStore, UnconfiguredRateLimitStore
from leadgate.security.bytestring import ConfigError, mask_for_logging, sanitize_byte_string
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

_SERVICE_KEY_LABEL = "SUPABASE_SERVICE_ROLE_KEY"


async def create_rate_limit_store(config: StoreConfig) -> RateLimitStore:
    """Create and initialize the appropriate rate-limit store.

    Args:
        config: Store section of the application Config.

    Returns:
        Initialized RateLimitStore instance ready for use.

    Raises:
        RuntimeError: If the local SQLite schema version is incompatible.
    """
    if config.supabase_configured:
        store = _build_supabase_store(config)
    else:
        store = _build_local_sqlite_store(config)

    await store.initialize()
    return store


def _build_supabase_store(config: StoreConfig) -> RateLimitStore:
    from leadgate.ratelimit.supabase_store import SupabaseRateLimitStore

    url = config.supabase_url or ""
    try:
        key = sanitize_byte_string(config.supabase_key, _SERVICE_KEY_LABEL)
    except ConfigError as exc:
        logger.error("rate_limit_store_config_error", **exc.to_safe_context())
        return UnconfiguredRateLimitStore(reason=f"{exc.label}: {exc.kind.value}")

    logger.info(
        "rate_limit_store_selected",
        backend="SupabaseRateLimitStore",
        service_key=mask_for_logging(key),
        supabase_host=url.split("//")[-1].split(".")[0] if "//" in url else "unknown",
    )
    return SupabaseRateLimitStore(url=url, key=key, timeout_s=config.timeout_s)


def _build_local_sqlite_store(config: StoreConfig) -> RateLimitStore:
    from leadgate.ratelimit.sqlite_store import LocalSQLiteRateLimitStore

    logger.info(
        "rate_limit_store_selected",
        backend="LocalSQLiteRateLimitStore",
        db_path=config.sqlite_path,
        atomic_increment=config.atomic_increment,
    )
    return LocalSQLiteRateLimitStore(
        db_path=config.sqlite_path,
        atomic_increment=config.atomic_increment,
    )
