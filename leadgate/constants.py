"""Shared constants for leadgate.

Header names, cookie attributes, default quotas and store tuning knobs used
across modules are defined here. No magic numbers in other modules — import
from here.
"""

# ─── Rate limiting ────────────────────────────────────────────────────────────

# Built-in per-route quotas (requests per window). Overridden by the config
# file and then by RATE_LIMIT_<ROUTE> / RATE_WINDOW_<ROUTE> environment vars.
DEFAULT_ROUTE_LIMITS: dict[str, tuple[int, int]] = {
    "generate": (20, 3600),
    "status": (120, 3600),
    "signed-url": (60, 3600),
}

# Quota applied to any route absent from the table above.
FALLBACK_LIMIT: int = 60
FALLBACK_WINDOW_SECONDS: int = 3600

# Environment variable prefixes for per-route overrides.
RATE_LIMIT_ENV_PREFIX: str = "RATE_LIMIT_"
RATE_WINDOW_ENV_PREFIX: str = "RATE_WINDOW_"

# Caller identity = first 32 hex chars of sha256(session token).
CALLER_IDENTITY_HEX_LENGTH: int = 32

# Upper bound on optimistic-upsert retries before the limiter fails open.
# A request only loses a round when another request for the same key was
# counted, so N retries absorb a burst of N + 1 concurrent requests.
DEFAULT_MAX_CONFLICT_RETRIES: int = 50

# Jittered exponential backoff between optimistic-upsert retries.
CONFLICT_BACKOFF_BASE_S: float = 0.002
CONFLICT_BACKOFF_CAP_S: float = 0.05

# Retention for expired rate-limit windows pruned by the cron endpoint.
DEFAULT_RATE_LIMIT_RETENTION_HOURS: int = 24

# Quota-disclosure response headers.
HEADER_RATE_LIMIT_LIMIT: str = "X-RateLimit-Limit"
HEADER_RATE_LIMIT_REMAINING: str = "X-RateLimit-Remaining"
HEADER_RATE_LIMIT_RESET: str = "X-RateLimit-Reset"
HEADER_RETRY_AFTER: str = "Retry-After"

# ─── Backing store ────────────────────────────────────────────────────────────

RATE_LIMIT_TABLE: str = "rate_limits"
DEFAULT_RATE_LIMIT_DB_PATH: str = "~/.leadgate/rate_limits.db"

# Every Supabase round trip is wrapped in asyncio.wait_for(timeout=...).
STORE_TIMEOUT_S: float = 5.0

# ─── Sessions ─────────────────────────────────────────────────────────────────

SESSION_COOKIE_NAME: str = "lr_session"
DEFAULT_SESSION_TTL_SECONDS: int = 604_800  # 7 days

# HMAC-SHA256 signing keys shorter than this are rejected.
MIN_SESSION_SECRET_LENGTH: int = 32

# Per-IP cap on POST /api/auth/login (slowapi syntax).
LOGIN_RATE_LIMIT: str = "10/minute"

# ─── Machine credentials ─────────────────────────────────────────────────────

CRON_SECRET_ENV_VAR: str = "CRON_SECRET"
CRON_SECRET_HEADER: str = "x-cron-secret"
CRON_SECRET_QUERY_PARAM: str = "secret"
BEARER_PREFIX: str = "Bearer "

# ─── Tracing ──────────────────────────────────────────────────────────────────

HEADER_REQUEST_ID: str = "X-Request-ID"
