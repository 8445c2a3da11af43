"""Route limit policies — resolved once at startup, read-only afterwards.

Precedence for every route (highest first):
  1. RATE_LIMIT_<ROUTE> / RATE_WINDOW_<ROUTE> environment variables
  2. rate_limits: section of .leadgate/config.yaml
  3. DEFAULT_ROUTE_LIMITS built-in table
  4. FALLBACK_LIMIT / FALLBACK_WINDOW_SECONDS

<ROUTE> is the route key upper-cased with '-' replaced by '_'
(e.g. 'signed-url' → RATE_LIMIT_SIGNED_URL). Limit and window may be
overridden independently; the other half comes from the next layer down.
Prefixed variables whose suffix names no known route and whose value is not
an integer (RATE_LIMIT_STRATEGY=redis) are not overrides and are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

from leadgate.constants import (
    DEFAULT_ROUTE_LIMITS,
    FALLBACK_LIMIT,
    FALLBACK_WINDOW_SECONDS,
    RATE_LIMIT_ENV_PREFIX,
    RATE_WINDOW_ENV_PREFIX,
)
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

# Environment keys that share the RATE_LIMIT_ prefix but are not route overrides.
_RESERVED_ENV_KEYS: frozenset[str] = frozenset({"RATE_LIMIT_DISABLED"})


@dataclass(frozen=True)
class RoutePolicy:
    """Fixed-window quota for one route: `limit` requests per `window_seconds`."""

    limit: int
    window_seconds: int

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


FALLBACK_POLICY = RoutePolicy(limit=FALLBACK_LIMIT, window_seconds=FALLBACK_WINDOW_SECONDS)


def normalize_route_key(route_key: str) -> str:
    """'signed-url' → 'SIGNED_URL' (the form used in environment variable names)."""
    return route_key.upper().replace("-", "_")


class RoutePolicyTable:
    """Immutable route_key → RoutePolicy lookup with a global fallback."""

    def __init__(
        self,
        policies: Mapping[str, RoutePolicy],
        fallback: RoutePolicy = FALLBACK_POLICY,
    ) -> None:
        self._policies: Mapping[str, RoutePolicy] = MappingProxyType(
            {normalize_route_key(key): policy for key, policy in policies.items()}
        )
        self._fallback = fallback

    def resolve(self, route_key: str) -> RoutePolicy:
        """Return the policy for route_key, or the fallback for unknown routes."""
        return self._policies.get(normalize_route_key(route_key), self._fallback)

    @property
    def fallback(self) -> RoutePolicy:
        return self._fallback

    def as_dict(self) -> dict[str, RoutePolicy]:
        return dict(self._policies)

    def __contains__(self, route_key: object) -> bool:
        return isinstance(route_key, str) and normalize_route_key(route_key) in self._policies


def _parse_positive_int(name: str, raw: Any) -> int:
    """Parse a positive integer or raise ValueError naming the offending key."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a positive integer, got {raw!r}") from None
    if value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def _looks_like_int(raw: Any) -> bool:
    try:
        int(raw)
    except (TypeError, ValueError):
        return False
    return True


def build_policy_table(
    file_overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RoutePolicyTable:
    """Merge built-in defaults, config-file overrides and environment overrides.

    Args:
        file_overrides: Parsed ``rate_limits:`` section, e.g.
                        ``{"generate": {"limit": 10, "window_seconds": 600}}``.
        environ:        Environment mapping (os.environ in production).

    Returns:
        RoutePolicyTable covering every route mentioned in any layer.

    Raises:
        ValueError: If an override of a known route, or an integer-valued
                    override of a new route, is not a positive integer.
    """
    limits: dict[str, int] = {}
    windows: dict[str, int] = {}

    for route_key, (limit, window_seconds) in DEFAULT_ROUTE_LIMITS.items():
        key = normalize_route_key(route_key)
        limits[key] = limit
        windows[key] = window_seconds

    for route_key, section in (file_overrides or {}).items():
        key = normalize_route_key(route_key)
        if not isinstance(section, Mapping):
            raise ValueError(f"rate_limits.{route_key} must be a mapping")
        if "limit" in section:
            limits[key] = _parse_positive_int(f"rate_limits.{route_key}.limit", section["limit"])
        if "window_seconds" in section:
            windows[key] = _parse_positive_int(
                f"rate_limits.{route_key}.window_seconds", section["window_seconds"]
            )

    known_routes = set(limits) | set(windows)
    for name, raw in (environ or {}).items():
        if name in _RESERVED_ENV_KEYS:
            continue
        if name.startswith(RATE_LIMIT_ENV_PREFIX):
            target, key = limits, name[len(RATE_LIMIT_ENV_PREFIX):]
        elif name.startswith(RATE_WINDOW_ENV_PREFIX):
            target, key = windows, name[len(RATE_WINDOW_ENV_PREFIX):]
        else:
            continue
        if not key:
            continue
        if key not in known_routes and not _looks_like_int(raw):
            # Shares the prefix but is not a route override (e.g. RATE_LIMIT_STRATEGY).
            logger.warning("rate_limit_env_ignored", name=name)
            continue
        target[key] = _parse_positive_int(name, raw)

    policies = {
        key: RoutePolicy(
            limit=limits.get(key, FALLBACK_POLICY.limit),
            window_seconds=windows.get(key, FALLBACK_POLICY.window_seconds),
        )
        for key in set(limits) | set(windows)
    }
    return RoutePolicyTable(policies)
