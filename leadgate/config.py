"""Config loading for leadgate.

Reads `.leadgate/config.yaml` (or `~/.leadgate/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. LEADGATE_CONFIG environment variable (if set)
  3. `.leadgate/config.yaml` (working directory — for development)
  4. `~/.leadgate/config.yaml` (home directory — for production deployments)

Secrets are NEVER read from the config file. They come from the environment:
  APP_PASSCODE, SESSION_SECRET, SUPABASE_SERVICE_ROLE_KEY
  (CRON_SECRET is read per verification by auth/machine.py, not here.)

Other environment overrides (take precedence over file values):
  LEADGATE_PORT                         — server.port
  SESSION_TTL_SECONDS                   — session.ttl_seconds
  SESSION_COOKIE_SECURE                 — session.cookie_secure ("false" disables Secure)
  AUTH_DISABLED_FOR_TESTS               — "true" bypasses session checks (tests only)
  RATE_LIMIT_DISABLED                   — "true" skips per-route rate limiting
  RATE_LIMIT_<ROUTE> / RATE_WINDOW_<ROUTE> — per-route quota overrides
  SUPABASE_URL (or VITE_SUPABASE_URL)   — selects the Supabase store
  LEADGATE_RATE_LIMIT_DB_PATH           — store.sqlite_path
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, NoReturn, Optional

import yaml

from leadgate.constants import (
    DEFAULT_MAX_CONFLICT_RETRIES,
    DEFAULT_RATE_LIMIT_DB_PATH,
    DEFAULT_SESSION_TTL_SECONDS,
    STORE_TIMEOUT_S,
)
from leadgate.ratelimit.policy import RoutePolicyTable, build_policy_table
from leadgate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (LEADGATE_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".leadgate/config.yaml",
    os.path.expanduser("~/.leadgate/config.yaml"),
]

_TRUE_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server binding configuration."""

    host: str = "127.0.0.1"
    port: int = 3000


@dataclass(frozen=True)
class SessionConfig:
    """Operator session configuration.

    passcode and signing_key are raw environment values; they are sanitised
    and validated at use by SessionManager, so a bad value surfaces as a
    ConfigError on the login path instead of refusing startup.
    """

    passcode: Optional[str] = field(default=None, repr=False)
    signing_key: Optional[str] = field(default=None, repr=False)
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS
    cookie_secure: bool = True
    auth_disabled_for_tests: bool = False


@dataclass(frozen=True)
class StoreConfig:
    """Rate-limit backing store configuration."""

    sqlite_path: str = DEFAULT_RATE_LIMIT_DB_PATH
    atomic_increment: bool = True
    max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES
    timeout_s: float = STORE_TIMEOUT_S
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = field(default=None, repr=False)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@dataclass(frozen=True)
class Config:
    """Root configuration object populated from .leadgate/config.yaml + environment.

    All fields have safe defaults — leadgate can start without any config file.
    Immutable after load; pass a new Config to create_app() to change behaviour.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    policies: RoutePolicyTable = field(default_factory=build_policy_table)
    rate_limit_disabled: bool = False
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file, no environment)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a malformed rate_limits or store section.
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=_int_setting("server.port", server_raw.get("port", 3000)),
        )

        # ── Session ───────────────────────────────────────────────────────────
        session_raw = raw.get("session") or {}
        session = SessionConfig(
            ttl_seconds=_int_setting(
                "session.ttl_seconds",
                session_raw.get("ttl_seconds", DEFAULT_SESSION_TTL_SECONDS),
            ),
            cookie_secure=bool(session_raw.get("cookie_secure", True)),
        )

        # ── Store ─────────────────────────────────────────────────────────────
        store_raw = raw.get("store") or {}
        store = StoreConfig(
            sqlite_path=store_raw.get("sqlite_path", DEFAULT_RATE_LIMIT_DB_PATH),
            atomic_increment=bool(store_raw.get("atomic_increment", True)),
            max_conflict_retries=_int_setting(
                "store.max_conflict_retries",
                store_raw.get("max_conflict_retries", DEFAULT_MAX_CONFLICT_RETRIES),
            ),
            timeout_s=float(store_raw.get("timeout_s", STORE_TIMEOUT_S)),
        )

        # ── Rate limits ───────────────────────────────────────────────────────
        try:
            policies = build_policy_table(file_overrides=raw.get("rate_limits") or {})
        except ValueError as exc:
            _fail(f"Invalid rate_limits section in {path}: {exc}")

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            session=session,
            store=store,
            policies=policies,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Load and validate leadgate configuration.

    Search order:
      1. ``config_path`` argument (if provided — for testing or explicit override)
      2. ``LEADGATE_CONFIG`` environment variable (if set)
      3. ``.leadgate/config.yaml`` (current working directory — for development)
      4. ``~/.leadgate/config.yaml`` (home directory — for production deployments)

    If no file is found at any of these paths, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).
    Environment overrides are applied afterwards in both cases.

    Args:
        config_path: Explicit config file path.
        environ:     Environment mapping (defaults to os.environ).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, or any invalid integer override.
    """
    env = os.environ if environ is None else environ

    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = env.get("LEADGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        return _apply_env_overrides(Config.defaults(), env)

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "leadgate refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = _apply_env_overrides(Config.from_dict(raw, path=found_path), env)

    # ── Security warnings ─────────────────────────────────────────────────────
    if not config.session.cookie_secure:
        logger.warning(
            "SECURITY WARNING: session cookies are issued without the Secure attribute. "
            "Only use session.cookie_secure: false for local HTTP development."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        routes=sorted(config.policies.as_dict()),
    )
    return config


def _apply_env_overrides(config: Config, env: Mapping[str, str]) -> Config:
    """Return a copy of config with environment overrides applied.

    Raises:
        SystemExit(1): If an integer override is invalid.
    """
    # ── Server ────────────────────────────────────────────────────────────────
    server = config.server
    env_port = env.get("LEADGATE_PORT")
    if env_port is not None:
        server = replace(server, port=_int_setting("LEADGATE_PORT", env_port))

    # ── Session ───────────────────────────────────────────────────────────────
    session = replace(
        config.session,
        passcode=env.get("APP_PASSCODE") or None,
        signing_key=env.get("SESSION_SECRET") or None,
        auth_disabled_for_tests=_env_flag(env, "AUTH_DISABLED_FOR_TESTS", False),
        cookie_secure=_env_flag(env, "SESSION_COOKIE_SECURE", config.session.cookie_secure),
    )
    env_ttl = env.get("SESSION_TTL_SECONDS")
    if env_ttl:
        session = replace(session, ttl_seconds=_int_setting("SESSION_TTL_SECONDS", env_ttl))

    # ── Store ─────────────────────────────────────────────────────────────────
    store = replace(
        config.store,
        supabase_url=env.get("SUPABASE_URL") or env.get("VITE_SUPABASE_URL") or None,
        supabase_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
    )
    env_db_path = env.get("LEADGATE_RATE_LIMIT_DB_PATH")
    if env_db_path:
        store = replace(store, sqlite_path=env_db_path)

    # ── Rate limits ───────────────────────────────────────────────────────────
    file_overrides = {
        route: {"limit": policy.limit, "window_seconds": policy.window_seconds}
        for route, policy in config.policies.as_dict().items()
    }
    try:
        policies = build_policy_table(file_overrides=file_overrides, environ=env)
    except ValueError as exc:
        _fail(f"Invalid rate limit override: {exc}")

    return replace(
        config,
        server=server,
        session=session,
        store=store,
        policies=policies,
        rate_limit_disabled=_env_flag(env, "RATE_LIMIT_DISABLED", False),
    )


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _fail(message: str) -> NoReturn:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


def _int_setting(name: str, raw: Any) -> int:
    """Parse a positive integer setting; SystemExit(1) when invalid."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        _fail(f"{name} is not a valid integer: '{raw}'")
    if value < 1:
        _fail(f"{name} must be a positive integer, got {value}")
    return value


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning("Unrecognised boolean environment value — using default", name=name, default=default)
    return default
