import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

_TRUTHY = {"1", "true", "yes"}


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool_env(name: str, default: bool) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in _TRUTHY


def _get_list_env(name: str, default: list[str]) -> list[str]:
    """Parse a comma-separated environment variable into a list of non-empty items."""
    value = _get_env_var(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _derive_loki_query_url(push_url: str | None) -> str:
    """Build a Loki query endpoint from the configured push endpoint."""
    default_query = "http://loki:3100/loki/api/v1/query_range"
    if not push_url:
        return default_query

    normalized = push_url.rstrip("/")
    push_suffix = "/loki/api/v1/push"
    if normalized.endswith(push_suffix):
        normalized = normalized[: -len(push_suffix)]
    return f"{normalized}/loki/api/v1/query_range"


_default_loki_push_url = os.environ.get(
    "LOKI_PUSH_URL",
    "http://loki:3100/loki/api/v1/push",
)


class Config:
    """Configuration class for the edge gate and its host application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in _TRUTHY

    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")

    # Supabase Configuration
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    # Service-role key: the settings row is read server-side, bypassing RLS
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")
    # Anon key is what GoTrue expects alongside user JWTs
    SUPABASE_ANON_KEY = _get_env_var("SUPABASE_ANON_KEY")

    # Settings store
    MUNICIPALITIES_TABLE = _get_env_var("MUNICIPALITIES_TABLE", "municipalities")
    SECURITY_SETTINGS_TIMEOUT_SECONDS = float(
        os.environ.get("SECURITY_SETTINGS_TIMEOUT_SECONDS", "3.0")
    )
    # 0 disables caching: settings are read on every request
    SECURITY_SETTINGS_CACHE_TTL_SECONDS = float(
        os.environ.get("SECURITY_SETTINGS_CACHE_TTL_SECONDS", "0")
    )

    # IP allow-list
    # When true, an enabled allow-list with no entries blocks every client
    IP_ALLOWLIST_EMPTY_DENIES_ALL = _get_bool_env("IP_ALLOWLIST_EMPTY_DENIES_ALL", False)

    # Rate limiting (fixed window per client IP + path)
    RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))
    RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "100"))
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS = float(
        os.environ.get("RATE_LIMIT_SWEEP_INTERVAL_SECONDS", str(5 * 60))
    )
    RATE_LIMIT_SENSITIVE_PREFIXES = _get_list_env(
        "RATE_LIMIT_SENSITIVE_PREFIXES",
        ["/api/auth", "/login", "/signup", "/api/collaboration"],
    )
    RATE_LIMIT_USE_REDIS = _get_bool_env("RATE_LIMIT_USE_REDIS", False)

    # Static assets skip the security checks but still get session refresh + headers
    STATIC_PATH_PREFIXES = _get_list_env("STATIC_PATH_PREFIXES", ["/_next", "/static", "/favicon"])
    ROUTE_FILE_EXTENSIONS = _get_list_env("ROUTE_FILE_EXTENSIONS", [".ts", ".tsx"])

    SLOW_REQUEST_THRESHOLD_MS = int(os.environ.get("SLOW_REQUEST_THRESHOLD_MS", "1000"))

    # Session refresh (Supabase GoTrue)
    SESSION_ACCESS_COOKIE = _get_env_var("SESSION_ACCESS_COOKIE", "sb-access-token")
    SESSION_REFRESH_COOKIE = _get_env_var("SESSION_REFRESH_COOKIE", "sb-refresh-token")
    SESSION_REFRESH_TIMEOUT_SECONDS = float(
        os.environ.get("SESSION_REFRESH_TIMEOUT_SECONDS", "5.0")
    )
    SESSION_COOKIE_SECURE = _get_bool_env("SESSION_COOKIE_SECURE", not IS_DEVELOPMENT)
    SESSION_COOKIE_MAX_AGE_SECONDS = int(
        os.environ.get("SESSION_COOKIE_MAX_AGE_SECONDS", str(30 * 24 * 60 * 60))
    )

    # Security events
    SECURITY_EVENTS_PERSIST = _get_bool_env("SECURITY_EVENTS_PERSIST", False)
    SECURITY_EVENTS_TABLE = _get_env_var("SECURITY_EVENTS_TABLE", "security_events")

    # ==================== Monitoring & Observability Configuration ====================

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", True)
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))
    SENTRY_RELEASE = os.environ.get("SENTRY_RELEASE", APP_VERSION)

    # Prometheus Configuration
    PROMETHEUS_ENABLED = _get_bool_env("PROMETHEUS_ENABLED", True)

    # Grafana Loki Configuration
    LOKI_ENABLED = _get_bool_env("LOKI_ENABLED", False)
    LOKI_PUSH_URL = _default_loki_push_url
    LOKI_QUERY_URL = os.environ.get("LOKI_QUERY_URL") or _derive_loki_query_url(
        _default_loki_push_url
    )
    SERVICE_NAME = os.environ.get("SERVICE_NAME", "civicgate")

    @classmethod
    def validate(cls):
        """Validate that the Supabase environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "SUPABASE_ANON_KEY=your_supabase_anon_key (optional, enables session refresh)"
            )

        return True

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Validate that all critical environment variables are set.

        The gate fails open without them (default settings, no session refresh),
        so callers log the result rather than refusing to start.

        Returns:
            tuple: (is_valid, missing_vars)
        """
        critical_vars = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
        }

        missing = [name for name, value in critical_vars.items() if not value]
        return len(missing) == 0, missing

    @classmethod
    def session_refresh_enabled(cls) -> bool:
        return bool(cls.SUPABASE_URL and cls.SUPABASE_ANON_KEY)
