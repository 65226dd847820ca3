import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation through prefixes
# ====================================================================================
# Every environment variable is read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_REDIS_URL, PROD_BOT_TOKEN
#   - STAGE: STAGE_DATABASE_URL, STAGE_REDIS_URL, STAGE_BOT_TOKEN
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_REDIS_URL, LOCAL_BOT_TOKEN
#
# A STAGE process can never pick up PROD_DATABASE_URL by accident and start
# suspending production schools.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "DATABASE_URL")
        default: Value returned when the variable is not set

    Returns:
        Value of the prefixed variable (e.g. "STAGE_DATABASE_URL")

    Example:
        env("DATABASE_URL") -> "PROD_DATABASE_URL" (when APP_ENV=prod)
        env("TRIAL_GRACE_DAYS", default="3") -> "3" when not set
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


# Unprefixed secrets are rejected outright
_direct_usage_vars = ["DATABASE_URL", "BOT_TOKEN", "ADMIN_TELEGRAM_ID"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)


def _parse_int(key: str, default: str, minimum: int = 0) -> int:
    raw = env(key, default=default)
    try:
        value = int(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be a number, got: {raw}", file=sys.stderr)
        sys.exit(1)
    if value < minimum:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be >= {minimum}, got: {value}", file=sys.stderr)
        sys.exit(1)
    return value


def _parse_float(key: str, default: str) -> float:
    raw = env(key, default=default)
    try:
        return float(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be a number, got: {raw}", file=sys.stderr)
        sys.exit(1)


# ====================================================================================
# OPERATOR ALERTS (OPTIONAL): Telegram chat of the platform operators
# ====================================================================================
# Without a token the lifecycle manager still runs; operator alerts are only
# written to the in-app notifications table.
BOT_TOKEN = env("BOT_TOKEN")

ADMIN_TELEGRAM_ID = None
ADMIN_TELEGRAM_ID_STR = env("ADMIN_TELEGRAM_ID")
if ADMIN_TELEGRAM_ID_STR:
    try:
        ADMIN_TELEGRAM_ID = int(ADMIN_TELEGRAM_ID_STR)
    except ValueError:
        print(f"ERROR: ADMIN_TELEGRAM_ID must be a number, got: {ADMIN_TELEGRAM_ID_STR}", file=sys.stderr)
        sys.exit(1)

OPERATOR_ALERTS_ENABLED = bool(BOT_TOKEN and ADMIN_TELEGRAM_ID)
if not OPERATOR_ALERTS_ENABLED:
    print("WARNING: BOT_TOKEN or ADMIN_TELEGRAM_ID is not set - operator Telegram alerts disabled", file=sys.stderr)

# Checked in init_db(); importing config must not require a database
DATABASE_URL = env("DATABASE_URL")
DB_POOL_MIN_SIZE = _parse_int("DB_POOL_MIN_SIZE", "2", minimum=1)
DB_POOL_MAX_SIZE = _parse_int("DB_POOL_MAX_SIZE", "15", minimum=1)
DB_POOL_ACQUIRE_TIMEOUT = _parse_int("DB_POOL_ACQUIRE_TIMEOUT", "10", minimum=1)
DB_POOL_COMMAND_TIMEOUT = _parse_int("DB_POOL_COMMAND_TIMEOUT", "30", minimum=1)

# Redis: run mutex + notification idempotency keys (optional, fail-open)
REDIS_URL = env("REDIS_URL", default="")
REDIS_SOCKET_TIMEOUT_SECONDS = _parse_float("REDIS_SOCKET_TIMEOUT_SECONDS", "5")
REDIS_MAX_CONNECTIONS = _parse_int("REDIS_MAX_CONNECTIONS", "10", minimum=1)

# ====================================================================================
# TRIAL LIFECYCLE
# ====================================================================================
TRIAL_LENGTH_DAYS = _parse_int("TRIAL_LENGTH_DAYS", "30", minimum=1)
TRIAL_GRACE_DAYS = _parse_int("TRIAL_GRACE_DAYS", "3", minimum=0)

# Days before trial end for the first, second and final warning
TRIAL_WARNING_DAYS_STR = env("TRIAL_WARNING_DAYS", default="7,3,1")
try:
    TRIAL_WARNING_DAYS = tuple(int(d.strip()) for d in TRIAL_WARNING_DAYS_STR.split(",") if d.strip())
except ValueError:
    print(f"ERROR: TRIAL_WARNING_DAYS must be comma-separated numbers, got: {TRIAL_WARNING_DAYS_STR}", file=sys.stderr)
    sys.exit(1)

# Daily run time (UTC, HH:MM)
TRIAL_CHECK_TIME_UTC = env("TRIAL_CHECK_TIME_UTC", default="02:00")
try:
    _hour, _minute = TRIAL_CHECK_TIME_UTC.split(":")
    TRIAL_CHECK_HOUR_UTC = int(_hour)
    TRIAL_CHECK_MINUTE_UTC = int(_minute)
    if not (0 <= TRIAL_CHECK_HOUR_UTC < 24 and 0 <= TRIAL_CHECK_MINUTE_UTC < 60):
        raise ValueError(TRIAL_CHECK_TIME_UTC)
except ValueError:
    print(f"ERROR: TRIAL_CHECK_TIME_UTC must be HH:MM, got: {TRIAL_CHECK_TIME_UTC}", file=sys.stderr)
    sys.exit(1)

# Max tenants processed concurrently inside one run
TRIAL_RUN_CONCURRENCY = _parse_int("TRIAL_RUN_CONCURRENCY", "10", minimum=1)

# Per-call timeouts; expiry is a per-tenant error
TRIAL_STORE_TIMEOUT_SECONDS = _parse_float("TRIAL_STORE_TIMEOUT_SECONDS", "10")
TRIAL_NOTIFY_TIMEOUT_SECONDS = _parse_float("TRIAL_NOTIFY_TIMEOUT_SECONDS", "10")

TRIAL_GRACE_REMINDERS_ENABLED = env("TRIAL_GRACE_REMINDERS_ENABLED", default="true").lower() == "true"

# Run-level Redis mutex, only needed when the store has no conditional writes
TRIAL_RUN_LOCK_ENABLED = env("TRIAL_RUN_LOCK_ENABLED", default="false").lower() == "true"
TRIAL_RUN_LOCK_TTL_SECONDS = _parse_int("TRIAL_RUN_LOCK_TTL_SECONDS", "900", minimum=1)

# Link attached to tenant-facing notifications
SUBSCRIPTION_ACTION_URL = env("SUBSCRIPTION_ACTION_URL", default="/school-admin/subscription")

# HTTP server (health + manual trial check)
HEALTH_SERVER_HOST = os.getenv("HEALTH_SERVER_HOST", "0.0.0.0")
HEALTH_SERVER_PORT = int(os.getenv("PORT") or env("HEALTH_SERVER_PORT") or "8080")
