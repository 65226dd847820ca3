import asyncpg
import asyncio
import json
import sys
from datetime import date, datetime, timezone
from typing import Optional, Dict, Any, List, Iterable, Sequence
import logging
import config
from app.utils.retry import retry_async
from app.core.metrics import get_metrics, timer

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: database readiness flag
# ====================================================================================
# False until init_db() has probed the database, applied migrations and
# created the pool. /health reports it; the scheduler skips runs while False.
# ====================================================================================
DB_READY: bool = False


# ====================================================================================
# UTC HELPERS: DB boundary, TIMESTAMP WITHOUT TIME ZONE requires naive UTC
# ====================================================================================
# Application layer uses timezone-aware UTC.
# All datetime passed TO asyncpg → _to_db_utc. All datetime read FROM DB → _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: datetime) -> datetime:
    """
    Convert aware UTC datetime to naive UTC for DB storage.
    Must raise if dt is not timezone-aware UTC.
    """
    if dt is None:
        return None
    assert dt.tzinfo == timezone.utc, f"Expected UTC, got tzinfo={dt.tzinfo}"
    return dt.replace(tzinfo=None)


def _from_db_utc(dt: datetime) -> datetime:
    """
    Convert naive DB datetime to aware UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def _affected_rows(status: str) -> int:
    """asyncpg command status ("UPDATE 1") -> 1"""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _get_pool_config() -> dict:
    """asyncpg.create_pool kwargs; the pool must fit TRIAL_RUN_CONCURRENCY plus the HTTP trigger."""
    return {
        "min_size": config.DB_POOL_MIN_SIZE,
        "max_size": max(config.DB_POOL_MAX_SIZE, config.TRIAL_RUN_CONCURRENCY + 2),
        "max_inactive_connection_lifetime": 300,
        "timeout": config.DB_POOL_ACQUIRE_TIMEOUT,
        "command_timeout": config.DB_POOL_COMMAND_TIMEOUT,
    }


DATABASE_URL = config.DATABASE_URL

if not DATABASE_URL:
    # In PROD the trial store is mandatory
    if config.APP_ENV == "prod":
        print(f"ERROR: {config.APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
        sys.exit(1)
    else:
        logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Get the connection pool, creating it on first use.

    - DB not configured → RuntimeError
    - Transient pool creation errors → retried once with backoff
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        with timer("db_latency_ms"):
            _pool = await retry_async(
                lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
                retries=1,
                base_delay=0.5,
                max_delay=5.0,
                retry_on=(asyncpg.PostgresError, OSError),
            )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    """Close the connection pool"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db() -> bool:
    """
    Probe the database, apply migrations and create the pool.

    Idempotent: returns True immediately once DB_READY is set.

    Returns:
        True if the database is ready, False otherwise
    """
    global DB_READY, _pool

    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not DATABASE_URL:
        logger.error("DATABASE_URL not configured")
        return False

    # 1. Connectivity probe
    try:
        conn = await asyncpg.connect(DATABASE_URL)
        await conn.execute("SELECT 1")
        await conn.close()
        logger.info("DB connectivity probe successful")
    except Exception as e:
        logger.error(f"DB connectivity probe failed: {e}")
        return False

    # 2. Pool
    pool_config = _get_pool_config()
    try:
        _pool = await asyncpg.create_pool(DATABASE_URL, **pool_config)
    except Exception as e:
        logger.error(f"Failed to create database pool: {e}")
        return False

    await asyncio.sleep(0)

    # 3. Migrations
    try:
        import migrations
        if not await migrations.run_migrations_safe(_pool):
            logger.error("Migration execution failed")
            return False
    except Exception as e:
        logger.error(f"Migration execution failed: {e}")
        return False

    # 4. Fresh pool: schema changes invalidate cached prepared statements
    try:
        await _pool.close()
        _pool = await asyncpg.create_pool(DATABASE_URL, **pool_config)
        logger.info(
            "DB_POOL_RECREATED_AFTER_MIGRATIONS min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    except Exception as e:
        logger.error(f"Failed to recreate pool after migrations: {e}")
        return False

    DB_READY = True
    logger.info("Database initialized (DB_READY=True)")
    return True


async def ping() -> bool:
    """
    SELECT 1 through the pool.

    Raises:
        Whatever asyncpg raises; callers decide whether that is fatal.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        return await conn.fetchval("SELECT 1") == 1


# ====================================================================================
# TRIAL SUBSCRIPTIONS
# ====================================================================================

_TRIAL_SELECT = """
    SELECT t.tenant_id, t.admin_id, t.trial_started_at, t.trial_ends_at,
           t.lifecycle_state, t.grace_ends_at, t.last_processed_at,
           t.last_transition_at, t.last_grace_reminder_on,
           s.name AS school_name, a.name AS admin_name, a.email AS admin_email
    FROM trial_subscriptions t
    JOIN schools s ON s.id = t.tenant_id
    LEFT JOIN school_admins a ON a.id = t.admin_id
"""

# Columns a state transition may set next to lifecycle_state
TRANSITION_COLUMNS = frozenset({"grace_ends_at", "last_transition_at", "last_grace_reminder_on"})

_TIMESTAMP_COLUMNS = ("trial_started_at", "trial_ends_at", "grace_ends_at", "last_processed_at", "last_transition_at")


def _normalize_trial_row(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for column in _TIMESTAMP_COLUMNS:
        if column in data:
            data[column] = _from_db_utc(data[column])
    return data


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_db_utc(value)
    return value


async def fetch_active_trials(states: Sequence[str]) -> List[Dict[str, Any]]:
    """
    All trial rows whose lifecycle_state is in `states`.

    Returns:
        List of dicts with aware-UTC timestamps and recipient metadata
    """
    pool = await get_pool()
    with timer("db_latency_ms"):
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                _TRIAL_SELECT + " WHERE t.lifecycle_state = ANY($1::text[]) ORDER BY t.trial_ends_at",
                list(states),
            )
    return [_normalize_trial_row(row) for row in rows]


async def get_trial(tenant_id: str) -> Optional[Dict[str, Any]]:
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(_TRIAL_SELECT + " WHERE t.tenant_id = $1", tenant_id)
    return _normalize_trial_row(row)


async def compare_and_swap_trial_state(
    tenant_id: str,
    expected_state: str,
    new_state: str,
    extra_fields: Dict[str, Any],
    processed_at: datetime,
    run_id: Optional[str] = None,
) -> bool:
    """
    Move a trial to `new_state` only if it is still in `expected_state`.

    Entering 'suspended' also suspends the school and its admin accounts,
    in the same transaction.

    Args:
        tenant_id: School id
        expected_state: State the decision was made against
        new_state: Target state
        extra_fields: Subset of TRANSITION_COLUMNS to set
        processed_at: Decision time (last_processed_at / updated_at)
        run_id: Run correlation id for the history row

    Returns:
        True if the row was updated, False if the state had moved (lost race)
    """
    unknown = set(extra_fields) - TRANSITION_COLUMNS
    if unknown:
        raise ValueError(f"Unsupported trial columns: {sorted(unknown)}")

    assignments = ["lifecycle_state = $3", "last_processed_at = $4", "updated_at = $4"]
    params: List[Any] = [tenant_id, expected_state, new_state, _to_db_utc(processed_at)]
    for column in sorted(extra_fields):
        params.append(_to_db_value(extra_fields[column]))
        assignments.append(f"{column} = ${len(params)}")
    if new_state == "suspended":
        assignments.append("suspended_at = $4")

    query = (
        f"UPDATE trial_subscriptions SET {', '.join(assignments)} "
        "WHERE tenant_id = $1 AND lifecycle_state = $2"
    )

    pool = await get_pool()
    with timer("db_latency_ms"):
        async with pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(query, *params)
                if _affected_rows(result) != 1:
                    return False

                await conn.execute(
                    "INSERT INTO trial_state_history (tenant_id, from_state, to_state, source, run_id, changed_at) "
                    "VALUES ($1, $2, $3, 'engine', $4, $5)",
                    tenant_id, expected_state, new_state, run_id, _to_db_utc(processed_at)
                )

                if new_state == "suspended":
                    await conn.execute(
                        "UPDATE schools SET status = 'suspended', updated_at = $2 WHERE id = $1",
                        tenant_id, _to_db_utc(processed_at)
                    )
                    await conn.execute(
                        "UPDATE school_admins SET status = 'suspended', has_active_subscription = FALSE, "
                        "updated_at = $2 WHERE school_id = $1",
                        tenant_id, _to_db_utc(processed_at)
                    )
    return True


async def claim_grace_reminder(tenant_id: str, day: date, processed_at: datetime) -> bool:
    """
    Mark today's grace reminder as taken.

    Returns:
        True if this caller owns today's reminder, False if already claimed
        or the trial left grace_period.
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            "UPDATE trial_subscriptions SET last_grace_reminder_on = $2, last_processed_at = $3, updated_at = $3 "
            "WHERE tenant_id = $1 AND lifecycle_state = 'grace_period' "
            "AND (last_grace_reminder_on IS NULL OR last_grace_reminder_on < $2)",
            tenant_id, day, _to_db_utc(processed_at)
        )
    return _affected_rows(result) == 1


async def touch_trials_processed(tenant_ids: Iterable[str], processed_at: datetime) -> int:
    """Bump last_processed_at for records a run looked at (observability only)."""
    ids = list(tenant_ids)
    if not ids:
        return 0
    pool = await get_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            "UPDATE trial_subscriptions SET last_processed_at = $2 WHERE tenant_id = ANY($1::text[])",
            ids, _to_db_utc(processed_at)
        )
    return _affected_rows(result)


async def create_trial(
    tenant_id: str,
    admin_id: Optional[str],
    started_at: datetime,
    ends_at: datetime,
) -> bool:
    """
    Insert a 'trialing' record.

    Returns:
        True if created, False if the school already has a trial record
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            result = await conn.execute(
                "INSERT INTO trial_subscriptions (tenant_id, admin_id, trial_started_at, trial_ends_at, lifecycle_state) "
                "VALUES ($1, $2, $3, $4, 'trialing') ON CONFLICT (tenant_id) DO NOTHING",
                tenant_id, admin_id, _to_db_utc(started_at), _to_db_utc(ends_at)
            )
            if _affected_rows(result) != 1:
                return False
            await conn.execute(
                "INSERT INTO trial_state_history (tenant_id, from_state, to_state, source, changed_at) "
                "VALUES ($1, NULL, 'trialing', 'start_trial', $2)",
                tenant_id, _to_db_utc(started_at)
            )
    return True


async def convert_trial_to_paid(tenant_id: str, converted_at: datetime) -> Optional[str]:
    """
    Short-circuit a trial to 'converted' from any state.

    A suspended school gets its school and admin accounts reactivated.

    Returns:
        Previous lifecycle_state, or None if there is no trial record
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            previous = await conn.fetchval(
                "SELECT lifecycle_state FROM trial_subscriptions WHERE tenant_id = $1 FOR UPDATE",
                tenant_id
            )
            if previous is None:
                return None
            if previous == "converted":
                return previous

            await conn.execute(
                "UPDATE trial_subscriptions SET lifecycle_state = 'converted', grace_ends_at = NULL, "
                "converted_at = $2, updated_at = $2 WHERE tenant_id = $1",
                tenant_id, _to_db_utc(converted_at)
            )
            await conn.execute(
                "INSERT INTO trial_state_history (tenant_id, from_state, to_state, source, changed_at) "
                "VALUES ($1, $2, 'converted', 'convert_to_paid', $3)",
                tenant_id, previous, _to_db_utc(converted_at)
            )
            await _restore_school_access(conn, tenant_id, converted_at)
    return previous


async def reactivate_trial(tenant_id: str, grace_ends_at: datetime, now: datetime) -> bool:
    """
    Administrative exit from 'suspended': back to 'grace_period' until grace_ends_at.

    The only backward move in the lifecycle; operators call it, the daily run never does.

    Returns:
        True if the trial was suspended and is now back in grace
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            result = await conn.execute(
                "UPDATE trial_subscriptions SET lifecycle_state = 'grace_period', grace_ends_at = $2, "
                "last_grace_reminder_on = NULL, suspended_at = NULL, updated_at = $3 "
                "WHERE tenant_id = $1 AND lifecycle_state = 'suspended'",
                tenant_id, _to_db_utc(grace_ends_at), _to_db_utc(now)
            )
            if _affected_rows(result) != 1:
                return False
            await conn.execute(
                "INSERT INTO trial_state_history (tenant_id, from_state, to_state, source, changed_at) "
                "VALUES ($1, 'suspended', 'grace_period', 'reactivate', $2)",
                tenant_id, _to_db_utc(now)
            )
            await _restore_school_access(conn, tenant_id, now)
    return True


async def _restore_school_access(conn: asyncpg.Connection, tenant_id: str, now: datetime) -> None:
    await conn.execute(
        "UPDATE schools SET status = 'active', updated_at = $2 WHERE id = $1 AND status = 'suspended'",
        tenant_id, _to_db_utc(now)
    )
    await conn.execute(
        "UPDATE school_admins SET status = 'active', has_active_subscription = TRUE, updated_at = $2 "
        "WHERE school_id = $1 AND status = 'suspended'",
        tenant_id, _to_db_utc(now)
    )


# ====================================================================================
# NOTIFICATIONS / AUDIT / SESSIONS
# ====================================================================================

async def fetch_super_admin_ids() -> List[str]:
    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch("SELECT id FROM super_admins WHERE status = 'active' ORDER BY id")
    return [row["id"] for row in rows]


async def insert_notifications(rows: List[Dict[str, Any]]) -> int:
    """
    Insert in-app notification rows in one transaction.

    Each row: recipient_id, recipient_role, tenant_id, event, title,
    message, type, action_url.
    """
    if not rows:
        return 0
    pool = await get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.executemany(
                "INSERT INTO notifications "
                "(recipient_id, recipient_role, tenant_id, event, title, message, type, action_url) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                [
                    (
                        row["recipient_id"], row["recipient_role"], row.get("tenant_id"), row.get("event"),
                        row["title"], row["message"], row["type"], row.get("action_url"),
                    )
                    for row in rows
                ],
            )
    get_metrics().increment_counter("notification_rows_inserted_total", value=len(rows))
    return len(rows)


async def write_audit_log(action: str, actor_id: str, details: Dict[str, Any]) -> None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            "INSERT INTO audit_logs (action, actor_id, details) VALUES ($1, $2, $3)",
            action, actor_id, json.dumps(details, ensure_ascii=False, default=str)
        )


async def fetch_session(token: str) -> Optional[Dict[str, Any]]:
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            "SELECT token, user_id, user_role, expires_at, is_active FROM sessions WHERE token = $1",
            token
        )
    if row is None:
        return None
    data = dict(row)
    data["expires_at"] = _from_db_utc(data["expires_at"])
    return data
