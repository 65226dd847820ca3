"""
Trial record store.

TrialRecordStore is the interface the run coordinator depends on;
PostgresTrialStore implements it on top of the database module.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

import asyncpg

import database
from app.services.trials.exceptions import TrialNotFoundError, TrialStoreWriteError
from app.services.trials.models import (
    ACTIVE_STATES,
    LifecycleState,
    TrialConfig,
    TrialRecord,
)


class TrialRecordStore(Protocol):
    async def ping(self) -> None:
        """Raise if the store is unreachable."""

    async def list_active_trials(self) -> List[TrialRecord]:
        """Every record not in a terminal state."""

    async def compare_and_swap_state(
        self,
        tenant_id: str,
        expected_state: LifecycleState,
        new_state: LifecycleState,
        extra_fields: Dict[str, Any],
        *,
        now: datetime,
        run_id: Optional[str] = None,
    ) -> bool:
        """Write only if the record is still in expected_state."""

    async def claim_grace_reminder(self, tenant_id: str, day: date, *, now: datetime) -> bool:
        """Take today's grace reminder; False if already taken."""

    async def record_processed(self, tenant_ids: Iterable[str], now: datetime) -> None:
        ...

    async def write_audit_log(self, action: str, actor_id: str, details: Dict[str, Any]) -> None:
        ...


def record_from_row(row: Dict[str, Any]) -> TrialRecord:
    return TrialRecord(
        tenant_id=row["tenant_id"],
        trial_started_at=row["trial_started_at"],
        trial_ends_at=row["trial_ends_at"],
        lifecycle_state=LifecycleState(row["lifecycle_state"]),
        grace_ends_at=row.get("grace_ends_at"),
        last_processed_at=row.get("last_processed_at"),
        last_transition_at=row.get("last_transition_at"),
        last_grace_reminder_on=row.get("last_grace_reminder_on"),
        school_name=row.get("school_name"),
        admin_id=row.get("admin_id"),
        admin_name=row.get("admin_name"),
        admin_email=row.get("admin_email"),
    )


class PostgresTrialStore:
    """TrialRecordStore backed by the trial_subscriptions table."""

    async def ping(self) -> None:
        await database.ping()

    async def list_active_trials(self) -> List[TrialRecord]:
        rows = await database.fetch_active_trials([state.value for state in ACTIVE_STATES])
        return [record_from_row(row) for row in rows]

    async def compare_and_swap_state(
        self,
        tenant_id: str,
        expected_state: LifecycleState,
        new_state: LifecycleState,
        extra_fields: Dict[str, Any],
        *,
        now: datetime,
        run_id: Optional[str] = None,
    ) -> bool:
        try:
            return await database.compare_and_swap_trial_state(
                tenant_id,
                expected_state.value,
                new_state.value,
                extra_fields,
                processed_at=now,
                run_id=run_id,
            )
        except asyncpg.PostgresError as e:
            raise TrialStoreWriteError(tenant_id, f"{type(e).__name__}: {str(e)[:100]}") from e

    async def claim_grace_reminder(self, tenant_id: str, day: date, *, now: datetime) -> bool:
        return await database.claim_grace_reminder(tenant_id, day, now)

    async def record_processed(self, tenant_ids: Iterable[str], now: datetime) -> None:
        await database.touch_trials_processed(tenant_ids, now)

    async def write_audit_log(self, action: str, actor_id: str, details: Dict[str, Any]) -> None:
        await database.write_audit_log(action, actor_id, details)

    # Administrative lifecycle entry points (outside the engine)

    async def start_trial(
        self,
        tenant_id: str,
        admin_id: Optional[str],
        started_at: datetime,
        config: TrialConfig,
    ) -> bool:
        ends_at = started_at + timedelta(days=config.trial_length_days)
        return await database.create_trial(tenant_id, admin_id, started_at, ends_at)

    async def convert_to_paid(self, tenant_id: str, now: datetime) -> LifecycleState:
        """
        Returns:
            State the trial was in before conversion

        Raises:
            TrialNotFoundError: no trial record for tenant_id
        """
        previous = await database.convert_trial_to_paid(tenant_id, now)
        if previous is None:
            raise TrialNotFoundError(f"No trial record for tenant {tenant_id}")
        return LifecycleState(previous)

    async def reactivate(self, tenant_id: str, now: datetime, grace_days: int) -> bool:
        """Suspended → grace_period for another `grace_days` days."""
        return await database.reactivate_trial(tenant_id, now + timedelta(days=grace_days), now)
