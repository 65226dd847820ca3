"""
Pytest configuration and shared fixtures for trial lifecycle tests.
"""
import os

os.environ.setdefault("APP_ENV", "local")

import asyncio
import pytest
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from app.core.feature_flags import reset_feature_flags
from app.core.metrics import reset_metrics
from app.services.trials.models import (
    ACTIVE_STATES,
    LifecycleState,
    NotificationEvent,
    TrialConfig,
    TrialRecord,
)


class InMemoryTrialStore:
    """TrialRecordStore keeping records in a dict, with failure injection."""

    def __init__(self, records: Iterable[TrialRecord] = ()):
        self.records: Dict[str, TrialRecord] = {r.tenant_id: r for r in records}
        self.audit_log: List[Tuple[str, str, Dict[str, Any]]] = []
        self.processed: List[str] = []
        self.ping_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        # tenant_id -> number of writes that raise before one succeeds
        self.write_failures: Dict[str, int] = {}
        self.write_attempts: Dict[str, int] = {}
        # tenant_id -> number of writes that commit, then raise (timeout after commit)
        self.commit_failures: Dict[str, int] = {}
        # Hold every reader after list_active_trials until this many have read
        self.readers_expected = 0
        self._readers = 0
        self._all_read = asyncio.Event()

    async def ping(self) -> None:
        if self.ping_error:
            raise self.ping_error

    async def list_active_trials(self) -> List[TrialRecord]:
        if self.list_error:
            raise self.list_error
        snapshot = [r for r in self.records.values() if r.lifecycle_state in ACTIVE_STATES]
        if self.readers_expected:
            self._readers += 1
            if self._readers >= self.readers_expected:
                self._all_read.set()
            await self._all_read.wait()
        return snapshot

    def _maybe_fail(self, tenant_id: str) -> None:
        self.write_attempts[tenant_id] = self.write_attempts.get(tenant_id, 0) + 1
        remaining = self.write_failures.get(tenant_id, 0)
        if remaining:
            self.write_failures[tenant_id] = remaining - 1
            raise ConnectionError(f"store write failed for {tenant_id}")

    def _maybe_fail_after_commit(self, tenant_id: str) -> None:
        remaining = self.commit_failures.get(tenant_id, 0)
        if remaining:
            self.commit_failures[tenant_id] = remaining - 1
            raise asyncio.TimeoutError()

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
        self._maybe_fail(tenant_id)
        record = self.records.get(tenant_id)
        if record is None or record.lifecycle_state is not expected_state:
            return False
        self.records[tenant_id] = replace(
            record, lifecycle_state=new_state, last_processed_at=now, **extra_fields
        )
        self._maybe_fail_after_commit(tenant_id)
        return True

    async def claim_grace_reminder(self, tenant_id: str, day: date, *, now: datetime) -> bool:
        self._maybe_fail(tenant_id)
        record = self.records.get(tenant_id)
        if record is None or record.lifecycle_state is not LifecycleState.GRACE_PERIOD:
            return False
        if record.last_grace_reminder_on is not None and record.last_grace_reminder_on >= day:
            return False
        self.records[tenant_id] = replace(record, last_grace_reminder_on=day, last_processed_at=now)
        self._maybe_fail_after_commit(tenant_id)
        return True

    async def record_processed(self, tenant_ids: Iterable[str], now: datetime) -> None:
        self.processed.extend(tenant_ids)

    async def write_audit_log(self, action: str, actor_id: str, details: Dict[str, Any]) -> None:
        self.audit_log.append((action, actor_id, details))


class RecordingDispatcher:
    """NotificationDispatcher that records deliveries, with failure injection."""

    def __init__(self):
        self.sent: List[Tuple[str, NotificationEvent, Dict[str, Any]]] = []
        self.ping_error: Optional[Exception] = None
        # (tenant_id, event) -> number of calls that raise before one succeeds
        self.failures: Dict[Tuple[str, NotificationEvent], int] = {}
        # (tenant_id, event) pairs an earlier run already delivered
        self.already_delivered: Set[Tuple[str, NotificationEvent]] = set()
        self.attempts = 0

    async def ping(self) -> None:
        if self.ping_error:
            raise self.ping_error

    async def notify(self, tenant_id: str, event: NotificationEvent, payload: Dict[str, Any]) -> bool:
        self.attempts += 1
        remaining = self.failures.get((tenant_id, event), 0)
        if remaining:
            self.failures[(tenant_id, event)] = remaining - 1
            raise ConnectionError(f"notification channel down for {tenant_id}")
        if (tenant_id, event) in self.already_delivered:
            return False
        self.sent.append((tenant_id, event, payload))
        return True

    def events_for(self, tenant_id: str) -> List[NotificationEvent]:
        return [event for tenant, event, _ in self.sent if tenant == tenant_id]


@pytest.fixture(autouse=True)
def clean_globals():
    """Fresh metrics and feature flags for every test"""
    reset_metrics()
    reset_feature_flags()
    yield
    reset_metrics()
    reset_feature_flags()


@pytest.fixture
def now():
    """Fixed run time for deterministic tests (02:00 UTC, the default check time)"""
    return datetime(2024, 3, 15, 2, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def trial_config():
    """Default lifecycle timings: 30-day trial, warnings at 7/3/1 days, 3-day grace"""
    return TrialConfig()


@pytest.fixture
def make_record(now):
    """Factory for trial records relative to `now`"""
    def _make(
        tenant_id: str = "school-1",
        state: LifecycleState = LifecycleState.TRIALING,
        ends_in: timedelta = timedelta(days=20),
        **overrides: Any,
    ) -> TrialRecord:
        trial_ends_at = now + ends_in
        fields: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "trial_started_at": trial_ends_at - timedelta(days=30),
            "trial_ends_at": trial_ends_at,
            "lifecycle_state": state,
            "school_name": f"School {tenant_id}",
            "admin_id": f"admin-{tenant_id}",
            "admin_name": f"Admin {tenant_id}",
            "admin_email": f"admin@{tenant_id}.example",
        }
        fields.update(overrides)
        return TrialRecord(**fields)
    return _make


@pytest.fixture
def store():
    return InMemoryTrialStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
