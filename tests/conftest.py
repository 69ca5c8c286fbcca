import os
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

# Settings are read at import time; keep tests off real keys and databases
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DB_SSL_REQUIRED", "false")

import dataclasses

import pytest

from tiered_approvals.services.audit_service import Actor
from tiered_approvals.services.change_feed import ChangeFeed
from tiered_approvals.services.errors import ConflictError, NotFound, TransientBackendError
from tiered_approvals.services.level_backend import LevelRecord, naive_utc
from tiered_approvals.services.level_store import ApprovalLevelStore
from tiered_approvals.services.lifecycle_manager import LevelLifecycleManager
from tiered_approvals.services.threshold_resolver import check_band

ADMINISTRADORA_ID = "c0000000-0000-0000-0000-000000000001"
CONDOMINIO_ID = "c0000000-0000-0000-0000-000000000002"
OTHER_CLIENT_ID = "c0000000-0000-0000-0000-000000000099"


class InMemoryLevelBackend:
    """Level backend kept in a dict. ``fail_next`` makes the next call raise."""

    def __init__(self):
        self.rows: dict[str, LevelRecord] = {}
        self.audit: list[dict] = []
        self.calls: list[str] = []
        self.fail_next: Optional[Exception] = None
        self._clock = datetime(2024, 1, 1, 12, 0, 0)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _maybe_fail(self, operation: str):
        self.calls.append(operation)
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def add(self, client_id: str, name: str, low, high=None, order_level=1, active=True, approvers=()):
        now = self._tick()
        record = LevelRecord(
            id=str(uuid.uuid4()),
            client_id=client_id,
            name=name,
            order_level=order_level,
            amount_threshold=Decimal(str(low)),
            max_amount_threshold=Decimal(str(high)) if high is not None else None,
            approvers=tuple(approvers),
            active=active,
            created_at=now,
            updated_at=now,
        )
        self.rows[record.id] = record
        return record

    async def fetch_levels(self, client_id: str, active_only: bool = False) -> list[LevelRecord]:
        self._maybe_fail("fetch_levels")
        levels = [r for r in self.rows.values() if r.client_id == client_id]
        if active_only:
            levels = [r for r in levels if r.active]
        return sorted(levels, key=lambda r: (r.order_level, r.created_at))

    async def fetch_level(self, level_id: str) -> Optional[LevelRecord]:
        self._maybe_fail("fetch_level")
        return self.rows.get(level_id)

    async def insert_levels(self, client_id, drafts, actor: Optional[Actor] = None, action="CREATE"):
        self._maybe_fail("insert_levels")
        created = []
        for draft in drafts:
            record = self.add(
                client_id,
                draft["name"],
                draft["amount_threshold"],
                draft.get("max_amount_threshold"),
                order_level=draft.get("order_level", 1),
                active=draft.get("active", True),
                approvers=draft.get("approvers", ()),
            )
            created.append(record)
            self.audit.append({"action": action, "entity_id": record.id, "actor": actor})
        return created

    async def update_level(self, level_id, changes, actor=None, expected_updated_at=None):
        self._maybe_fail("update_level")
        row = self.rows.get(level_id)
        if row is None:
            raise NotFound("Approval level not found", level_id=level_id)
        if expected_updated_at is not None and naive_utc(expected_updated_at) != row.updated_at:
            raise ConflictError("Approval level was modified", level_id=level_id)
        check_band(
            changes.get("amount_threshold", row.amount_threshold),
            changes.get("max_amount_threshold", row.max_amount_threshold),
        )
        updated = dataclasses.replace(row, updated_at=self._tick(), **changes)
        self.rows[level_id] = updated
        self.audit.append({"action": "UPDATE", "entity_id": level_id, "actor": actor})
        return updated

    async def delete_level(self, level_id, actor=None):
        self._maybe_fail("delete_level")
        row = self.rows.pop(level_id, None)
        if row is None:
            raise NotFound("Approval level not found", level_id=level_id)
        self.audit.append({"action": "DELETE", "entity_id": level_id, "actor": actor})
        return row


@pytest.fixture
def backend():
    return InMemoryLevelBackend()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(backend, feed):
    return ApprovalLevelStore(backend, feed)


@pytest.fixture
def manager(store):
    return LevelLifecycleManager(store)


@pytest.fixture
def actor():
    return Actor(user_id="a0000000-0000-0000-0000-000000000001", email="admin@prime.example.com")


@pytest.fixture
def transient_error():
    return TransientBackendError("Could not load approval levels, please try again")
