"""
Approval level backend: SQLAlchemy access to the ``approval_levels`` table.

Each call runs in its own transaction. Database and connection failures
surface as TransientBackendError; the audit row for a mutation is written in
the same transaction as the mutation itself.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from tiered_approvals.models.approval_level import ApprovalLevel
from tiered_approvals.services.audit_service import Actor, create_audit_log
from tiered_approvals.services.errors import (
    ConflictError,
    NotFound,
    TransientBackendError,
    ValidationError,
)
from tiered_approvals.services.threshold_resolver import check_band

logger = structlog.get_logger()

ENTITY_TYPE = "approval_levels"

EDITABLE_FIELDS = (
    "name",
    "order_level",
    "amount_threshold",
    "max_amount_threshold",
    "approvers",
    "active",
)


@dataclass(frozen=True)
class LevelRecord:
    """Detached, immutable copy of one approval level row."""

    id: str
    client_id: str
    name: str
    order_level: int
    amount_threshold: Decimal
    max_amount_threshold: Optional[Decimal] = None
    approvers: tuple[str, ...] = ()
    active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: ApprovalLevel) -> "LevelRecord":
        return cls(
            id=str(row.id),
            client_id=str(row.client_id),
            name=row.name,
            order_level=row.order_level,
            amount_threshold=Decimal(row.amount_threshold),
            max_amount_threshold=(
                Decimal(row.max_amount_threshold)
                if row.max_amount_threshold is not None
                else None
            ),
            approvers=tuple(str(a) for a in (row.approvers or ())),
            active=bool(row.active),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def audit_state(self) -> dict:
        return {
            "name": self.name,
            "order_level": self.order_level,
            "amount_threshold": str(self.amount_threshold),
            "max_amount_threshold": (
                str(self.max_amount_threshold)
                if self.max_amount_threshold is not None
                else None
            ),
            "approvers": list(self.approvers),
            "active": self.active,
        }


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SqlLevelBackend:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as e:
            logger.warning(
                "approval_level_integrity_error", operation=operation, error=str(e.orig)
            )
            raise ValidationError(
                f"Could not {operation} approval level: constraint violated"
            ) from e
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "approval_level_backend_error", operation=operation, error=str(e)
            )
            raise TransientBackendError(
                f"Could not {operation} approval levels, please try again"
            ) from e

    async def fetch_levels(
        self, client_id: str, active_only: bool = False
    ) -> list[LevelRecord]:
        async with self._transaction("load") as session:
            q = select(ApprovalLevel).where(ApprovalLevel.client_id == client_id)
            if active_only:
                q = q.where(ApprovalLevel.active == True)  # noqa: E712
            result = await session.execute(
                q.order_by(
                    ApprovalLevel.order_level,
                    ApprovalLevel.created_at,
                    ApprovalLevel.id,
                )
            )
            return [LevelRecord.from_row(r) for r in result.scalars().all()]

    async def fetch_level(self, level_id: str) -> Optional[LevelRecord]:
        async with self._transaction("load") as session:
            result = await session.execute(
                select(ApprovalLevel).where(ApprovalLevel.id == level_id)
            )
            row = result.scalar_one_or_none()
            return LevelRecord.from_row(row) if row else None

    async def insert_levels(
        self,
        client_id: str,
        drafts: list[dict],
        actor: Optional[Actor] = None,
        action: str = "CREATE",
    ) -> list[LevelRecord]:
        """Insert all drafts atomically; either every level is created or none."""
        async with self._transaction("create") as session:
            rows = []
            for draft in drafts:
                values = dict(draft)
                values["approvers"] = list(values.get("approvers") or [])
                rows.append(ApprovalLevel(client_id=client_id, **values))
            session.add_all(rows)
            await session.flush()

            records = [LevelRecord.from_row(r) for r in rows]
            for record in records:
                await create_audit_log(
                    session,
                    tenant_id=client_id,
                    actor=actor,
                    action=action,
                    entity_type=ENTITY_TYPE,
                    entity_id=record.id,
                    after_state=record.audit_state(),
                )
            return records

    async def update_level(
        self,
        level_id: str,
        changes: dict,
        actor: Optional[Actor] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> LevelRecord:
        async with self._transaction("update") as session:
            result = await session.execute(
                select(ApprovalLevel)
                .where(ApprovalLevel.id == level_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFound("Approval level not found", level_id=level_id)

            before = LevelRecord.from_row(row)
            if (
                expected_updated_at is not None
                and naive_utc(expected_updated_at) != before.updated_at
            ):
                raise ConflictError(
                    "Approval level was modified by someone else, reload and retry",
                    level_id=level_id,
                )

            # Band is checked against the locked row, not the caller's copy
            check_band(
                changes.get("amount_threshold", before.amount_threshold),
                changes.get("max_amount_threshold", before.max_amount_threshold),
            )
            for field, value in changes.items():
                setattr(row, field, list(value) if field == "approvers" else value)
            row.updated_at = datetime.utcnow()
            await session.flush()

            after = LevelRecord.from_row(row)
            await create_audit_log(
                session,
                tenant_id=after.client_id,
                actor=actor,
                action="UPDATE",
                entity_type=ENTITY_TYPE,
                entity_id=level_id,
                before_state=before.audit_state(),
                after_state=after.audit_state(),
            )
            return after

    async def delete_level(
        self, level_id: str, actor: Optional[Actor] = None
    ) -> LevelRecord:
        async with self._transaction("delete") as session:
            result = await session.execute(
                select(ApprovalLevel).where(ApprovalLevel.id == level_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise NotFound("Approval level not found", level_id=level_id)

            record = LevelRecord.from_row(row)
            await session.delete(row)
            await create_audit_log(
                session,
                tenant_id=record.client_id,
                actor=actor,
                action="DELETE",
                entity_type=ENTITY_TYPE,
                entity_id=level_id,
                before_state=record.audit_state(),
            )
            return record
