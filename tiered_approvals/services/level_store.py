"""
Approval level store: per-tenant ordered view over the level backend.

The store owns one list per client_id, always sorted by order_level (stable,
so equal ranks keep their relative order). Views are replaced as whole lists,
never edited in place, so a reader sees either the state before a mutation
or the state after it.

Concurrent edits of the same level are last-write-wins unless the caller
passes ``expected_updated_at`` to ``update``. Changes read back from the
database (``LevelChange.remote``) drop the tenant's view; the next read
refetches it. At most ``max_views`` tenants are kept, oldest listed first out.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog

from tiered_approvals.services.audit_service import Actor
from tiered_approvals.services.change_feed import (
    DELETE,
    INSERT,
    UPDATE,
    ChangeFeed,
    LevelChange,
    LevelWatcher,
)
from tiered_approvals.services.errors import NotFound, ValidationError
from tiered_approvals.services.level_backend import EDITABLE_FIELDS, LevelRecord
from tiered_approvals.services.threshold_resolver import (
    Amount,
    check_band,
    resolve_amount,
    to_amount,
)

logger = structlog.get_logger()


@dataclass
class CopyResult:
    levels: list[LevelRecord] = field(default_factory=list)
    no_defaults_available: bool = False


def sort_levels(levels: Iterable[LevelRecord]) -> list[LevelRecord]:
    return sorted(levels, key=lambda level: level.order_level)


def filter_levels(levels: Iterable[LevelRecord], search: Optional[str]) -> list[LevelRecord]:
    """Case-insensitive substring match on the level name."""
    if not search:
        return list(levels)
    needle = search.strip().lower()
    return [level for level in levels if needle in level.name.lower()]


def _clean_approvers(approvers) -> tuple[str, ...]:
    if approvers is None:
        return ()
    if isinstance(approvers, str):
        raise ValidationError("approvers must be a list of user ids")
    seen = []
    for approver in approvers:
        approver = str(approver).strip()
        if approver and approver not in seen:
            seen.append(approver)
    return tuple(seen)


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required")
    return name.strip()


def _clean_order_level(order_level) -> int:
    if isinstance(order_level, bool) or not isinstance(order_level, int):
        raise ValidationError("order_level must be an integer")
    return order_level


def clean_changes(changes: dict) -> dict:
    """Validate a partial update and normalize its values to record types."""
    if not changes:
        raise ValidationError("No fields to update")
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    cleaned = {}
    for key, value in changes.items():
        if value is None and key != "max_amount_threshold":
            raise ValidationError(f"{key} cannot be null")
        if key == "name":
            cleaned[key] = _clean_name(value)
        elif key == "order_level":
            cleaned[key] = _clean_order_level(value)
        elif key == "approvers":
            cleaned[key] = _clean_approvers(value)
        elif key == "active":
            cleaned[key] = bool(value)
        elif key == "amount_threshold":
            cleaned[key] = to_amount(value, "amount_threshold")
        elif key == "max_amount_threshold":
            cleaned[key] = (
                None if value is None else to_amount(value, "max_amount_threshold")
            )

    # Validate whatever part of the band the update itself carries
    if "amount_threshold" in cleaned:
        check_band(cleaned["amount_threshold"], cleaned.get("max_amount_threshold"))
    elif cleaned.get("max_amount_threshold") is not None:
        check_band(0, cleaned["max_amount_threshold"])
    return cleaned


class ApprovalLevelStore:
    def __init__(self, backend, feed: Optional[ChangeFeed] = None, max_views: int = 500):
        self.backend = backend
        self.feed = feed or ChangeFeed()
        self.max_views = max_views
        self._views: dict[str, list[LevelRecord]] = {}

    # ---------- views ----------

    def snapshot(self, client_id: Optional[str]) -> list[LevelRecord]:
        if not client_id:
            return []
        return list(self._views.get(client_id, ()))

    def is_loaded(self, client_id: str) -> bool:
        return client_id in self._views

    def invalidate(self, client_id: str):
        self._views.pop(client_id, None)

    def _set_view(self, client_id: str, levels: list[LevelRecord]):
        self._views.pop(client_id, None)
        self._views[client_id] = levels
        while len(self._views) > self.max_views:
            del self._views[next(iter(self._views))]

    def _on_feed_change(self, change: LevelChange):
        if change.remote:
            self.invalidate(change.client_id)

    def track_remote_changes(self) -> Callable[[], None]:
        """Drop a tenant's view whenever the database reports a change for it."""
        return self.feed.subscribe_all(self._on_feed_change)

    def _find(self, level_id: str) -> Optional[LevelRecord]:
        for view in self._views.values():
            for level in view:
                if level.id == level_id:
                    return level
        return None

    def _merge(self, client_id: str, records: list[LevelRecord]):
        if client_id in self._views:
            self._views[client_id] = sort_levels(self._views[client_id] + records)

    def _replace(self, record: LevelRecord) -> Optional[list[LevelRecord]]:
        view = self._views.get(record.client_id)
        if view is None:
            return None
        updated = sort_levels(record if level.id == record.id else level for level in view)
        self._views[record.client_id] = updated
        return updated

    def _remove(self, record: LevelRecord):
        view = self._views.get(record.client_id)
        if view is not None:
            self._views[record.client_id] = [level for level in view if level.id != record.id]

    async def _publish(self, event: str, client_id: str, level_id: Optional[str] = None):
        # The mutation is already committed; a failed notification is only logged
        try:
            await self.feed.publish(LevelChange(event=event, client_id=client_id, level_id=level_id))
        except Exception as e:
            logger.error(
                "approval_level_publish_failed",
                client_id=client_id,
                level_id=level_id,
                change_event=event,
                error=str(e),
            )

    # ---------- operations ----------

    async def list(self, client_id: Optional[str]) -> list[LevelRecord]:
        """All levels of the tenant, active and inactive. No tenant yields []."""
        if not client_id:
            return []
        levels = sort_levels(await self.backend.fetch_levels(client_id))
        self._set_view(client_id, levels)
        return list(levels)

    async def get(self, level_id: str, refresh: bool = False) -> LevelRecord:
        """View first, then the backend. ``refresh`` always reads the backend."""
        level = None if refresh else self._find(level_id)
        if level is None:
            level = await self.backend.fetch_level(level_id)
            if level is not None:
                self._replace(level)
        if level is None:
            raise NotFound("Approval level not found", level_id=level_id)
        return level

    async def create(
        self,
        client_id: Optional[str],
        *,
        name: str,
        amount_threshold: Amount,
        max_amount_threshold: Optional[Amount] = None,
        approvers: Iterable[str] = (),
        order_level: int = 1,
        active: bool = True,
        actor: Optional[Actor] = None,
    ) -> LevelRecord:
        if not client_id:
            raise ValidationError("client_id is required")
        low, high = check_band(amount_threshold, max_amount_threshold)
        draft = {
            "name": _clean_name(name),
            "amount_threshold": low,
            "max_amount_threshold": high,
            "approvers": _clean_approvers(approvers),
            "order_level": _clean_order_level(order_level),
            "active": bool(active),
        }

        [record] = await self.backend.insert_levels(client_id, [draft], actor=actor)
        self._merge(client_id, [record])
        logger.info(
            "approval_level_created",
            client_id=client_id,
            level_id=record.id,
            order_level=record.order_level,
        )
        await self._publish(INSERT, client_id, record.id)
        return record

    async def update(
        self,
        level_id: str,
        changes: dict,
        *,
        actor: Optional[Actor] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> LevelRecord:
        cleaned = clean_changes(changes)
        current = self._find(level_id)

        optimistic_view = None
        previous_view = None
        if current is not None:
            check_band(
                cleaned.get("amount_threshold", current.amount_threshold),
                cleaned.get("max_amount_threshold", current.max_amount_threshold),
            )
            previous_view = self._views[current.client_id]
            optimistic_view = self._replace(dataclasses.replace(current, **cleaned))

        try:
            record = await self.backend.update_level(
                level_id, cleaned, actor=actor, expected_updated_at=expected_updated_at
            )
        except Exception as e:
            if current is not None:
                self._rollback(current, previous_view, optimistic_view)
            logger.warning(
                "approval_level_update_failed",
                level_id=level_id,
                code=getattr(e, "code", type(e).__name__),
            )
            raise

        self._replace(record)
        logger.info(
            "approval_level_updated",
            client_id=record.client_id,
            level_id=level_id,
            fields=sorted(cleaned),
        )
        await self._publish(UPDATE, record.client_id, level_id)
        return record

    def _rollback(
        self,
        original: LevelRecord,
        previous_view: list[LevelRecord],
        optimistic_view: Optional[list[LevelRecord]],
    ):
        if self._views.get(original.client_id) is optimistic_view:
            self._views[original.client_id] = previous_view
        else:
            # The view moved on (refetch or another mutation); only undo our record
            if self._find(original.id) is not None:
                self._replace(original)

    async def delete(self, level_id: str, *, actor: Optional[Actor] = None) -> bool:
        record = await self.backend.delete_level(level_id, actor=actor)
        self._remove(record)
        logger.info("approval_level_deleted", client_id=record.client_id, level_id=level_id)
        await self._publish(DELETE, record.client_id, level_id)
        return True

    async def copy_defaults_from(
        self,
        parent_client_id: Optional[str],
        target_client_id: Optional[str],
        *,
        actor: Optional[Actor] = None,
    ) -> CopyResult:
        """
        Seed the target with the parent's active levels.

        Names, bands and order are kept, every copy is active and starts with
        no approvers (approvers belong to one tenant). A parent without active
        levels yields ``no_defaults_available`` instead of an error.
        """
        if not parent_client_id or not target_client_id:
            raise ValidationError("Both parent and target clients are required")
        if str(parent_client_id) == str(target_client_id):
            raise ValidationError("Cannot copy approval levels onto the same client")

        sources = await self.backend.fetch_levels(parent_client_id, active_only=True)
        sources = sort_levels(level for level in sources if level.active)
        if not sources:
            logger.info(
                "approval_level_copy_no_defaults",
                parent_client_id=parent_client_id,
                target_client_id=target_client_id,
            )
            return CopyResult(levels=[], no_defaults_available=True)

        drafts = [
            {
                "name": level.name,
                "amount_threshold": level.amount_threshold,
                "max_amount_threshold": level.max_amount_threshold,
                "order_level": level.order_level,
                "active": True,
                "approvers": (),
            }
            for level in sources
        ]
        created = await self.backend.insert_levels(
            target_client_id, drafts, actor=actor, action="COPY_DEFAULTS"
        )
        self._merge(target_client_id, created)
        logger.info(
            "approval_levels_copied",
            parent_client_id=parent_client_id,
            target_client_id=target_client_id,
            count=len(created),
        )
        for record in created:
            await self._publish(INSERT, target_client_id, record.id)
        return CopyResult(levels=created)

    def level_for_amount(self, client_id: Optional[str], amount: Amount) -> Optional[LevelRecord]:
        """Resolve against the current view; no I/O."""
        return resolve_amount(amount, self.snapshot(client_id))

    def watch(self, client_id: str, debounce_seconds: float = 0.5) -> LevelWatcher:
        """Start refetching this tenant's list whenever its levels change."""
        return LevelWatcher(self.feed, client_id, self.list, debounce_seconds).start()
