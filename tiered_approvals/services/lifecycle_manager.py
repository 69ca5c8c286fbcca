"""
Level lifecycle manager: tenant-scoped actions over the approval level store.

Every action returns an Outcome instead of raising. Store errors become an
error Notice, anything unexpected becomes INTERNAL_ERROR, and the previously
loaded list stays as it was.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from tiered_approvals.services.audit_service import Actor
from tiered_approvals.services.errors import (
    ApprovalLevelError,
    ConflictError,
    InternalError,
    NotFound,
    TransientBackendError,
    ValidationError,
)
from tiered_approvals.services.level_backend import LevelRecord
from tiered_approvals.services.level_store import ApprovalLevelStore
from tiered_approvals.services.threshold_resolver import Amount, check_amount, resolve

logger = structlog.get_logger()

SUCCESS = "success"
INFO = "info"
ERROR = "error"

NO_DEFAULTS_AVAILABLE = "NO_DEFAULTS_AVAILABLE"
NO_APPROVAL_LEVEL = "NO_APPROVAL_LEVEL"


@dataclass(frozen=True)
class Notice:
    kind: str
    code: str
    title: str
    message: str
    retryable: bool = False


@dataclass
class Outcome:
    ok: bool
    notice: Optional[Notice] = None
    level: Optional[LevelRecord] = None
    levels: list[LevelRecord] = field(default_factory=list)
    error: Optional[ApprovalLevelError] = None


# Failure titles per action, shown with the error message
_FAILURE_TITLES = {
    "load": "Could not load approval levels",
    "create": "Could not create level",
    "update": "Could not update level",
    "delete": "Could not delete level",
    "copy": "Could not copy levels",
    "resolve": "Could not resolve approval level",
}


def failure_notice(action: str, error: ApprovalLevelError) -> Notice:
    if isinstance(error, TransientBackendError):
        message = "The server could not be reached. Please try again."
    elif isinstance(error, NotFound):
        message = "This approval level no longer exists."
    elif isinstance(error, ConflictError):
        message = "This approval level was changed by someone else. Reload and try again."
    else:
        message = error.message
    return Notice(
        kind=ERROR,
        code=error.code,
        title=_FAILURE_TITLES.get(action, "Operation failed"),
        message=message,
        retryable=error.retryable,
    )


class LevelLifecycleManager:
    def __init__(self, store: ApprovalLevelStore):
        self.store = store

    async def _run(
        self,
        action: str,
        call: Callable[[], Awaitable[Any]],
        **log_context,
    ) -> tuple[Any, Optional[Outcome]]:
        try:
            return await call(), None
        except ApprovalLevelError as e:
            log = logger.error if e.retryable else logger.warning
            log(
                "approval_level_action_failed",
                action=action,
                code=e.code,
                error=e.message,
                **log_context,
            )
            return None, Outcome(ok=False, notice=failure_notice(action, e), error=e)
        except Exception:
            logger.exception("approval_level_action_crashed", action=action, **log_context)
            error = InternalError("Unexpected error. Please try again.")
            return None, Outcome(ok=False, notice=failure_notice(action, error), error=error)

    async def load(self, client_id: Optional[str]) -> Outcome:
        levels, failed = await self._run("load", lambda: self.store.list(client_id), client_id=client_id)
        if failed:
            failed.levels = self.store.snapshot(client_id)
            return failed
        return Outcome(ok=True, levels=levels)

    async def create(
        self, client_id: Optional[str], fields: dict, actor: Optional[Actor] = None
    ) -> Outcome:
        level, failed = await self._run(
            "create",
            lambda: self.store.create(client_id, actor=actor, **fields),
            client_id=client_id,
        )
        if failed:
            failed.levels = self.store.snapshot(client_id)
            return failed
        return Outcome(
            ok=True,
            level=level,
            levels=self.store.snapshot(client_id),
            notice=Notice(SUCCESS, "LEVEL_CREATED", "Level created", "Approval level created successfully."),
        )

    async def update(
        self,
        level_id: str,
        changes: dict,
        actor: Optional[Actor] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> Outcome:
        level, failed = await self._run(
            "update",
            lambda: self.store.update(
                level_id, changes, actor=actor, expected_updated_at=expected_updated_at
            ),
            level_id=level_id,
        )
        if failed:
            return failed
        return Outcome(
            ok=True,
            level=level,
            levels=self.store.snapshot(level.client_id),
            notice=Notice(SUCCESS, "LEVEL_UPDATED", "Level updated", "Approval level updated successfully."),
        )

    async def delete(self, level_id: str, actor: Optional[Actor] = None) -> Outcome:
        _, failed = await self._run(
            "delete", lambda: self.store.delete(level_id, actor=actor), level_id=level_id
        )
        if failed:
            return failed
        return Outcome(
            ok=True,
            notice=Notice(SUCCESS, "LEVEL_DELETED", "Level deleted", "Approval level deleted successfully."),
        )

    async def copy_defaults(
        self,
        parent_client_id: Optional[str],
        target_client_id: Optional[str],
        actor: Optional[Actor] = None,
    ) -> Outcome:
        result, failed = await self._run(
            "copy",
            lambda: self.store.copy_defaults_from(parent_client_id, target_client_id, actor=actor),
            parent_client_id=parent_client_id,
            target_client_id=target_client_id,
        )
        if failed:
            failed.levels = self.store.snapshot(target_client_id)
            return failed

        if result.no_defaults_available:
            return Outcome(
                ok=True,
                notice=Notice(
                    INFO,
                    NO_DEFAULTS_AVAILABLE,
                    "No default levels",
                    "The parent client has no active approval levels configured.",
                ),
            )
        count = len(result.levels)
        return Outcome(
            ok=True,
            levels=result.levels,
            notice=Notice(
                SUCCESS,
                "LEVELS_COPIED",
                "Levels copied",
                f"{count} level{'s' if count != 1 else ''} copied successfully.",
            ),
        )

    async def level_for_amount(
        self, client_id: Optional[str], amount: Amount, refresh: bool = True
    ) -> Outcome:
        """
        Find the level gating ``amount`` for the client.

        The amount is validated before anything is fetched. ``refresh=False``
        resolves against the already loaded view.
        """
        try:
            value = check_amount(amount)
        except ValidationError as e:
            return Outcome(ok=False, notice=failure_notice("resolve", e), error=e)

        if refresh or not self.store.is_loaded(client_id or ""):
            loaded = await self.load(client_id)
            if not loaded.ok:
                return loaded
            levels = loaded.levels
        else:
            levels = self.store.snapshot(client_id)

        level = resolve(value, levels)
        if level is None:
            return Outcome(
                ok=True,
                levels=levels,
                notice=Notice(
                    INFO,
                    NO_APPROVAL_LEVEL,
                    "No approval level",
                    "No active approval level covers this amount.",
                ),
            )
        return Outcome(ok=True, level=level, levels=levels)
