"""
Approval level API routes: list, create, edit, delete and copy a client's
approval levels, and resolve which level gates a given amount.
"""

import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from tiered_approvals.database import get_db
from tiered_approvals.dependencies import get_level_manager
from tiered_approvals.middleware.auth import CurrentUser, get_current_user
from tiered_approvals.middleware.authorization import LEVEL_ADMIN_ROLES, require_roles
from tiered_approvals.middleware.tenant import (
    ensure_client_access,
    get_client_scope,
    get_parent_client_id,
)
from tiered_approvals.schemas.approval_level import (
    ApprovalLevelCreate,
    ApprovalLevelListResponse,
    ApprovalLevelMutationResponse,
    ApprovalLevelResponse,
    ApprovalLevelUpdate,
    CopyDefaultsRequest,
    ResolveResponse,
)
from tiered_approvals.schemas.common import NoticeResponse
from tiered_approvals.services.approver_directory import ApproverDirectory
from tiered_approvals.services.errors import TransientBackendError
from tiered_approvals.services.level_backend import LevelRecord
from tiered_approvals.services.level_store import filter_levels
from tiered_approvals.services.lifecycle_manager import (
    LevelLifecycleManager,
    Notice,
    Outcome,
)

logger = structlog.get_logger()
router = APIRouter()


def _to_response(
    level: LevelRecord, directory: Optional[ApproverDirectory] = None
) -> ApprovalLevelResponse:
    directory = directory or ApproverDirectory(level.client_id)
    return ApprovalLevelResponse(
        id=level.id,
        client_id=level.client_id,
        name=level.name,
        order_level=level.order_level,
        amount_threshold=float(level.amount_threshold),
        max_amount_threshold=(
            float(level.max_amount_threshold)
            if level.max_amount_threshold is not None
            else None
        ),
        approvers=list(level.approvers),
        approver_labels=directory.labels(level.approvers),
        active=level.active,
        created_at=level.created_at.isoformat() if level.created_at else "",
        updated_at=level.updated_at.isoformat() if level.updated_at else "",
    )


def _notice(notice: Optional[Notice]) -> Optional[NoticeResponse]:
    if notice is None:
        return None
    return NoticeResponse(
        kind=notice.kind,
        code=notice.code,
        title=notice.title,
        message=notice.message,
        retryable=notice.retryable,
    )


def _raise_for(outcome: Outcome):
    notice = outcome.notice
    raise HTTPException(
        status_code=outcome.error.status_code if outcome.error else 400,
        detail={
            "error": {
                "code": notice.code,
                "message": notice.message,
                "title": notice.title,
                "retryable": notice.retryable,
            }
        },
    )


async def _directory(db: AsyncSession, client_id: str) -> ApproverDirectory:
    """Approver labels are cosmetic; a failed lookup falls back to raw ids."""
    try:
        return await ApproverDirectory.load(db, client_id)
    except TransientBackendError:
        logger.warning("approver_labels_unavailable", client_id=client_id)
        return ApproverDirectory(client_id)


@router.get(
    "/clients/{client_id}/approval-levels",
    response_model=ApprovalLevelListResponse,
)
async def list_approval_levels(
    search: Optional[str] = Query(None, max_length=200),
    client_id: str = Depends(get_client_scope),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    outcome = await manager.load(client_id)
    if not outcome.ok:
        _raise_for(outcome)
    directory = await _directory(db, client_id)
    return ApprovalLevelListResponse(
        data=[_to_response(level, directory) for level in filter_levels(outcome.levels, search)]
    )


@router.post(
    "/clients/{client_id}/approval-levels",
    response_model=ApprovalLevelMutationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_approval_level(
    body: ApprovalLevelCreate,
    client_id: str = Depends(get_client_scope),
    current_user: CurrentUser = Depends(get_current_user),
    _auth: None = Depends(require_roles(*LEVEL_ADMIN_ROLES)),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    outcome = await manager.create(
        client_id, body.model_dump(), actor=current_user.actor
    )
    if not outcome.ok:
        _raise_for(outcome)
    directory = await _directory(db, client_id)
    return ApprovalLevelMutationResponse(
        data=_to_response(outcome.level, directory), notice=_notice(outcome.notice)
    )


@router.post(
    "/clients/{client_id}/approval-levels/copy-defaults",
    response_model=ApprovalLevelListResponse,
)
async def copy_default_levels(
    body: Optional[CopyDefaultsRequest] = None,
    client_id: str = Depends(get_client_scope),
    current_user: CurrentUser = Depends(get_current_user),
    _auth: None = Depends(require_roles(*LEVEL_ADMIN_ROLES)),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    if body is not None and body.parent_client_id is not None:
        parent_client_id = str(body.parent_client_id)
        await ensure_client_access(db, current_user, parent_client_id)
    else:
        parent_client_id = await get_parent_client_id(db, client_id)
    if not parent_client_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": {
                    "code": "PARENT_CLIENT_REQUIRED",
                    "message": "This client has no administradora to copy levels from",
                }
            },
        )

    outcome = await manager.copy_defaults(
        parent_client_id, client_id, actor=current_user.actor
    )
    if not outcome.ok:
        _raise_for(outcome)
    return ApprovalLevelListResponse(
        data=[_to_response(level) for level in outcome.levels],
        notice=_notice(outcome.notice),
    )


@router.get(
    "/clients/{client_id}/approval-levels/resolve",
    response_model=ResolveResponse,
)
async def resolve_approval_level(
    amount: Decimal = Query(...),
    client_id: str = Depends(get_client_scope),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    """Which level gates a quote of ``amount``. No match means no gate is configured."""
    outcome = await manager.level_for_amount(client_id, amount)
    if not outcome.ok:
        _raise_for(outcome)
    level = None
    if outcome.level is not None:
        level = _to_response(outcome.level, await _directory(db, client_id))
    return ResolveResponse(
        amount=float(amount),
        approval_required=level is not None,
        level=level,
        notice=_notice(outcome.notice),
    )


@router.get("/approval-levels/{level_id}", response_model=ApprovalLevelResponse)
async def get_approval_level(
    level_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    level = await manager.store.get(str(level_id), refresh=True)
    await ensure_client_access(db, current_user, level.client_id)
    return _to_response(level, await _directory(db, level.client_id))


@router.patch("/approval-levels/{level_id}", response_model=ApprovalLevelMutationResponse)
async def update_approval_level(
    level_id: uuid.UUID,
    body: ApprovalLevelUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    _auth: None = Depends(require_roles(*LEVEL_ADMIN_ROLES)),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    existing = await manager.store.get(str(level_id), refresh=True)
    await ensure_client_access(db, current_user, existing.client_id)

    changes = body.model_dump(exclude_unset=True)
    expected_updated_at = changes.pop("expected_updated_at", None)
    outcome = await manager.update(
        str(level_id),
        changes,
        actor=current_user.actor,
        expected_updated_at=expected_updated_at,
    )
    if not outcome.ok:
        _raise_for(outcome)
    directory = await _directory(db, outcome.level.client_id)
    return ApprovalLevelMutationResponse(
        data=_to_response(outcome.level, directory), notice=_notice(outcome.notice)
    )


@router.delete("/approval-levels/{level_id}", response_model=ApprovalLevelMutationResponse)
async def delete_approval_level(
    level_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    _auth: None = Depends(require_roles(*LEVEL_ADMIN_ROLES)),
    manager: LevelLifecycleManager = Depends(get_level_manager),
    db: AsyncSession = Depends(get_db),
):
    existing = await manager.store.get(str(level_id), refresh=True)
    await ensure_client_access(db, current_user, existing.client_id)

    outcome = await manager.delete(str(level_id), actor=current_user.actor)
    if not outcome.ok:
        _raise_for(outcome)
    return ApprovalLevelMutationResponse(notice=_notice(outcome.notice))
