import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from tiered_approvals.database import get_db
from tiered_approvals.middleware.auth import CurrentUser, get_current_user
from tiered_approvals.models.client import Client
from tiered_approvals.services.errors import TransientBackendError

logger = structlog.get_logger()


async def get_parent_client_id(db: AsyncSession, client_id: str) -> Optional[str]:
    """The administradora managing ``client_id``, if any."""
    try:
        result = await db.execute(
            select(Client.parent_client_id).where(Client.id == client_id)
        )
        parent_id = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error("client_lookup_failed", client_id=client_id, error=str(e))
        raise TransientBackendError("Could not load client, please try again") from e
    return str(parent_id) if parent_id else None


async def ensure_client_access(
    db: AsyncSession, current_user: CurrentUser, client_id: str
) -> None:
    """
    Platform admins see every client; everyone else sees their own client and
    the condominiums their client administers.
    """
    if current_user.is_platform_admin:
        return
    tenant_id = current_user.tenant_id
    if tenant_id == str(client_id):
        return
    if await get_parent_client_id(db, client_id) == tenant_id:
        return

    logger.warning(
        "client_access_denied",
        user_id=current_user.user_id,
        tenant_id=tenant_id,
        client_id=str(client_id),
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": {
                "code": "CLIENT_ACCESS_DENIED",
                "message": "You cannot access this client's approval levels",
            }
        },
    )


async def get_client_scope(
    client_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> str:
    """FastAPI dependency: the path's client_id, once the caller may access it."""
    await ensure_client_access(db, current_user, str(client_id))
    return str(client_id)
