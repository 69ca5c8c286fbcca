from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from tiered_approvals.database import get_db
from tiered_approvals.middleware.tenant import get_client_scope
from tiered_approvals.schemas.approver import ApproverListResponse, ApproverResponse
from tiered_approvals.services.approver_directory import ApproverDirectory

logger = structlog.get_logger()
router = APIRouter()


@router.get("/clients/{client_id}/approvers", response_model=ApproverListResponse)
async def list_approvers(
    client_id: str = Depends(get_client_scope),
    db: AsyncSession = Depends(get_db),
):
    """Users of the client who can be assigned to approval levels."""
    directory = await ApproverDirectory.load(db, client_id)
    return ApproverListResponse(
        data=[
            ApproverResponse(
                id=a.id,
                name=a.name,
                email=a.email,
                role=a.role,
                label=directory.display_name(a.id),
            )
            for a in directory
        ]
    )
