import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field

from tiered_approvals.schemas.common import NoticeResponse


class ApprovalLevelCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    amount_threshold: Decimal = Field(Decimal("0"), ge=0, max_digits=14, decimal_places=2)
    max_amount_threshold: Optional[Decimal] = Field(None, ge=0, max_digits=14, decimal_places=2)
    approvers: List[str] = Field(default_factory=list)
    order_level: int = 1
    active: bool = True


class ApprovalLevelUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    amount_threshold: Optional[Decimal] = Field(None, ge=0, max_digits=14, decimal_places=2)
    max_amount_threshold: Optional[Decimal] = Field(None, ge=0, max_digits=14, decimal_places=2)
    approvers: Optional[List[str]] = None
    order_level: Optional[int] = None
    active: Optional[bool] = None
    # Opt-in optimistic concurrency: reject if the level changed since this timestamp
    expected_updated_at: Optional[datetime] = None


class ApprovalLevelResponse(BaseModel):
    id: str
    client_id: str
    name: str
    order_level: int
    amount_threshold: float
    max_amount_threshold: Optional[float] = None
    approvers: List[str] = Field(default_factory=list)
    approver_labels: List[str] = Field(default_factory=list)
    active: bool
    created_at: str
    updated_at: str


class ApprovalLevelListResponse(BaseModel):
    data: List[ApprovalLevelResponse] = Field(default_factory=list)
    notice: Optional[NoticeResponse] = None


class ApprovalLevelMutationResponse(BaseModel):
    data: Optional[ApprovalLevelResponse] = None
    notice: Optional[NoticeResponse] = None


class CopyDefaultsRequest(BaseModel):
    # Defaults to the client's administradora
    parent_client_id: Optional[uuid.UUID] = None


class ResolveResponse(BaseModel):
    amount: float
    approval_required: bool
    level: Optional[ApprovalLevelResponse] = None
    notice: Optional[NoticeResponse] = None
