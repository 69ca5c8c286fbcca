from typing import List, Optional
from pydantic import BaseModel, Field


class ApproverResponse(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str
    label: str


class ApproverListResponse(BaseModel):
    data: List[ApproverResponse] = Field(default_factory=list)
