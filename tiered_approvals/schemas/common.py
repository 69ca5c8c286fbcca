from typing import Optional
from pydantic import BaseModel


class NoticeResponse(BaseModel):
    kind: str
    code: str
    title: str
    message: str
    retryable: bool = False


class ErrorBody(BaseModel):
    code: str
    message: str
    title: Optional[str] = None
    retryable: bool = False


class ErrorResponse(BaseModel):
    error: ErrorBody
