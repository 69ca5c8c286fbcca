from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
import structlog

from tiered_approvals.services.audit_service import Actor
from tiered_approvals.services.auth_service import verify_access_token

logger = structlog.get_logger()

security = HTTPBearer()

# Platform staff; sees every client
PLATFORM_ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated caller, as carried by an access token."""

    user_id: str
    tenant_id: str
    role: str
    email: str

    @classmethod
    def from_token_claims(cls, claims: dict) -> "CurrentUser":
        return cls(
            user_id=str(claims["sub"]),
            tenant_id=str(claims["tenant_id"]),
            role=claims["role"],
            email=claims["email"],
        )

    @property
    def is_platform_admin(self) -> bool:
        return self.role == PLATFORM_ADMIN_ROLE

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, email=self.email)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """FastAPI dependency: verify the bearer token and return the caller."""
    try:
        return CurrentUser.from_token_claims(verify_access_token(credentials.credentials))
    except (JWTError, KeyError) as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": {
                    "code": "AUTH_TOKEN_INVALID",
                    "message": "Invalid or expired token",
                }
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
