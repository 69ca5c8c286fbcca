from fastapi import Depends, HTTPException, status

from tiered_approvals.middleware.auth import CurrentUser, get_current_user

# Roles allowed to create, edit, delete and copy approval levels
LEVEL_ADMIN_ROLES = ("admin", "administradora", "admin_cliente")


def require_roles(*allowed_roles: str):
    """
    FastAPI dependency factory for role-based access control.

    Usage:
        @router.post("/{client_id}/approval-levels")
        async def create_level(
            current_user: CurrentUser = Depends(get_current_user),
            _auth: None = Depends(require_roles(*LEVEL_ADMIN_ROLES)),
        ):
    """
    async def check_role(current_user: CurrentUser = Depends(get_current_user)):
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": {
                        "code": "INSUFFICIENT_PERMISSIONS",
                        "message": (
                            f"Role '{current_user.role}' cannot perform this action. "
                            f"Required: {allowed_roles}"
                        ),
                    }
                },
            )
        return None

    return check_role
