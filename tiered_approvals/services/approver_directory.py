"""Approver directory: display labels for approver ids within one client."""

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from tiered_approvals.config import settings
from tiered_approvals.models.profile import Profile
from tiered_approvals.services.errors import TransientBackendError

logger = structlog.get_logger()


@dataclass(frozen=True)
class Approver:
    id: str
    name: Optional[str]
    email: Optional[str]
    role: str


class ApproverDirectory:
    def __init__(self, client_id: Optional[str], approvers: Iterable[Approver] = ()):
        self.client_id = client_id
        self._by_id = {a.id: a for a in approvers}

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self):
        return iter(self._by_id.values())

    def get(self, approver_id: str) -> Optional[Approver]:
        return self._by_id.get(str(approver_id))

    def display_name(self, approver_id: str) -> str:
        """name, else email, else the id itself, never blank."""
        approver = self.get(approver_id)
        if approver is not None:
            if approver.name:
                return approver.name
            if approver.email:
                return approver.email
        return str(approver_id)

    def labels(self, approver_ids: Iterable[str]) -> list[str]:
        return [self.display_name(a) for a in approver_ids]

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        client_id: Optional[str],
        roles: Optional[list[str]] = None,
    ) -> "ApproverDirectory":
        """Active profiles of the client whose role may approve quotes."""
        if not client_id:
            return cls(client_id)
        roles = roles if roles is not None else settings.approver_roles_list
        try:
            result = await session.execute(
                select(Profile)
                .where(
                    Profile.client_id == client_id,
                    Profile.role.in_(roles),
                    Profile.is_active == True,  # noqa: E712
                )
                .order_by(Profile.name)
            )
            profiles = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("approver_directory_load_failed", client_id=client_id, error=str(e))
            raise TransientBackendError("Could not load approvers, please try again") from e

        return cls(
            client_id,
            [
                Approver(id=str(p.id), name=p.name, email=p.email, role=p.role)
                for p in profiles
            ],
        )
