"""Central model registry: import all models so Alembic autodiscover works."""

from tiered_approvals.database import Base  # noqa: F401

from tiered_approvals.models.client import Client  # noqa: F401
from tiered_approvals.models.profile import Profile  # noqa: F401
from tiered_approvals.models.approval_level import ApprovalLevel  # noqa: F401
from tiered_approvals.models.audit_log import AuditLog  # noqa: F401
