import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Numeric,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID, ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from tiered_approvals.database import Base


class ApprovalLevel(Base):
    __tablename__ = "approval_levels"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    order_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_threshold: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=0
    )
    max_amount_threshold: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(14, 2)
    )
    approvers: Mapped[list] = mapped_column(ARRAY(Text), default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "amount_threshold >= 0", name="chk_approval_level_min_non_negative"
        ),
        CheckConstraint(
            "max_amount_threshold IS NULL OR max_amount_threshold >= amount_threshold",
            name="chk_approval_level_band_ordered",
        ),
        Index("idx_approval_levels_client_order", "client_id", "order_level"),
    )
