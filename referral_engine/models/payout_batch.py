"""
Payout batch model - one disbursement to a partner covering a fixed set of
approved commissions. amount is the sum of the claimed commissions in cents.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from referral_engine.database import Base

PAYOUT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
OPEN_PAYOUT_STATUSES = ("pending", "processing")


class PayoutBatch(Base):
    __tablename__ = "payout_batches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("partners.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payout_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payout_details: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, processing, completed, failed, cancelled
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255))
    conversion_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    processed_by: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payout_batches_amount_nonneg"),
        Index("ix_payout_batches_partner_id", "partner_id"),
        Index("ix_payout_batches_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<PayoutBatch {self.amount}c ({self.status})>"
