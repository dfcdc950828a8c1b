"""
Partner model - influencers and affiliates who earn commissions via referral codes.
All money columns are integer cents. total_earnings = pending_earnings + paid_earnings
is enforced by a CHECK constraint; balances only move through atomic UPDATEs.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from referral_engine.database import Base

PARTNER_STATUSES = ("active", "inactive", "suspended")
PARTNER_TYPES = ("influencer", "affiliate", "brand_ambassador")
PAYOUT_METHODS = ("paypal", "stripe", "bank_transfer")
COMMISSION_TYPES = ("flat", "percentage")


class Partner(Base):
    __tablename__ = "partners"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, inactive, suspended
    partner_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="influencer"
    )  # influencer, affiliate, brand_ambassador
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    business_name: Mapped[Optional[str]] = mapped_column(String(255))
    social_media: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    # Commission policy
    commission_rate: Mapped[int] = mapped_column(
        Integer, nullable=False, default=200
    )  # cents per attributed signup
    subscription_commission_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="flat"
    )  # flat (cents) or percentage (basis points)
    subscription_commission_rate: Mapped[Optional[int]] = mapped_column(Integer)

    # Payouts
    payout_method: Mapped[str] = mapped_column(String(30), nullable=False, default="paypal")
    payout_details: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    # Running balances (cents)
    total_earnings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_earnings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_earnings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    approved_by: Mapped[Optional[str]] = mapped_column(String(64))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint("pending_earnings >= 0", name="ck_partners_pending_nonneg"),
        CheckConstraint("paid_earnings >= 0", name="ck_partners_paid_nonneg"),
        CheckConstraint(
            "total_earnings = pending_earnings + paid_earnings",
            name="ck_partners_balance_sum",
        ),
        CheckConstraint("commission_rate >= 0", name="ck_partners_rate_nonneg"),
        Index("ix_partners_status", "status"),
        Index("ix_partners_total_earnings", "total_earnings"),
    )

    def __repr__(self) -> str:
        return f"<Partner {self.business_name or self.contact_email} ({self.status})>"
