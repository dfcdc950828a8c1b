"""
Referral conversion model - a business event credited to a referral code.

idempotency_key is the natural key (code, user, type[, tier]); its unique
constraint makes duplicate conversion calls collapse onto one row.
payout_batch_id marks the payout batch that claimed the commission. It is
cleared when that batch fails or is cancelled and kept once it completes.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from referral_engine.database import Base

CONVERSION_TYPES = ("signup", "subscription", "upgrade")
SUBSCRIPTION_TIERS = ("free", "premium", "enterprise")
COMMISSION_STATUSES = ("pending", "approved", "paid", "cancelled")


def make_idempotency_key(
    referral_code_id: uuid.UUID,
    user_id: str,
    conversion_type: str,
    subscription_tier: str,
) -> str:
    """Signups are unique per user; paid conversions per user and tier."""
    if conversion_type == "signup":
        return f"{referral_code_id}:{user_id}:signup"
    return f"{referral_code_id}:{user_id}:{conversion_type}:{subscription_tier}"


class Conversion(Base):
    __tablename__ = "referral_conversions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    referral_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("referral_codes.id"), nullable=False
    )
    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("partners.id"), nullable=False
    )
    click_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("referral_clicks.id")
    )
    referred_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(100))

    conversion_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Money (cents)
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversion_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commission_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, approved, paid, cancelled

    first_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    commission_eligible_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    payout_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payout_batches.id")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint("commission_amount >= 0", name="ck_referral_conversions_amount_nonneg"),
        Index("ix_referral_conversions_partner_status", "partner_id", "commission_status"),
        Index("ix_referral_conversions_user", "referred_user_id"),
        Index("ix_referral_conversions_batch", "payout_batch_id"),
        Index("ix_referral_conversions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Conversion {self.conversion_type} {self.commission_amount}c ({self.commission_status})>"
