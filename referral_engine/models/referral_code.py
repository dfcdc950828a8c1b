"""
Referral code model - a partner's shareable code with optional usage cap and expiry.
Codes are stored trimmed and upper-cased so lookups are case-insensitive.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from referral_engine.database import Base

CODE_STATUSES = ("active", "inactive", "expired")


class ReferralCode(Base):
    __tablename__ = "referral_codes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("partners.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )  # active, inactive, expired
    description: Mapped[Optional[str]] = mapped_column(String(255))
    max_uses: Mapped[Optional[int]] = mapped_column(Integer)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_referral_codes_within_cap",
        ),
        CheckConstraint("current_uses >= 0", name="ck_referral_codes_uses_nonneg"),
        Index("ix_referral_codes_partner_id", "partner_id"),
    )

    def __repr__(self) -> str:
        return f"<ReferralCode {self.code} ({self.status})>"
