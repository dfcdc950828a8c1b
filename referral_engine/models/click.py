"""
Referral click model - one immutable record per tracked visit to a referral link.

Each click carries the opaque attribution token handed to the browser. Its
conversion lifecycle is a two-state tag (unconverted -> converted) whose
columns are set together exactly once; a CHECK constraint keeps them
consistent and converted_user_id is unique so a user is bound to one click.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union
from sqlalchemy import String, Text, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from referral_engine.database import Base

UNCONVERTED = "unconverted"
CONVERTED = "converted"


@dataclass(frozen=True)
class Unconverted:
    pass


@dataclass(frozen=True)
class Converted:
    user_id: str
    conversion_id: uuid.UUID


ClickState = Union[Unconverted, Converted]


class Click(Base):
    __tablename__ = "referral_clicks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    referral_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("referral_codes.id"), nullable=False
    )
    partner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("partners.id"), nullable=False
    )

    # Client fingerprint
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    referer: Mapped[Optional[str]] = mapped_column(Text)
    utm_source: Mapped[Optional[str]] = mapped_column(String(255))
    utm_medium: Mapped[Optional[str]] = mapped_column(String(255))
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(255))
    utm_content: Mapped[Optional[str]] = mapped_column(String(255))
    utm_term: Mapped[Optional[str]] = mapped_column(String(255))

    # Attribution token
    attribution_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Conversion lifecycle
    conversion_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UNCONVERTED
    )
    converted_user_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    conversion_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    clicked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        CheckConstraint(
            "(conversion_state = 'unconverted' AND converted_user_id IS NULL AND conversion_id IS NULL)"
            " OR (conversion_state = 'converted' AND converted_user_id IS NOT NULL AND conversion_id IS NOT NULL)",
            name="ck_referral_clicks_conversion_state",
        ),
        Index("ix_referral_clicks_code_id", "referral_code_id"),
        Index("ix_referral_clicks_partner_clicked", "partner_id", "clicked_at"),
    )

    @property
    def state(self) -> ClickState:
        if self.conversion_state == CONVERTED:
            return Converted(user_id=self.converted_user_id, conversion_id=self.conversion_id)
        return Unconverted()

    @property
    def converted_to_signup(self) -> bool:
        return self.conversion_state == CONVERTED

    def __repr__(self) -> str:
        return f"<Click {str(self.id)[:8]} ({self.conversion_state})>"
