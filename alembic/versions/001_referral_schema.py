"""Referral schema - partners, codes, clicks, conversions and payout batches.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Partners
    op.create_table(
        "partners",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("partner_type", sa.String(30), nullable=False, server_default="influencer"),
        sa.Column("contact_email", sa.String(255), nullable=False, unique=True),
        sa.Column("business_name", sa.String(255)),
        sa.Column("social_media", postgresql.JSONB, server_default="[]"),
        sa.Column("commission_rate", sa.Integer, nullable=False, server_default="200"),
        sa.Column("subscription_commission_type", sa.String(20), nullable=False, server_default="flat"),
        sa.Column("subscription_commission_rate", sa.Integer),
        sa.Column("payout_method", sa.String(30), nullable=False, server_default="paypal"),
        sa.Column("payout_details", postgresql.JSONB, server_default="{}"),
        sa.Column("total_earnings", sa.Integer, nullable=False, server_default="0"),
        sa.Column("pending_earnings", sa.Integer, nullable=False, server_default="0"),
        sa.Column("paid_earnings", sa.Integer, nullable=False, server_default="0"),
        sa.Column("approved_by", sa.String(64)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("pending_earnings >= 0", name="ck_partners_pending_nonneg"),
        sa.CheckConstraint("paid_earnings >= 0", name="ck_partners_paid_nonneg"),
        sa.CheckConstraint(
            "total_earnings = pending_earnings + paid_earnings",
            name="ck_partners_balance_sum",
        ),
        sa.CheckConstraint("commission_rate >= 0", name="ck_partners_rate_nonneg"),
    )
    op.create_index("ix_partners_status", "partners", ["status"])
    op.create_index("ix_partners_total_earnings", "partners", ["total_earnings"])

    # Referral codes
    op.create_table(
        "referral_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("description", sa.String(255)),
        sa.Column("max_uses", sa.Integer),
        sa.Column("current_uses", sa.Integer, nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_referral_codes_within_cap",
        ),
        sa.CheckConstraint("current_uses >= 0", name="ck_referral_codes_uses_nonneg"),
    )
    op.create_index("ix_referral_codes_partner_id", "referral_codes", ["partner_id"])

    # Clicks
    op.create_table(
        "referral_clicks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referral_code_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("referral_codes.id"), nullable=False),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id"), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.Text, nullable=False),
        sa.Column("referer", sa.Text),
        sa.Column("utm_source", sa.String(255)),
        sa.Column("utm_medium", sa.String(255)),
        sa.Column("utm_campaign", sa.String(255)),
        sa.Column("utm_content", sa.String(255)),
        sa.Column("utm_term", sa.String(255)),
        sa.Column("attribution_token", sa.String(64), nullable=False, unique=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("conversion_state", sa.String(20), nullable=False, server_default="unconverted"),
        sa.Column("converted_user_id", sa.String(64), unique=True),
        sa.Column("conversion_id", postgresql.UUID(as_uuid=True)),
        sa.Column("converted_at", sa.DateTime(timezone=True)),
        sa.Column("clicked_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "(conversion_state = 'unconverted' AND converted_user_id IS NULL AND conversion_id IS NULL)"
            " OR (conversion_state = 'converted' AND converted_user_id IS NOT NULL AND conversion_id IS NOT NULL)",
            name="ck_referral_clicks_conversion_state",
        ),
    )
    op.create_index("ix_referral_clicks_code_id", "referral_clicks", ["referral_code_id"])
    op.create_index("ix_referral_clicks_partner_clicked", "referral_clicks", ["partner_id", "clicked_at"])

    # Payout batches
    op.create_table(
        "payout_batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id"), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("payout_method", sa.String(30), nullable=False),
        sa.Column("payout_details", postgresql.JSONB, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transaction_id", sa.String(255)),
        sa.Column("conversion_ids", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("failure_reason", sa.Text),
        sa.Column("processed_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("amount >= 0", name="ck_payout_batches_amount_nonneg"),
    )
    op.create_index("ix_payout_batches_partner_id", "payout_batches", ["partner_id"])
    op.create_index("ix_payout_batches_status", "payout_batches", ["status"])

    # Conversions
    op.create_table(
        "referral_conversions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referral_code_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("referral_codes.id"), nullable=False),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id"), nullable=False),
        sa.Column("click_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("referral_clicks.id")),
        sa.Column("referred_user_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(100)),
        sa.Column("conversion_type", sa.String(20), nullable=False),
        sa.Column("subscription_tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("commission_amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("conversion_value", sa.Integer, nullable=False, server_default="0"),
        sa.Column("commission_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("first_payment_date", sa.DateTime(timezone=True)),
        sa.Column("commission_eligible_until", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.Text),
        sa.Column("approved_by", sa.String(64)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("payout_batch_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("payout_batches.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("commission_amount >= 0", name="ck_referral_conversions_amount_nonneg"),
    )
    op.create_index(
        "ix_referral_conversions_partner_status",
        "referral_conversions", ["partner_id", "commission_status"],
    )
    op.create_index("ix_referral_conversions_user", "referral_conversions", ["referred_user_id"])
    op.create_index("ix_referral_conversions_batch", "referral_conversions", ["payout_batch_id"])
    op.create_index("ix_referral_conversions_created_at", "referral_conversions", ["created_at"])


def downgrade() -> None:
    op.drop_table("referral_conversions")
    op.drop_table("payout_batches")
    op.drop_table("referral_clicks")
    op.drop_table("referral_codes")
    op.drop_table("partners")
