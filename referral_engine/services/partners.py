"""
Partner management - create, read, update and deactivate referral partners,
plus the single path through which partner balances change.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import get_settings
from referral_engine.database import atomic
from referral_engine.errors import NotFound, ValidationError
from referral_engine.models.partner import (
    Partner,
    PARTNER_STATUSES,
    PARTNER_TYPES,
    PAYOUT_METHODS,
    COMMISSION_TYPES,
)
from referral_engine.models.referral_code import ReferralCode
from referral_engine.services import registry

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "status",
    "partner_type",
    "business_name",
    "social_media",
    "commission_rate",
    "subscription_commission_type",
    "subscription_commission_rate",
    "payout_method",
    "payout_details",
)


def _validate(fields: dict) -> None:
    if "status" in fields and fields["status"] not in PARTNER_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(PARTNER_STATUSES)}")
    if "partner_type" in fields and fields["partner_type"] not in PARTNER_TYPES:
        raise ValidationError(f"partner_type must be one of: {', '.join(PARTNER_TYPES)}")
    if "payout_method" in fields and fields["payout_method"] not in PAYOUT_METHODS:
        raise ValidationError(f"payout_method must be one of: {', '.join(PAYOUT_METHODS)}")
    if (
        "subscription_commission_type" in fields
        and fields["subscription_commission_type"] not in COMMISSION_TYPES
    ):
        raise ValidationError("subscription_commission_type must be 'flat' or 'percentage'")
    for key in ("commission_rate", "subscription_commission_rate"):
        value = fields.get(key)
        if value is None:
            continue
        # bool is an int subclass; reject it along with floats and strings
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError(f"{key} must be a non-negative integer")
    if fields.get("subscription_commission_type") == "percentage":
        rate = fields.get("subscription_commission_rate")
        if rate is None or rate > 10000:
            raise ValidationError(
                "percentage commissions need subscription_commission_rate in basis points (0-10000)"
            )


async def adjust_balances(
    db: AsyncSession,
    partner_id: uuid.UUID,
    pending_delta: int = 0,
    paid_delta: int = 0,
) -> None:
    """
    Move a partner's balances in one UPDATE inside the caller's transaction.

    total always moves by pending_delta + paid_delta, so total = pending + paid
    holds after every statement; the table's CHECK constraints reject negatives.
    """
    if not pending_delta and not paid_delta:
        return
    result = await db.execute(
        update(Partner)
        .where(Partner.id == partner_id)
        .values(
            pending_earnings=Partner.pending_earnings + pending_delta,
            paid_earnings=Partner.paid_earnings + paid_delta,
            total_earnings=Partner.total_earnings + pending_delta + paid_delta,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("Partner not found")


async def get_partner(db: AsyncSession, partner_id: uuid.UUID) -> Partner:
    partner = await db.get(Partner, partner_id, populate_existing=True)
    if partner is None:
        raise NotFound("Partner not found")
    return partner


async def get_partner_by_user(db: AsyncSession, user_id: str) -> Optional[Partner]:
    result = await db.execute(
        select(Partner)
        .where(Partner.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_partners(db: AsyncSession, status: Optional[str] = None) -> list[Partner]:
    query = select(Partner).execution_options(populate_existing=True)
    if status:
        query = query.where(Partner.status == status)
    result = await db.execute(query.order_by(Partner.created_at.desc()))
    return list(result.scalars().all())


async def create_partner(
    db: AsyncSession,
    user_id: str,
    contact_email: str,
    business_name: Optional[str] = None,
    approved_by: Optional[str] = None,
    default_code: Optional[str] = None,
    **fields,
) -> tuple[Partner, ReferralCode]:
    """
    Create a partner and its default referral code in one transaction.

    Returns (partner, default_code).
    """
    contact_email = (contact_email or "").strip().lower()
    user_id = (user_id or "").strip()
    if not contact_email or not business_name:
        raise ValidationError("Contact email and business name are required")
    if not user_id:
        raise ValidationError("user_id is required")

    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown partner fields: {', '.join(sorted(unknown))}")
    fields = {k: v for k, v in fields.items() if v is not None}
    fields.setdefault("commission_rate", get_settings().default_commission_rate)
    _validate(fields)

    async with atomic(db, "create_partner"):
        partner = Partner(
            user_id=user_id,
            contact_email=contact_email,
            business_name=business_name.strip(),
            status=fields.pop("status", "active"),
            approved_by=approved_by,
            approved_at=datetime.now(timezone.utc),
            total_earnings=0,
            pending_earnings=0,
            paid_earnings=0,
            **fields,
        )
        db.add(partner)
        await db.flush()
        code = await registry.create_code(
            db,
            partner.id,
            explicit_code=default_code,
            description="Default referral code",
        )

    logger.info(
        "Partner created: %s with code %s",
        partner.business_name, code.code,
        extra={"partner_id": str(partner.id)},
    )
    return partner, code


async def update_partner(
    db: AsyncSession,
    partner_id: uuid.UUID,
    **fields,
) -> Partner:
    """Update policy and profile fields. Balances are not updatable here."""
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown partner fields: {', '.join(sorted(unknown))}")

    # validated before the unit of work: an input error leaves the session untouched
    current = await get_partner(db, partner_id)
    _validate({
        "subscription_commission_type": current.subscription_commission_type,
        "subscription_commission_rate": current.subscription_commission_rate,
        **fields,
    })

    async with atomic(db, "update_partner"):
        partner = await get_partner(db, partner_id)
        for key, value in fields.items():
            setattr(partner, key, value)
        await db.flush()

    logger.info("Partner updated: %s", ", ".join(sorted(fields)), extra={"partner_id": str(partner_id)})
    return partner


async def deactivate_partner(db: AsyncSession, partner_id: uuid.UUID) -> Partner:
    """Soft delete: partners own money history, so rows are never removed."""
    async with atomic(db, "deactivate_partner"):
        partner = await get_partner(db, partner_id)
        partner.status = "inactive"
        await db.flush()
    logger.info("Partner deactivated", extra={"partner_id": str(partner_id)})
    return partner
