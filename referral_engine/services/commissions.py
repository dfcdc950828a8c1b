"""
Conversion & commission calculator.

Turns an attributed business event (signup, subscription, upgrade) into a
commission record and keeps the partner's balances in step with it.

Flow for process_conversion:
1. Attribution - the click already bound to the user, else the caller's token.
2. Idempotency - an existing row for (code, user, type[, tier]) is returned.
3. Commission - flat signup rate, or the partner's flat/percentage rate on
   the tier price for paid tiers.
4-6. Insert the conversion, credit pending earnings, bind the click and count
   the code use - one transaction, all or nothing.

Commission status only moves forward (pending -> approved -> paid, or to
cancelled); override_commission_status is the admin escape hatch.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import get_settings
from referral_engine.database import atomic
from referral_engine.errors import (
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    ReferralError,
    ValidationError,
)
from referral_engine.models.click import Click, CONVERTED, UNCONVERTED
from referral_engine.models.conversion import (
    Conversion,
    COMMISSION_STATUSES,
    CONVERSION_TYPES,
    SUBSCRIPTION_TIERS,
    make_idempotency_key,
)
from referral_engine.models.partner import Partner
from referral_engine.models.payout_batch import PayoutBatch, OPEN_PAYOUT_STATUSES
from referral_engine.services import attribution, pricing, registry
from referral_engine.services.partners import adjust_balances
from referral_engine.utils.timezone import utcnow

logger = logging.getLogger(__name__)

NO_ATTRIBUTION = "no_attribution"
BASIS_POINTS = 10000

# Forward-only transitions; approved -> paid is reserved for the payout aggregator.
ALLOWED_TRANSITIONS = {
    "pending": {"approved", "cancelled"},
    "approved": {"paid", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}


@dataclass(frozen=True)
class ConversionResult:
    success: bool
    conversion_id: Optional[uuid.UUID] = None
    commission_amount: Optional[int] = None
    created: bool = False
    reason: Optional[str] = None


class _AttributionLost(ReferralError):
    """The click was bound to another user between resolve and commit."""


def _no_attribution() -> ConversionResult:
    return ConversionResult(success=False, reason=NO_ATTRIBUTION)


def _existing(conversion: Conversion) -> ConversionResult:
    return ConversionResult(
        success=True,
        conversion_id=conversion.id,
        commission_amount=conversion.commission_amount,
        created=False,
    )


def calculate_commission(
    partner: Partner,
    conversion_type: str,
    subscription_tier: str,
    tier_price: int,
) -> int:
    """Commission in cents. Integer math only; percentages are basis points."""
    if conversion_type == "signup":
        return partner.commission_rate
    if subscription_tier == "free" or tier_price <= 0:
        return 0
    if partner.subscription_commission_type == "percentage":
        basis_points = partner.subscription_commission_rate or 0
        # round half up
        return (tier_price * basis_points + BASIS_POINTS // 2) // BASIS_POINTS
    if partner.subscription_commission_rate is not None:
        return partner.subscription_commission_rate
    return partner.commission_rate


def _balance_bucket(status: str) -> Optional[str]:
    if status in ("pending", "approved"):
        return "pending"
    if status == "paid":
        return "paid"
    return None


async def _get_by_key(db: AsyncSession, key: str) -> Optional[Conversion]:
    result = await db.execute(
        select(Conversion)
        .where(Conversion.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_conversion(db: AsyncSession, conversion_id: uuid.UUID) -> Conversion:
    conversion = await db.get(Conversion, conversion_id, populate_existing=True)
    if conversion is None:
        raise NotFound("Conversion not found")
    return conversion


async def _insert_conversion(db: AsyncSession, conversion: Conversion) -> bool:
    """Insert inside a savepoint. False when a concurrent call won the key."""
    try:
        async with db.begin_nested():
            db.add(conversion)
            await db.flush()
    except IntegrityError:
        return False
    return True


async def _bind_click(
    db: AsyncSession,
    click_id: uuid.UUID,
    user_id: str,
    conversion_id: uuid.UUID,
    now: datetime,
) -> bool:
    """unconverted -> converted, first writer wins."""
    result = await db.execute(
        update(Click)
        .where(Click.id == click_id)
        .where(Click.conversion_state == UNCONVERTED)
        .values(
            conversion_state=CONVERTED,
            converted_user_id=user_id,
            conversion_id=conversion_id,
            converted_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _click_owner(db: AsyncSession, click_id: uuid.UUID) -> Optional[str]:
    result = await db.execute(select(Click.converted_user_id).where(Click.id == click_id))
    return result.scalar_one_or_none()


async def process_conversion(
    db: AsyncSession,
    user_id: str,
    conversion_type: str,
    subscription_tier: Optional[str] = None,
    subscription_id: Optional[str] = None,
    attribution_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConversionResult:
    """
    Record a conversion for a referred user.

    Returns success=False with reason "no_attribution" for organic users.
    Calling it again with the same (code, user, type[, tier]) returns the
    original conversion without touching balances.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("userId is required")
    if conversion_type not in CONVERSION_TYPES:
        raise ValidationError(f"conversionType must be one of: {', '.join(CONVERSION_TYPES)}")
    tier = subscription_tier or "free"
    if tier not in SUBSCRIPTION_TIERS:
        raise ValidationError(f"subscriptionTier must be one of: {', '.join(SUBSCRIPTION_TIERS)}")
    now = now or utcnow()

    # 1. Attribution
    click = await attribution.resolve_for_user(db, user_id)
    if click is None:
        click = await attribution.resolve_token(db, attribution_token, now)
        if click is not None and click.conversion_state == CONVERTED and click.converted_user_id != user_id:
            logger.info(
                "Attribution token already consumed by another user",
                extra={"click_id": str(click.id), "user_id": user_id[:8]},
            )
            return _no_attribution()
    if click is None:
        return _no_attribution()

    # 2. Idempotency
    key = make_idempotency_key(click.referral_code_id, user_id, conversion_type, tier)
    existing = await _get_by_key(db, key)
    if existing is not None:
        logger.info("Duplicate conversion call returned existing record", extra={"conversion_id": str(existing.id)})
        return _existing(existing)

    partner = await db.get(Partner, click.partner_id, populate_existing=True)
    if partner is None or partner.status != "active":
        logger.info("Partner not active, conversion not credited", extra={"partner_id": str(click.partner_id)})
        return _no_attribution()

    # 3. Commission
    tier_price = 0 if conversion_type == "signup" else await pricing.get_tier_price(tier)
    amount = calculate_commission(partner, conversion_type, tier, tier_price)
    is_subscription = conversion_type == "subscription"
    click_id, code_id = click.id, click.referral_code_id
    first_for_click = click.conversion_state == UNCONVERTED

    try:
        async with atomic(db, "process_conversion"):
            # 4. Insert
            conversion = Conversion(
                referral_code_id=code_id,
                partner_id=partner.id,
                click_id=click_id,
                referred_user_id=user_id,
                subscription_id=subscription_id,
                conversion_type=conversion_type,
                subscription_tier=tier,
                idempotency_key=key,
                commission_amount=amount,
                conversion_value=tier_price,
                commission_status="pending" if amount > 0 else "approved",
                first_payment_date=now if is_subscription else None,
                commission_eligible_until=(
                    now + timedelta(days=get_settings().recurring_commission_days)
                    if is_subscription else None
                ),
                approved_by="system" if amount == 0 else None,
                approved_at=now if amount == 0 else None,
                created_at=now,
            )
            if not await _insert_conversion(db, conversion):
                winner = await _get_by_key(db, key)
                if winner is None:
                    raise PersistenceFailure()
                return _existing(winner)

            # 5. Balances
            await adjust_balances(db, partner.id, pending_delta=amount)

            # 6. Click lifecycle and code usage, once per click
            if first_for_click:
                if await _bind_click(db, click_id, user_id, conversion.id, now):
                    await registry.increment_usage(db, code_id)
                elif await _click_owner(db, click_id) != user_id:
                    raise _AttributionLost()
    except _AttributionLost:
        logger.info("Click bound to another user concurrently", extra={"click_id": str(click_id)})
        return _no_attribution()

    logger.info(
        "Referral conversion recorded: %s, commission %d cents",
        conversion_type, amount,
        extra={
            "conversion_id": str(conversion.id),
            "partner_id": str(partner.id),
            "user_id": user_id[:8],
        },
    )
    return ConversionResult(
        success=True,
        conversion_id=conversion.id,
        commission_amount=amount,
        created=True,
    )


async def approve_commissions(
    db: AsyncSession,
    conversion_ids: list[uuid.UUID],
    approved_by: str,
    now: Optional[datetime] = None,
) -> int:
    """Approve pending commissions. Returns how many moved."""
    if not conversion_ids:
        return 0
    now = now or utcnow()
    async with atomic(db, "approve_commissions"):
        result = await db.execute(
            update(Conversion)
            .where(Conversion.id.in_(conversion_ids))
            .where(Conversion.commission_status == "pending")
            .values(commission_status="approved", approved_by=approved_by, approved_at=now)
            .execution_options(synchronize_session=False)
        )
    logger.info("Approved %d of %d commissions", result.rowcount, len(conversion_ids))
    return result.rowcount


async def auto_approve_commissions(
    db: AsyncSession,
    days_old: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Approve pending commissions older than days_old (settings default)."""
    if days_old is None:
        days_old = get_settings().auto_approve_after_days
    if days_old < 0:
        raise ValidationError("days_old must be non-negative")
    now = now or utcnow()
    cutoff = now - timedelta(days=days_old)

    async with atomic(db, "auto_approve_commissions"):
        result = await db.execute(
            update(Conversion)
            .where(Conversion.commission_status == "pending")
            .where(Conversion.created_at < cutoff)
            .values(commission_status="approved", approved_by="system", approved_at=now)
            .execution_options(synchronize_session=False)
        )
    logger.info("Auto-approved %d commissions older than %d days", result.rowcount, days_old)
    return result.rowcount


def _unclaimed():
    """Conversion not held by a pending or processing payout batch."""
    open_batch = (
        select(PayoutBatch.id)
        .where(PayoutBatch.id == Conversion.payout_batch_id)
        .where(PayoutBatch.status.in_(OPEN_PAYOUT_STATUSES))
        .correlate(Conversion)
        .exists()
    )
    return or_(Conversion.payout_batch_id.is_(None), ~open_batch)


async def _claimed_by_open_payout(db: AsyncSession, conversion: Conversion) -> bool:
    if conversion.payout_batch_id is None:
        return False
    status = await db.scalar(
        select(PayoutBatch.status).where(PayoutBatch.id == conversion.payout_batch_id)
    )
    return status in OPEN_PAYOUT_STATUSES


async def _transition(
    db: AsyncSession,
    conversion: Conversion,
    new_status: str,
    actor: str,
    now: datetime,
    notes: Optional[str] = None,
) -> None:
    """Conditional status change for an unclaimed commission, balances moved with it."""
    old_status = conversion.commission_status
    values = {"commission_status": new_status}
    if new_status == "approved":
        values.update(approved_by=actor, approved_at=now)
    if notes:
        values["notes"] = f"{conversion.notes}\n{notes}" if conversion.notes else notes

    result = await db.execute(
        update(Conversion)
        .where(Conversion.id == conversion.id)
        .where(Conversion.commission_status == old_status)
        .where(_unclaimed())
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransition("Commission changed concurrently or is claimed by a payout")

    amount = conversion.commission_amount
    old_bucket, new_bucket = _balance_bucket(old_status), _balance_bucket(new_status)
    pending_delta = (amount if new_bucket == "pending" else 0) - (amount if old_bucket == "pending" else 0)
    paid_delta = (amount if new_bucket == "paid" else 0) - (amount if old_bucket == "paid" else 0)
    await adjust_balances(db, conversion.partner_id, pending_delta=pending_delta, paid_delta=paid_delta)


async def cancel_commission(
    db: AsyncSession,
    conversion_id: uuid.UUID,
    actor: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Conversion:
    """Cancel a pending or approved commission that no payout has claimed."""
    now = now or utcnow()
    async with atomic(db, "cancel_commission"):
        conversion = await get_conversion(db, conversion_id)
        if "cancelled" not in ALLOWED_TRANSITIONS[conversion.commission_status]:
            raise InvalidTransition(
                f"Cannot cancel a {conversion.commission_status} commission"
            )
        if await _claimed_by_open_payout(db, conversion):
            raise InvalidTransition("Commission is claimed by an open payout")
        note = f"Cancelled by {actor}" + (f": {reason}" if reason else "")
        await _transition(db, conversion, "cancelled", actor, now, notes=note)

    logger.info("Commission cancelled by %s", actor, extra={"conversion_id": str(conversion_id)})
    return await get_conversion(db, conversion_id)


async def override_commission_status(
    db: AsyncSession,
    conversion_id: uuid.UUID,
    new_status: str,
    actor: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Conversion:
    """
    Admin override: any status change, reverse transitions included, for a
    commission not claimed by an open payout. Balances follow the status.
    """
    if new_status not in COMMISSION_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(COMMISSION_STATUSES)}")
    now = now or utcnow()
    async with atomic(db, "override_commission_status"):
        conversion = await get_conversion(db, conversion_id)
        if await _claimed_by_open_payout(db, conversion):
            raise InvalidTransition("Commission is claimed by an open payout")
        if conversion.commission_status != new_status:
            note = f"Status override {conversion.commission_status} -> {new_status} by {actor}"
            if notes:
                note = f"{note}: {notes}"
            await _transition(db, conversion, new_status, actor, now, notes=note)

    logger.warning(
        "Commission status overridden to %s by %s", new_status, actor,
        extra={"conversion_id": str(conversion_id)},
    )
    return await get_conversion(db, conversion_id)
