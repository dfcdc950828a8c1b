"""
Read-only aggregates for the admin overview and the partner dashboard.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, case
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.models.click import Click
from referral_engine.models.conversion import Conversion
from referral_engine.models.partner import Partner
from referral_engine.models.payout_batch import PayoutBatch
from referral_engine.services import payouts, registry
from referral_engine.services.partners import get_partner
from referral_engine.utils.timezone import isoformat, utcnow

TOP_PERFORMERS = 5
RECENT_ACTIVITY = 10


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    """(start of this month, start of last month) in UTC."""
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if this_month.month == 1:
        last_month = this_month.replace(year=this_month.year - 1, month=12)
    else:
        last_month = this_month.replace(month=this_month.month - 1)
    return this_month, last_month


def partner_summary(partner: Partner) -> dict:
    return {
        "id": str(partner.id),
        "user_id": partner.user_id,
        "business_name": partner.business_name,
        "contact_email": partner.contact_email,
        "status": partner.status,
        "partner_type": partner.partner_type,
        "commission_rate": partner.commission_rate,
        "subscription_commission_type": partner.subscription_commission_type,
        "subscription_commission_rate": partner.subscription_commission_rate,
        "payout_method": partner.payout_method,
        "total_earnings": partner.total_earnings,
        "pending_earnings": partner.pending_earnings,
        "paid_earnings": partner.paid_earnings,
        "created_at": isoformat(partner.created_at),
    }


def conversion_summary(conversion: Conversion) -> dict:
    return {
        "id": str(conversion.id),
        "partner_id": str(conversion.partner_id),
        "referral_code_id": str(conversion.referral_code_id),
        "referred_user_id": conversion.referred_user_id,
        "conversion_type": conversion.conversion_type,
        "subscription_tier": conversion.subscription_tier,
        "commission_amount": conversion.commission_amount,
        "conversion_value": conversion.conversion_value,
        "commission_status": conversion.commission_status,
        "payout_batch_id": str(conversion.payout_batch_id) if conversion.payout_batch_id else None,
        "created_at": isoformat(conversion.created_at),
    }


def payout_summary_row(batch: PayoutBatch) -> dict:
    return {
        "id": str(batch.id),
        "partner_id": str(batch.partner_id),
        "amount": batch.amount,
        "currency": batch.currency,
        "payout_method": batch.payout_method,
        "status": batch.status,
        "transaction_id": batch.transaction_id,
        "conversion_ids": list(batch.conversion_ids or []),
        "scheduled_for": isoformat(batch.scheduled_for),
        "processed_at": isoformat(batch.processed_at),
        "failure_reason": batch.failure_reason,
        "created_at": isoformat(batch.created_at),
    }


async def admin_overview(db: AsyncSession) -> dict:
    """Program-wide counts, top earners and the latest conversions."""
    partner_counts = (
        await db.execute(
            select(
                func.count(Partner.id),
                func.coalesce(func.sum(case((Partner.status == "active", 1), else_=0)), 0),
            )
        )
    ).one()
    total_conversions = (await db.execute(select(func.count(Conversion.id)))).scalar_one()
    commissions_paid = (
        await db.execute(
            select(func.coalesce(func.sum(Conversion.commission_amount), 0))
            .where(Conversion.commission_status == "paid")
        )
    ).scalar_one()
    pending_payouts = (
        await db.execute(
            select(func.coalesce(func.sum(PayoutBatch.amount), 0))
            .where(PayoutBatch.status == "pending")
        )
    ).scalar_one()

    top = await db.execute(
        select(Partner)
        .order_by(Partner.total_earnings.desc())
        .limit(TOP_PERFORMERS)
        .execution_options(populate_existing=True)
    )
    recent = await db.execute(
        select(Conversion, Partner.business_name)
        .join(Partner, Partner.id == Conversion.partner_id)
        .order_by(Conversion.created_at.desc())
        .limit(RECENT_ACTIVITY)
        .execution_options(populate_existing=True)
    )

    return {
        "total_partners": partner_counts[0],
        "active_partners": int(partner_counts[1]),
        "total_conversions": total_conversions,
        "total_commissions_paid": int(commissions_paid),
        "pending_payouts": int(pending_payouts),
        "top_performers": [partner_summary(p) for p in top.scalars().all()],
        "recent_activity": [
            {**conversion_summary(conversion), "partner_name": business_name}
            for conversion, business_name in recent.all()
        ],
    }


async def period_metrics(
    db: AsyncSession,
    partner_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    """Click and conversion metrics for one partner over [start, end)."""
    clicks_q = select(func.count(Click.id)).where(Click.partner_id == partner_id)
    source_q = (
        select(Click.utm_source, func.count(Click.id).label("n"))
        .where(Click.partner_id == partner_id)
        .where(Click.utm_source.is_not(None))
    )
    conv_q = select(
        func.count(Conversion.id),
        func.coalesce(func.sum(case((Conversion.conversion_type == "signup", 1), else_=0)), 0),
        func.coalesce(func.sum(
            case((Conversion.commission_status != "cancelled", Conversion.commission_amount), else_=0)
        ), 0),
        func.coalesce(func.sum(
            case((Conversion.commission_status.in_(("pending", "approved")), Conversion.commission_amount), else_=0)
        ), 0),
        func.coalesce(func.sum(
            case((Conversion.conversion_type != "signup", Conversion.conversion_value), else_=0)
        ), 0),
    ).where(Conversion.partner_id == partner_id)

    if start is not None:
        clicks_q = clicks_q.where(Click.clicked_at >= start)
        source_q = source_q.where(Click.clicked_at >= start)
        conv_q = conv_q.where(Conversion.created_at >= start)
    if end is not None:
        clicks_q = clicks_q.where(Click.clicked_at < end)
        source_q = source_q.where(Click.clicked_at < end)
        conv_q = conv_q.where(Conversion.created_at < end)

    clicks = (await db.execute(clicks_q)).scalar_one()
    total, signups, earned, pending, paid_value = (await db.execute(conv_q)).one()
    top_source = (
        await db.execute(
            source_q.group_by(Click.utm_source).order_by(func.count(Click.id).desc()).limit(1)
        )
    ).first()

    paid_conversions = total - int(signups)
    return {
        "clicks": clicks,
        "signups": int(signups),
        "conversions": paid_conversions,
        "conversion_rate": round(int(signups) * 100 / clicks, 2) if clicks else 0.0,
        "total_earnings": int(earned),
        "pending_earnings": int(pending),
        "average_order_value": int(paid_value) // paid_conversions if paid_conversions else 0,
        "top_referral_source": top_source[0] if top_source else None,
        "period_start": isoformat(start),
        "period_end": isoformat(end),
    }


async def partner_dashboard(
    db: AsyncSession,
    partner_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> dict:
    """Everything the partner dashboard shows, for one partner."""
    now = now or utcnow()
    partner = await get_partner(db, partner_id)
    this_month, last_month = month_bounds(now)

    codes = await registry.list_codes(db, partner_id, active_only=True)
    recent = await db.execute(
        select(Conversion)
        .where(Conversion.partner_id == partner_id)
        .order_by(Conversion.created_at.desc())
        .limit(RECENT_ACTIVITY)
        .execution_options(populate_existing=True)
    )
    history = await payouts.list_partner_payouts(db, partner_id)

    return {
        "partner": partner_summary(partner),
        "active_codes": [
            {
                "id": str(code.id),
                "code": code.code,
                "description": code.description,
                "current_uses": code.current_uses,
                "max_uses": code.max_uses,
                "expires_at": isoformat(code.expires_at),
            }
            for code in codes
        ],
        "recent_conversions": [conversion_summary(c) for c in recent.scalars().all()],
        "analytics": {
            "this_month": await period_metrics(db, partner_id, this_month, None),
            "last_month": await period_metrics(db, partner_id, last_month, this_month),
            "all_time": await period_metrics(db, partner_id),
        },
        "payout_history": [payout_summary_row(b) for b in history],
    }
