"""
Payout aggregator - groups a partner's approved commissions into a payout
batch and settles or releases them.

A conversion is claimed by setting its payout_batch_id with a conditional
UPDATE (unclaimed and approved only), so two concurrent schedule calls can
never claim the same commission. The batch amount is computed from what was
actually claimed, never from what was selected.

Lifecycle: pending -> processing -> completed | failed; pending -> cancelled.
Failed and cancelled batches release their conversions for the next cycle.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import get_settings
from referral_engine.database import atomic
from referral_engine.errors import InvalidTransition, NoEligibleCommissions, NotFound, ReferralError
from referral_engine.models.conversion import Conversion
from referral_engine.models.payout_batch import PayoutBatch, OPEN_PAYOUT_STATUSES
from referral_engine.services.partners import adjust_balances, get_partner
from referral_engine.utils.timezone import utcnow

logger = logging.getLogger(__name__)


def _eligible_query(partner_id: uuid.UUID, approve_before: Optional[datetime] = None):
    status = Conversion.commission_status == "approved"
    if approve_before is not None:
        # pending commissions the next auto-approval would pick up
        status = or_(
            status,
            and_(Conversion.commission_status == "pending", Conversion.created_at < approve_before),
        )
    return (
        select(Conversion.id, Conversion.commission_amount)
        .where(Conversion.partner_id == partner_id)
        .where(status)
        .where(Conversion.payout_batch_id.is_(None))
        .where(Conversion.commission_amount > 0)
    )


async def get_batch(db: AsyncSession, batch_id: uuid.UUID) -> PayoutBatch:
    batch = await db.get(PayoutBatch, batch_id, populate_existing=True)
    if batch is None:
        raise NotFound("Payout not found")
    return batch


async def eligible_earnings(
    db: AsyncSession,
    partner_id: uuid.UUID,
    approve_before: Optional[datetime] = None,
) -> dict:
    """
    Preview what the next schedule_payout would claim. With approve_before,
    pending commissions created before it count as already approved.
    """
    result = await db.execute(_eligible_query(partner_id, approve_before))
    rows = result.all()
    return {
        "eligible_amount": sum(row.commission_amount for row in rows),
        "conversion_ids": [row.id for row in rows],
    }


async def schedule_payout(
    db: AsyncSession,
    partner_id: uuid.UUID,
    processed_by: str,
    scheduled_for: Optional[datetime] = None,
) -> PayoutBatch:
    """
    Claim every approved, unclaimed, positive commission of a partner into a
    new pending batch.

    Raises NoEligibleCommissions (nothing committed) when there is nothing to
    claim, including when a concurrent call claimed everything first.
    """
    partner = await get_partner(db, partner_id)

    async with atomic(db, "schedule_payout"):
        selected = (await db.execute(_eligible_query(partner_id))).all()
        if not selected:
            raise NoEligibleCommissions()

        batch = PayoutBatch(
            partner_id=partner_id,
            amount=0,
            currency="USD",
            payout_method=partner.payout_method,
            payout_details=dict(partner.payout_details or {}),
            status="pending",
            conversion_ids=[],
            scheduled_for=scheduled_for,
            processed_by=processed_by,
        )
        db.add(batch)
        await db.flush()

        await db.execute(
            update(Conversion)
            .where(Conversion.id.in_([row.id for row in selected]))
            .where(Conversion.payout_batch_id.is_(None))
            .where(Conversion.commission_status == "approved")
            .values(payout_batch_id=batch.id)
            .execution_options(synchronize_session=False)
        )
        claimed = (
            await db.execute(
                select(Conversion.id, Conversion.commission_amount)
                .where(Conversion.payout_batch_id == batch.id)
                .order_by(Conversion.created_at)
            )
        ).all()
        if not claimed:
            raise NoEligibleCommissions()

        batch.amount = sum(row.commission_amount for row in claimed)
        batch.conversion_ids = [str(row.id) for row in claimed]
        await db.flush()

    logger.info(
        "Payout scheduled: %d cents over %d commissions",
        batch.amount, len(batch.conversion_ids),
        extra={"batch_id": str(batch.id), "partner_id": str(partner_id)},
    )
    return batch


async def _set_status(
    db: AsyncSession,
    batch_id: uuid.UUID,
    from_statuses: tuple,
    **values,
) -> None:
    result = await db.execute(
        update(PayoutBatch)
        .where(PayoutBatch.id == batch_id)
        .where(PayoutBatch.status.in_(from_statuses))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransition("Payout status changed concurrently")


async def _release(db: AsyncSession, batch_id: uuid.UUID) -> int:
    """Unclaim a batch's conversions; they stay approved for the next cycle."""
    result = await db.execute(
        update(Conversion)
        .where(Conversion.payout_batch_id == batch_id)
        .where(Conversion.commission_status == "approved")
        .values(payout_batch_id=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def mark_processing(db: AsyncSession, batch_id: uuid.UUID) -> PayoutBatch:
    batch = await get_batch(db, batch_id)
    if batch.status == "processing":
        return batch
    if batch.status != "pending":
        raise InvalidTransition(f"Cannot start processing a {batch.status} payout")

    async with atomic(db, "mark_processing"):
        await _set_status(db, batch_id, ("pending",), status="processing")

    logger.info("Payout processing", extra={"batch_id": str(batch_id)})
    return await get_batch(db, batch_id)


async def mark_processed(
    db: AsyncSession,
    batch_id: uuid.UUID,
    transaction_id: str,
    now: Optional[datetime] = None,
) -> PayoutBatch:
    """
    Settle a batch: conversions -> paid, partner pending -> paid.

    Calling again with the same transaction id returns the completed batch
    unchanged.
    """
    if not transaction_id:
        raise InvalidTransition("transaction_id is required to complete a payout")
    now = now or utcnow()

    batch = await get_batch(db, batch_id)
    if batch.status == "completed":
        if batch.transaction_id == transaction_id:
            return batch
        raise InvalidTransition("Payout already completed with a different transaction")
    if batch.status not in OPEN_PAYOUT_STATUSES:
        raise InvalidTransition(f"Cannot complete a {batch.status} payout")

    async with atomic(db, "mark_processed"):
        await _set_status(
            db, batch_id, OPEN_PAYOUT_STATUSES,
            status="completed", transaction_id=transaction_id, processed_at=now,
        )
        await db.execute(
            update(Conversion)
            .where(Conversion.payout_batch_id == batch_id)
            .where(Conversion.commission_status == "approved")
            .values(commission_status="paid", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await adjust_balances(
            db, batch.partner_id, pending_delta=-batch.amount, paid_delta=batch.amount
        )

    logger.info(
        "Payout completed: %d cents, transaction %s", batch.amount, transaction_id,
        extra={"batch_id": str(batch_id), "partner_id": str(batch.partner_id)},
    )
    return await get_batch(db, batch_id)


async def mark_failed(
    db: AsyncSession,
    batch_id: uuid.UUID,
    reason: str,
    now: Optional[datetime] = None,
) -> PayoutBatch:
    """Fail a batch and release its commissions. Balances are untouched."""
    now = now or utcnow()
    batch = await get_batch(db, batch_id)
    if batch.status == "failed":
        return batch
    if batch.status not in OPEN_PAYOUT_STATUSES:
        raise InvalidTransition(f"Cannot fail a {batch.status} payout")

    async with atomic(db, "mark_failed"):
        await _set_status(
            db, batch_id, OPEN_PAYOUT_STATUSES,
            status="failed", failure_reason=reason or "unspecified", processed_at=now,
        )
        released = await _release(db, batch_id)

    logger.warning(
        "Payout failed: %s (%d commissions released)", reason, released,
        extra={"batch_id": str(batch_id), "partner_id": str(batch.partner_id)},
    )
    return await get_batch(db, batch_id)


async def cancel_payout(db: AsyncSession, batch_id: uuid.UUID) -> PayoutBatch:
    batch = await get_batch(db, batch_id)
    if batch.status == "cancelled":
        return batch
    if batch.status != "pending":
        raise InvalidTransition(f"Cannot cancel a {batch.status} payout")

    async with atomic(db, "cancel_payout"):
        await _set_status(db, batch_id, ("pending",), status="cancelled")
        released = await _release(db, batch_id)

    logger.info(
        "Payout cancelled (%d commissions released)", released,
        extra={"batch_id": str(batch_id)},
    )
    return await get_batch(db, batch_id)


async def list_pending_payouts(db: AsyncSession) -> list[PayoutBatch]:
    result = await db.execute(
        select(PayoutBatch)
        .where(PayoutBatch.status.in_(OPEN_PAYOUT_STATUSES))
        .order_by(PayoutBatch.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_partner_payouts(
    db: AsyncSession,
    partner_id: uuid.UUID,
    limit: int = 50,
) -> list[PayoutBatch]:
    result = await db.execute(
        select(PayoutBatch)
        .where(PayoutBatch.partner_id == partner_id)
        .order_by(PayoutBatch.created_at.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def payout_summary(
    db: AsyncSession,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    """Counts and totals over batches created in [start, end]."""
    query = select(
        PayoutBatch.status,
        PayoutBatch.payout_method,
        func.count(PayoutBatch.id).label("count"),
        func.coalesce(func.sum(PayoutBatch.amount), 0).label("amount"),
    ).group_by(PayoutBatch.status, PayoutBatch.payout_method)
    if start is not None:
        query = query.where(PayoutBatch.created_at >= start)
    if end is not None:
        query = query.where(PayoutBatch.created_at <= end)

    by_status: dict[str, int] = {}
    by_method: dict[str, int] = {}
    total_payouts = 0
    total_amount = 0
    pending_amount = 0
    for row in (await db.execute(query)).all():
        by_status[row.status] = by_status.get(row.status, 0) + row.count
        by_method[row.payout_method] = by_method.get(row.payout_method, 0) + row.count
        total_payouts += row.count
        total_amount += int(row.amount)
        if row.status == "pending":
            pending_amount += int(row.amount)

    return {
        "total_payouts": total_payouts,
        "total_amount": total_amount,
        "payouts_by_status": by_status,
        "payouts_by_method": by_method,
        # integer cents, rounded half up
        "average_payout_amount": (total_amount * 2 + total_payouts) // (total_payouts * 2) if total_payouts else 0,
        "pending_amount": pending_amount,
    }


async def run_payout_cycle(
    db: AsyncSession,
    processed_by: str = "system",
    days_old: Optional[int] = None,
    dry_run: bool = False,
) -> dict:
    """
    One scheduled cycle: auto-approve aged commissions, then schedule a payout
    for every active partner with something eligible.

    A failure for one partner is logged and does not stop the others.
    """
    from referral_engine.services.commissions import auto_approve_commissions
    from referral_engine.services.partners import list_partners

    approve_before = None
    if dry_run:
        if days_old is None:
            days_old = get_settings().auto_approve_after_days
        approve_before = utcnow() - timedelta(days=days_old)
        approved = await db.scalar(
            select(func.count(Conversion.id))
            .where(Conversion.commission_status == "pending")
            .where(Conversion.created_at < approve_before)
        )
    else:
        approved = await auto_approve_commissions(db, days_old=days_old)

    scheduled, skipped, failed = [], 0, 0
    # ids only: a rolled-back schedule expires loaded partners
    partner_ids = [p.id for p in await list_partners(db, status="active")]
    for partner_id in partner_ids:
        eligible = await eligible_earnings(db, partner_id, approve_before=approve_before)
        if not eligible["conversion_ids"]:
            skipped += 1
            continue
        if dry_run:
            scheduled.append({"partner_id": str(partner_id), "amount": eligible["eligible_amount"]})
            continue
        try:
            batch = await schedule_payout(db, partner_id, processed_by=processed_by)
        except NoEligibleCommissions:
            skipped += 1
            continue
        except ReferralError as e:
            failed += 1
            logger.error(
                "Payout scheduling failed: %s", e.message,
                extra={"partner_id": str(partner_id), "error_code": e.code},
            )
            continue
        scheduled.append({"partner_id": str(partner_id), "batch_id": str(batch.id), "amount": batch.amount})

    logger.info(
        "Payout cycle done: %d approved, %d scheduled, %d skipped, %d failed",
        approved, len(scheduled), skipped, failed,
    )
    return {"approved": approved, "scheduled": scheduled, "skipped": skipped, "failed": failed}
