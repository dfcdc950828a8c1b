"""
Admin API - partner management, commission approval and payouts.
Every route requires the admin role.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.api.deps import AuthContext, require_admin
from referral_engine.database import atomic, get_db
from referral_engine.errors import ValidationError
from referral_engine.schemas.referrals import (
    ApproveRequest,
    AutoApproveRequest,
    CancelCommissionRequest,
    CodeCreate,
    CodeStatusUpdate,
    CommissionStatusOverride,
    PartnerCreate,
    PartnerUpdate,
    PayoutComplete,
    PayoutCreate,
    PayoutFail,
)
from referral_engine.services import commissions, overview, partners, payouts, registry
from referral_engine.services.overview import conversion_summary, partner_summary, payout_summary_row

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/referrals", tags=["admin-referrals"])


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        raise ValidationError(f"Invalid {label} id")


def _code_row(code) -> dict:
    return {
        "id": str(code.id),
        "code": code.code,
        "partner_id": str(code.partner_id),
        "status": code.status,
        "description": code.description,
        "max_uses": code.max_uses,
        "current_uses": code.current_uses,
        "expires_at": code.expires_at.isoformat() if code.expires_at else None,
    }


# === OVERVIEW ===

@router.get("/overview")
async def get_overview(
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Program-wide referral statistics."""
    return await overview.admin_overview(db)


# === PARTNERS ===

@router.get("/partners")
async def list_partners(
    status: Optional[str] = None,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rows = await partners.list_partners(db, status=status)
    return {"partners": [partner_summary(p) for p in rows]}


@router.post("/partners", status_code=201)
async def create_partner(
    payload: PartnerCreate,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create a partner together with its default referral code."""
    fields = payload.model_dump(exclude={"user_id", "contact_email", "business_name", "default_code"})
    partner, code = await partners.create_partner(
        db,
        user_id=payload.user_id,
        contact_email=payload.contact_email,
        business_name=payload.business_name,
        approved_by=auth.user_id,
        default_code=payload.default_code,
        **fields,
    )
    return {"success": True, "partner": partner_summary(partner), "referral_code": _code_row(code)}


@router.get("/partners/{partner_id}")
async def get_partner(
    partner_id: str,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Partner detail with its codes and eligible payout preview."""
    pid = _parse_uuid(partner_id, "partner")
    partner = await partners.get_partner(db, pid)
    codes = await registry.list_codes(db, pid)
    eligible = await payouts.eligible_earnings(db, pid)
    return {
        "partner": partner_summary(partner),
        "codes": [_code_row(c) for c in codes],
        "eligible_amount": eligible["eligible_amount"],
        "eligible_conversion_ids": [str(i) for i in eligible["conversion_ids"]],
    }


@router.patch("/partners/{partner_id}")
async def update_partner(
    partner_id: str,
    payload: PartnerUpdate,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No fields to update")
    partner = await partners.update_partner(db, _parse_uuid(partner_id, "partner"), **fields)
    return {"success": True, "partner": partner_summary(partner)}


@router.delete("/partners/{partner_id}")
async def deactivate_partner(
    partner_id: str,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Soft delete; balances and history are kept."""
    partner = await partners.deactivate_partner(db, _parse_uuid(partner_id, "partner"))
    return {"success": True, "partner": partner_summary(partner)}


# === CODES ===

@router.post("/partners/{partner_id}/codes", status_code=201)
async def create_code(
    partner_id: str,
    payload: CodeCreate,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    pid = _parse_uuid(partner_id, "partner")
    async with atomic(db, "create_code"):
        code = await registry.create_code(
            db,
            pid,
            explicit_code=payload.code,
            description=payload.description,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
        )
    return {"success": True, "referral_code": _code_row(code)}


@router.patch("/codes/{code_id}")
async def update_code_status(
    code_id: str,
    payload: CodeStatusUpdate,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    async with atomic(db, "set_code_status"):
        code = await registry.set_code_status(db, _parse_uuid(code_id, "code"), payload.status)
    return {"success": True, "referral_code": _code_row(code)}


# === COMMISSIONS ===

@router.post("/conversions/approve")
async def approve_conversions(
    payload: ApproveRequest,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ids = [_parse_uuid(i, "conversion") for i in payload.conversion_ids]
    approved = await commissions.approve_commissions(db, ids, approved_by=auth.user_id)
    return {"success": True, "approved": approved}


@router.post("/conversions/auto-approve")
async def auto_approve_conversions(
    payload: AutoApproveRequest,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    approved = await commissions.auto_approve_commissions(db, days_old=payload.days_old)
    return {"success": True, "approved": approved}


@router.post("/conversions/{conversion_id}/cancel")
async def cancel_conversion(
    conversion_id: str,
    payload: CancelCommissionRequest,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    conversion = await commissions.cancel_commission(
        db, _parse_uuid(conversion_id, "conversion"), actor=auth.user_id, reason=payload.reason
    )
    return {"success": True, "conversion": conversion_summary(conversion)}


@router.post("/conversions/{conversion_id}/status")
async def override_conversion_status(
    conversion_id: str,
    payload: CommissionStatusOverride,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    conversion = await commissions.override_commission_status(
        db,
        _parse_uuid(conversion_id, "conversion"),
        new_status=payload.status,
        actor=auth.user_id,
        notes=payload.notes,
    )
    return {"success": True, "conversion": conversion_summary(conversion)}


# === PAYOUTS ===

@router.get("/payouts")
async def list_payouts(
    partner_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Open payouts, or one partner's payout history when partner_id is given."""
    if partner_id:
        rows = await payouts.list_partner_payouts(db, _parse_uuid(partner_id, "partner"), limit=limit)
    else:
        rows = await payouts.list_pending_payouts(db)
    return {"payouts": [payout_summary_row(b) for b in rows]}


@router.post("/payouts", status_code=201)
async def schedule_payout(
    payload: PayoutCreate,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    batch = await payouts.schedule_payout(
        db,
        _parse_uuid(payload.partner_id, "partner"),
        processed_by=auth.user_id,
        scheduled_for=payload.scheduled_for,
    )
    return {"success": True, "payout": payout_summary_row(batch)}


@router.get("/payouts/summary")
async def get_payout_summary(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await payouts.payout_summary(db, start=start, end=end)


@router.post("/payouts/{batch_id}/processing")
async def start_payout(
    batch_id: str,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    batch = await payouts.mark_processing(db, _parse_uuid(batch_id, "payout"))
    return {"success": True, "payout": payout_summary_row(batch)}


@router.post("/payouts/{batch_id}/complete")
async def complete_payout(
    batch_id: str,
    payload: PayoutComplete,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    batch = await payouts.mark_processed(db, _parse_uuid(batch_id, "payout"), payload.transaction_id)
    return {"success": True, "payout": payout_summary_row(batch)}


@router.post("/payouts/{batch_id}/fail")
async def fail_payout(
    batch_id: str,
    payload: PayoutFail,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    batch = await payouts.mark_failed(db, _parse_uuid(batch_id, "payout"), payload.reason)
    return {"success": True, "payout": payout_summary_row(batch)}


@router.post("/payouts/{batch_id}/cancel")
async def cancel_payout(
    batch_id: str,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    batch = await payouts.cancel_payout(db, _parse_uuid(batch_id, "payout"))
    return {"success": True, "payout": payout_summary_row(batch)}
