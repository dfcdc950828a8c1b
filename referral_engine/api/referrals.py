"""
Public referral endpoints - click tracking, conversion reporting and the
partner dashboard.

- POST /api/referral/track     - record a click, set the attribution cookie
- GET  /api/referral/track     - forward a shared link to signup with ref + UTM
- POST /api/referral/convert   - credit a signup/subscription/upgrade
- GET  /api/referral/dashboard - the authenticated partner's dashboard
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.api.deps import AuthContext, get_auth_context
from referral_engine.config import get_settings
from referral_engine.database import get_db
from referral_engine.errors import NotFound, ValidationError
from referral_engine.schemas.referrals import ConvertRequest, TrackRequest
from referral_engine.services import commissions, identity, overview, tracker
from referral_engine.services.partners import get_partner_by_user
from referral_engine.utils.rate_limiter import check_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/referral", tags=["referral"])

REDIRECT_UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")


def get_client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


async def _enforce_track_rate_limit(client_ip: str) -> None:
    """Per-IP limit on click tracking; the limiter itself fails open."""
    limit = get_settings().track_rate_limit_per_minute
    allowed, retry_after = await check_rate_limit(f"track:{client_ip}", limit)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after or 60)},
        )


@router.post("/track")
async def track_referral(
    payload: TrackRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Record a referral click and hand the browser its attribution cookie."""
    if not payload.code or not payload.code.strip():
        raise ValidationError("Referral code is required")

    client_ip = get_client_ip(request)
    await _enforce_track_rate_limit(client_ip)

    result = await tracker.track_click(
        db,
        payload.code,
        client_ip=client_ip,
        user_agent=request.headers.get("user-agent", "unknown"),
        referer=request.headers.get("referer"),
        utm_params=payload.utmParams.model_dump(exclude_none=True) if payload.utmParams else None,
    )

    settings = get_settings()
    response = JSONResponse({"success": True, "trackingId": result.tracking_id})
    response.set_cookie(
        settings.referral_cookie_name,
        result.tracking_id,
        max_age=settings.attribution_window_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )
    return response


@router.get("/track")
async def forward_referral_link(request: Request):
    """Send a shared referral link on to the signup page, ref and UTM intact."""
    ref = (request.query_params.get("ref") or "").strip()
    if not ref:
        raise ValidationError("No referral code provided")

    params = {"ref": ref}
    for key in REDIRECT_UTM_FIELDS:
        value = request.query_params.get(key)
        if value:
            params[key] = value

    base_url = get_settings().app_base_url.rstrip("/")
    return RedirectResponse(f"{base_url}/signup?{urlencode(params)}", status_code=307)


@router.post("/convert")
async def convert_referral(
    payload: ConvertRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Credit a business event to the referral that brought the user in.

    The tracking id comes from the body or, failing that, the cookie set by
    /track. No attribution is a successful empty answer, not an error.
    """
    user_id = (payload.userId or "").strip()
    if not user_id or not payload.conversionType:
        raise ValidationError("User ID and conversion type are required")
    if not auth.can_act_for(user_id):
        raise HTTPException(status_code=403, detail="Not allowed to report conversions for this user")

    lookup = await identity.lookup_user(user_id)
    if lookup["error"]:
        # Identity store outages must not block conversions
        logger.warning("Identity lookup unavailable: %s", lookup["error"], extra={"user_id": user_id[:8]})
    elif lookup["user"] is None:
        raise NotFound("User not found")

    token = payload.trackingId or request.cookies.get(get_settings().referral_cookie_name)
    result = await commissions.process_conversion(
        db,
        user_id=user_id,
        conversion_type=payload.conversionType,
        subscription_tier=payload.subscriptionTier,
        subscription_id=payload.subscriptionId,
        attribution_token=token,
    )

    if not result.success:
        return {"success": False, "message": "No referral attribution found"}

    if result.commission_amount:
        dollars, cents = divmod(result.commission_amount, 100)
        message = f"Referral commission of ${dollars}.{cents:02d} credited"
    else:
        message = "Referral conversion tracked"
    return {
        "success": True,
        "conversionId": str(result.conversion_id),
        "commissionAmount": result.commission_amount,
        "created": result.created,
        "message": message,
    }


@router.get("/dashboard")
async def partner_dashboard(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard for the partner account owned by the caller."""
    partner = await get_partner_by_user(db, auth.user_id)
    if partner is None:
        raise NotFound("Partner not found")
    return await overview.partner_dashboard(db, partner.id)
