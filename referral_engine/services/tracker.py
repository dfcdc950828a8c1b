"""
Click tracker - records a visit to a referral link and mints its attribution token.

A click is only recorded for a usable code; a rejected code persists nothing.
Tracking does not count as a use of the code - usage is counted on conversion.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import get_settings
from referral_engine.database import atomic
from referral_engine.models.click import Click, UNCONVERTED
from referral_engine.services import registry

logger = logging.getLogger(__name__)

UTM_FIELDS = ("source", "medium", "campaign", "content", "term")
MAX_UTM_LENGTH = 255


@dataclass(frozen=True)
class TrackResult:
    tracking_id: str
    click_id: uuid.UUID
    expires_at: datetime


def mint_attribution_token() -> str:
    """Opaque, unguessable token carried by the browser cookie."""
    return secrets.token_urlsafe(32)


def _clean_utm(utm_params: Optional[dict]) -> dict:
    cleaned = {}
    for field in UTM_FIELDS:
        value = (utm_params or {}).get(field) or (utm_params or {}).get(f"utm_{field}")
        if isinstance(value, str) and value.strip():
            cleaned[field] = value.strip()[:MAX_UTM_LENGTH]
    return cleaned


async def track_click(
    db: AsyncSession,
    code: str,
    client_ip: str,
    user_agent: str,
    referer: Optional[str] = None,
    utm_params: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> TrackResult:
    """
    Validate the code, persist a click and return its attribution token.

    Raises CodeNotFound, CodeInactive, CodeExpired or CodeLimitReached
    without writing anything.
    """
    now = now or datetime.now(timezone.utc)
    referral_code = await registry.resolve_code(db, code)
    registry.check_usable(referral_code, now)

    utm = _clean_utm(utm_params)
    expires_at = now + timedelta(days=get_settings().attribution_window_days)

    async with atomic(db, "track_click"):
        click = Click(
            referral_code_id=referral_code.id,
            partner_id=referral_code.partner_id,
            ip_address=(client_ip or "unknown")[:64],
            user_agent=user_agent or "unknown",
            referer=referer,
            utm_source=utm.get("source"),
            utm_medium=utm.get("medium"),
            utm_campaign=utm.get("campaign"),
            utm_content=utm.get("content"),
            utm_term=utm.get("term"),
            attribution_token=mint_attribution_token(),
            token_expires_at=expires_at,
            conversion_state=UNCONVERTED,
            clicked_at=now,
        )
        db.add(click)
        await db.flush()

    logger.info(
        "Referral click tracked for code %s",
        referral_code.code,
        extra={"click_id": str(click.id), "partner_id": str(referral_code.partner_id), "code": referral_code.code},
    )
    return TrackResult(tracking_id=click.attribution_token, click_id=click.id, expires_at=expires_at)
