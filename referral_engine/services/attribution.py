"""
Attribution resolver - maps an attribution token (or an already-attributed
user) back to the click that earned the credit.

Failures are soft: a missing, unknown or expired token resolves to None.
The code's status after the click is not consulted; a click that was valid
when it happened stays attributable.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.models.click import Click
from referral_engine.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)


async def resolve_token(
    db: AsyncSession,
    token: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Click]:
    """Return the click behind a token, or None when there is no attribution."""
    token = (token or "").strip()
    if not token:
        return None

    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Click)
        .where(Click.attribution_token == token)
        .execution_options(populate_existing=True)
    )
    click = result.scalar_one_or_none()
    if click is None:
        logger.debug("Unknown attribution token")
        return None
    if now >= ensure_utc(click.token_expires_at):
        logger.info("Attribution token expired", extra={"click_id": str(click.id)})
        return None
    return click


async def resolve_for_user(db: AsyncSession, user_id: str) -> Optional[Click]:
    """Return the click a user has already been attributed to, if any."""
    result = await db.execute(
        select(Click)
        .where(Click.converted_user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
