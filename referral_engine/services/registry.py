"""
Referral code registry - code creation, lookup, usability and usage counting.

Codes are normalized (trimmed, upper-cased) on the way in and on every
lookup. current_uses only changes through increment_usage, a single
conditional UPDATE that checks the cap in the same statement.
"""
import logging
import random
import re
import string
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import get_settings
from referral_engine.errors import (
    CodeAlreadyExists,
    CodeExpired,
    CodeInactive,
    CodeLimitReached,
    CodeNotFound,
    GenerationExhausted,
    LimitExceeded,
    NotFound,
    ValidationError,
)
from referral_engine.models.partner import Partner
from referral_engine.models.referral_code import ReferralCode, CODE_STATUSES
from referral_engine.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")
FALLBACK_BASE = "REF"
SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def normalize_code(raw: Optional[str]) -> str:
    return (raw or "").strip().upper()


def generate_code_candidate(
    base_name: str,
    attempt: int,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Build a candidate code from a partner name.

    The first attempt is the readable form (JOHN24); later attempts add a
    random suffix (JOHNSM24K7Q).
    """
    now = now or datetime.now(timezone.utc)
    rng = rng or random.SystemRandom()
    clean = "".join(c for c in base_name.upper() if c.isascii() and c.isalnum())
    if len(clean) < 3:
        clean = FALLBACK_BASE
    year = now.strftime("%y")

    if attempt == 0:
        return f"{clean[:8]}{year}"
    suffix = "".join(rng.choice(SUFFIX_ALPHABET) for _ in range(3))
    return f"{clean[:6]}{year}{suffix}"


def check_usable(code: ReferralCode, now: Optional[datetime] = None) -> None:
    """Raise unless the code is active, unexpired and under its cap."""
    now = now or datetime.now(timezone.utc)
    if code.status != "active":
        if code.status == "expired":
            raise CodeExpired()
        raise CodeInactive()
    if code.expires_at is not None and now >= ensure_utc(code.expires_at):
        raise CodeExpired()
    if code.max_uses is not None and code.current_uses >= code.max_uses:
        raise CodeLimitReached()


def is_usable(code: ReferralCode, now: Optional[datetime] = None) -> bool:
    try:
        check_usable(code, now)
    except (CodeInactive, CodeExpired, CodeLimitReached):
        return False
    return True


async def _code_taken(db: AsyncSession, code: str) -> bool:
    result = await db.execute(select(ReferralCode.id).where(ReferralCode.code == code))
    return result.scalar_one_or_none() is not None


async def _insert_code(db: AsyncSession, referral_code: ReferralCode) -> bool:
    """Insert inside a savepoint. False when the unique constraint rejects it."""
    try:
        async with db.begin_nested():
            db.add(referral_code)
            await db.flush()
    except IntegrityError:
        return False
    return True


async def create_code(
    db: AsyncSession,
    partner_id: uuid.UUID,
    explicit_code: Optional[str] = None,
    description: Optional[str] = None,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> ReferralCode:
    """
    Create a referral code for a partner inside the caller's transaction.

    Explicit codes are taken verbatim (normalized). Otherwise candidates are
    generated from the partner name with a bounded number of attempts.
    """
    if max_uses is not None and max_uses < 1:
        raise ValidationError("max_uses must be a positive integer")

    partner = await db.get(Partner, partner_id)
    if partner is None:
        raise NotFound("Partner not found")

    def _build(code: str) -> ReferralCode:
        return ReferralCode(
            code=code,
            partner_id=partner_id,
            status="active",
            description=description,
            max_uses=max_uses,
            current_uses=0,
            expires_at=expires_at,
        )

    if explicit_code is not None:
        code = normalize_code(explicit_code)
        if not CODE_PATTERN.match(code):
            raise ValidationError(
                "Referral code must be 3-32 characters of letters, digits, '-' or '_'"
            )
        if await _code_taken(db, code):
            raise CodeAlreadyExists()
        referral_code = _build(code)
        if not await _insert_code(db, referral_code):
            raise CodeAlreadyExists()
        logger.info("Referral code %s created for partner %s", code, str(partner_id)[:8])
        return referral_code

    base_name = partner.business_name or partner.contact_email.split("@")[0]
    attempts = get_settings().code_generation_attempts
    for attempt in range(attempts):
        candidate = generate_code_candidate(base_name, attempt)
        if await _code_taken(db, candidate):
            continue
        referral_code = _build(candidate)
        if await _insert_code(db, referral_code):
            logger.info(
                "Referral code %s generated for partner %s (attempt %d)",
                candidate, str(partner_id)[:8], attempt + 1,
            )
            return referral_code

    logger.warning(
        "Referral code generation exhausted after %d attempts for partner %s",
        attempts, str(partner_id)[:8],
    )
    raise GenerationExhausted()


async def resolve_code(db: AsyncSession, code: Optional[str]) -> ReferralCode:
    """Look up a code case- and whitespace-insensitively."""
    normalized = normalize_code(code)
    if not normalized:
        raise CodeNotFound()
    result = await db.execute(
        select(ReferralCode)
        .where(ReferralCode.code == normalized)
        .execution_options(populate_existing=True)
    )
    referral_code = result.scalar_one_or_none()
    if referral_code is None:
        raise CodeNotFound()
    return referral_code


async def increment_usage(db: AsyncSession, code_id: uuid.UUID) -> None:
    """
    Count one use of a code inside the caller's transaction.

    The cap check and the increment are one statement, so concurrent callers
    can never push current_uses past max_uses.
    """
    result = await db.execute(
        update(ReferralCode)
        .where(ReferralCode.id == code_id)
        .where(
            or_(
                ReferralCode.max_uses.is_(None),
                ReferralCode.current_uses < ReferralCode.max_uses,
            )
        )
        .values(current_uses=ReferralCode.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        exists = await db.execute(select(ReferralCode.id).where(ReferralCode.id == code_id))
        if exists.scalar_one_or_none() is None:
            raise NotFound("Referral code not found")
        raise LimitExceeded()


async def set_code_status(db: AsyncSession, code_id: uuid.UUID, status: str) -> ReferralCode:
    if status not in CODE_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(CODE_STATUSES)}")
    referral_code = await db.get(ReferralCode, code_id)
    if referral_code is None:
        raise NotFound("Referral code not found")
    referral_code.status = status
    await db.flush()
    logger.info("Referral code %s set to %s", referral_code.code, status)
    return referral_code


async def list_codes(
    db: AsyncSession,
    partner_id: uuid.UUID,
    active_only: bool = False,
) -> list[ReferralCode]:
    query = select(ReferralCode).where(ReferralCode.partner_id == partner_id)
    if active_only:
        query = query.where(ReferralCode.status == "active")
    result = await db.execute(
        query.order_by(ReferralCode.created_at.desc()).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
