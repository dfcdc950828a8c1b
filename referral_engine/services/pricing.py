"""
Tier pricing - the monthly price of a subscription tier in cents.

Stripe is the source of truth when a price id is configured; the configured
cents are the fallback. The Stripe SDK is synchronous and runs via
run_in_executor so it never blocks the event loop.
"""
import asyncio
import logging

from referral_engine.config import get_settings
from referral_engine.errors import ValidationError

logger = logging.getLogger(__name__)

PAID_TIERS = ("premium", "enterprise")


def _get_stripe():
    """Get configured Stripe module. Raises if not configured."""
    import stripe
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise ValueError("Stripe secret key not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 1
    return stripe


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous Stripe SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def configured_price(tier: str) -> int:
    settings = get_settings()
    return {
        "free": 0,
        "premium": settings.tier_price_premium_cents,
        "enterprise": settings.tier_price_enterprise_cents,
    }[tier]


async def get_tier_price(tier: str) -> int:
    """Monthly price of a tier in cents (0 for free)."""
    if tier == "free":
        return 0
    if tier not in PAID_TIERS:
        raise ValidationError(f"Unknown subscription tier: {tier}")

    settings = get_settings()
    price_id = {
        "premium": settings.stripe_price_premium,
        "enterprise": settings.stripe_price_enterprise,
    }[tier]
    if not price_id or not settings.stripe_secret_key:
        return configured_price(tier)

    try:
        stripe = _get_stripe()
        price = await _run_sync(stripe.Price.retrieve, price_id)
        unit_amount = price.get("unit_amount") if hasattr(price, "get") else price.unit_amount
        if isinstance(unit_amount, int) and unit_amount >= 0:
            return unit_amount
        logger.warning("Stripe price %s has no integer unit_amount, using configured price", price_id)
    except Exception as e:
        logger.warning("Stripe price lookup failed for %s: %s. Using configured price.", tier, str(e))
    return configured_price(tier)
