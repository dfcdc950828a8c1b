"""
Identity store client - user lookups against the Supabase admin API.

The identity provider is a black box: this module only answers "does this
user exist" and returns a few profile fields.
"""
import logging

import httpx

from referral_engine.config import get_settings

logger = logging.getLogger(__name__)


def _profile(data: dict) -> dict:
    metadata = data.get("user_metadata") or {}
    return {
        "id": data.get("id"),
        "email": data.get("email"),
        "full_name": metadata.get("full_name") or metadata.get("name"),
        "created_at": data.get("created_at"),
    }


async def lookup_user(user_id: str) -> dict:
    """
    Fetch a user by id.

    Returns: {"user": dict|None, "error": str|None}
    A missing user is {"user": None, "error": None}.
    """
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        return {"user": None, "error": "Identity store not configured"}

    url = f"{settings.supabase_url.rstrip('/')}/auth/v1/admin/users/{user_id}"
    headers = {
        "apikey": settings.supabase_service_role_key,
        "Authorization": f"Bearer {settings.supabase_service_role_key}",
        "Accept": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=float(settings.identity_timeout_seconds)) as client:
            response = await client.get(url, headers=headers)
        if response.status_code == 404:
            return {"user": None, "error": None}
        response.raise_for_status()
        data = response.json()
    except Exception as e:
        logger.error("Identity lookup failed for user %s: %s", user_id[:8], str(e))
        return {"user": None, "error": str(e)}

    if not data or not data.get("id"):
        return {"user": None, "error": None}
    return {"user": _profile(data), "error": None}
