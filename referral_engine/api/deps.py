"""
Request authorization - resolves the bearer token into an AuthContext.

Tokens are HS256 JWTs issued by the identity provider. Roles come from the
app_metadata.roles claim, falling back to the single role claim.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from referral_engine.config import get_settings

logger = logging.getLogger(__name__)
bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"
SERVICE_ROLE = "service"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def can_act_for(self, user_id: str) -> bool:
        """True for the user themselves and for admin or service callers."""
        return self.user_id == user_id or bool(self.roles & {ADMIN_ROLE, SERVICE_ROLE})


def _roles_from_claims(payload: dict) -> frozenset:
    app_metadata = payload.get("app_metadata") or {}
    roles = app_metadata.get("roles")
    if isinstance(roles, str):
        roles = [roles]
    if not roles:
        role = payload.get("role")
        roles = [role] if role else []
    return frozenset(r for r in roles if isinstance(r, str))


def decode_token(token: str) -> AuthContext:
    """Verify a JWT and build the AuthContext. Raises HTTPException(401)."""
    import jwt as pyjwt
    settings = get_settings()

    try:
        payload = pyjwt.decode(
            token,
            settings.auth_jwt_secret or settings.app_secret_key,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience or None,
            options={"verify_aud": bool(settings.auth_jwt_audience)},
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return AuthContext(user_id=user_id, roles=_roles_from_claims(payload))


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    """Dependency that requires a valid bearer token."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Authentication required")
    return decode_token(credentials.credentials)


async def require_admin(
    auth: AuthContext = Depends(get_auth_context),
) -> AuthContext:
    """Dependency that requires the admin role."""
    if not auth.is_admin:
        logger.warning("Admin access denied", extra={"user_id": auth.user_id[:8]})
        raise HTTPException(status_code=403, detail="Admin access required")
    return auth
