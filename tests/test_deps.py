"""
Tests for referral_engine/api/deps.py - bearer token verification and roles.
"""
import os

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from referral_engine.api.deps import (
    AuthContext,
    decode_token,
    get_auth_context,
    require_admin,
)


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestDecodeToken:
    def test_valid_token(self, token_for):
        ctx = decode_token(token_for("user-1"))
        assert ctx.user_id == "user-1"
        assert ctx.roles == frozenset()
        assert ctx.is_admin is False

    def test_roles_from_app_metadata(self, token_for):
        ctx = decode_token(token_for("admin-1", roles=["admin"]))
        assert ctx.is_admin is True

    def test_single_role_claim(self, token_for):
        ctx = decode_token(token_for("svc", role="service"))
        assert ctx.roles == frozenset({"service"})

    def test_expired(self, token_for):
        with pytest.raises(HTTPException) as exc:
            decode_token(token_for("user-1", expires_in=-60))
        assert exc.value.status_code == 401
        assert exc.value.detail == "Token expired"

    def test_bad_signature(self):
        import jwt
        token = jwt.encode({"sub": "user-1", "aud": "authenticated"}, "wrong-secret", algorithm="HS256")
        with pytest.raises(HTTPException) as exc:
            decode_token(token)
        assert exc.value.detail == "Invalid token"

    def test_wrong_audience(self, token_for):
        with pytest.raises(HTTPException) as exc:
            decode_token(token_for("user-1", aud="someone-else"))
        assert exc.value.status_code == 401

    def test_missing_subject(self):
        import jwt
        token = jwt.encode({"aud": "authenticated"}, os.environ["APP_SECRET_KEY"], algorithm="HS256")
        with pytest.raises(HTTPException) as exc:
            decode_token(token)
        assert exc.value.detail == "Invalid token payload"


class TestAuthContext:
    def test_can_act_for_self_only(self):
        ctx = AuthContext(user_id="user-1")
        assert ctx.can_act_for("user-1") is True
        assert ctx.can_act_for("user-2") is False

    def test_service_and_admin_act_for_anyone(self):
        assert AuthContext(user_id="svc", roles=frozenset({"service"})).can_act_for("user-2")
        assert AuthContext(user_id="adm", roles=frozenset({"admin"})).can_act_for("user-2")


class TestDependencies:
    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        with pytest.raises(HTTPException) as exc:
            await get_auth_context(None)
        assert exc.value.status_code == 401
        assert exc.value.detail == "Authentication required"

    @pytest.mark.asyncio
    async def test_credentials_resolved(self, token_for):
        ctx = await get_auth_context(_credentials(token_for("user-1")))
        assert ctx.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_require_admin(self):
        admin = AuthContext(user_id="adm", roles=frozenset({"admin"}))
        assert await require_admin(admin) is admin
        with pytest.raises(HTTPException) as exc:
            await require_admin(AuthContext(user_id="user-1"))
        assert exc.value.status_code == 403
