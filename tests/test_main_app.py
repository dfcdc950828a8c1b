"""
Tests for referral_engine/main.py - app factory, error rendering and lifespan.
"""
import json
import pytest
from unittest.mock import MagicMock, patch
from fastapi import FastAPI

from referral_engine.errors import CodeExpired, PersistenceFailure
from referral_engine.main import create_app, lifespan, referral_error_handler


def _make_mock_settings(**overrides):
    defaults = {
        "app_env": "test",
        "app_base_url": "http://localhost:3000",
        "log_level": "WARNING",
        "auth_jwt_secret": "jwt-secret",
        "stripe_secret_key": "",
        "sentry_dsn": "",
        "allowed_origins": "https://partners.example.com, ",
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


class TestCreateApp:
    def test_returns_fastapi_instance(self):
        with (
            patch("referral_engine.main.get_settings", return_value=_make_mock_settings()),
            patch("referral_engine.main.configure_structured_logging") as configure,
        ):
            app = create_app()
        assert isinstance(app, FastAPI)
        assert app.title == "Referral Engine"
        configure.assert_called_once_with("WARNING", environment="test")

    def test_routes_registered(self):
        with (
            patch("referral_engine.main.get_settings", return_value=_make_mock_settings()),
            patch("referral_engine.main.configure_structured_logging"),
        ):
            app = create_app()
        paths = {route.path for route in app.routes}
        assert "/api/referral/track" in paths
        assert "/api/referral/convert" in paths
        assert "/api/admin/referrals/payouts" in paths
        assert "/health" in paths


class TestErrorHandler:
    @pytest.mark.asyncio
    async def test_domain_error_shape(self):
        request = MagicMock()
        request.method = "POST"
        request.url.path = "/api/referral/track"
        response = await referral_error_handler(request, CodeExpired())
        assert response.status_code == 400
        assert json.loads(response.body) == {
            "success": False,
            "error": "Referral code has expired",
            "code": "code_expired",
        }

    @pytest.mark.asyncio
    async def test_persistence_failure_is_503(self):
        request = MagicMock()
        request.method = "POST"
        request.url.path = "/api/referral/convert"
        response = await referral_error_handler(request, PersistenceFailure())
        assert response.status_code == 503


class TestLifespan:
    @pytest.mark.asyncio
    async def test_sentry_initialized_when_configured(self):
        settings = _make_mock_settings(sentry_dsn="https://key@sentry.example.com/1")
        with (
            patch("referral_engine.main.get_settings", return_value=settings),
            patch("sentry_sdk.init") as sentry_init,
        ):
            async with lifespan(FastAPI()):
                pass
        sentry_init.assert_called_once()
        assert sentry_init.call_args.kwargs["environment"] == "test"

    @pytest.mark.asyncio
    async def test_starts_without_optional_services(self):
        settings = _make_mock_settings(auth_jwt_secret="")
        with (
            patch("referral_engine.main.get_settings", return_value=settings),
            patch("sentry_sdk.init") as sentry_init,
        ):
            async with lifespan(FastAPI()):
                pass
        sentry_init.assert_not_called()
