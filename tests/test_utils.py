"""
Tests for the utility modules: structured logging, rate limiter, timezone.
All external dependencies (Redis, settings) are mocked.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from referral_engine.errors import NotFound, PersistenceFailure, ValidationError


# ---------------------------------------------------------------------------
# referral_engine/utils/logging.py
# ---------------------------------------------------------------------------


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("referral_engine.test", logging.INFO, __file__, 1, msg, (), None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


class TestStructuredJsonFormatter:
    def test_core_fields(self):
        from referral_engine.utils.logging import StructuredJsonFormatter, set_correlation_id

        set_correlation_id("cid-1")
        line = json.loads(StructuredJsonFormatter().format(_record("hello")))
        assert line["level"] == "INFO"
        assert line["module"] == "referral_engine.test"
        assert line["message"] == "hello"
        assert line["correlation_id"] == "cid-1"
        assert line["timestamp"].endswith("Z")

    def test_referral_identifiers_are_lifted(self):
        from referral_engine.utils.logging import StructuredJsonFormatter

        line = json.loads(StructuredJsonFormatter().format(
            _record("tracked", partner_id="p-1", click_id="c-1", error_code="code_expired", unrelated="x")
        ))
        assert line["partner_id"] == "p-1"
        assert line["click_id"] == "c-1"
        assert line["error_code"] == "code_expired"
        assert "unrelated" not in line

    def test_exception_included(self):
        from referral_engine.utils.logging import StructuredJsonFormatter

        try:
            raise ValueError("boom")
        except ValueError:
            import sys
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        line = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: boom" in line["exception"]

    def test_service_and_environment_fields(self):
        from referral_engine.utils.logging import StructuredJsonFormatter

        line = json.loads(StructuredJsonFormatter(environment="production").format(_record("x")))
        assert line["service"] == "referral-engine"
        assert line["env"] == "production"
        assert "env" not in json.loads(StructuredJsonFormatter().format(_record("x")))

    def test_uuid_identifiers_render_as_strings(self):
        import uuid
        from referral_engine.utils.logging import StructuredJsonFormatter

        batch_id = uuid.uuid4()
        line = json.loads(StructuredJsonFormatter().format(_record("scheduled", batch_id=batch_id)))
        assert line["batch_id"] == str(batch_id)

    def test_correlation_scope_restores_previous_id(self):
        from referral_engine.utils.logging import correlation_scope, get_correlation_id, set_correlation_id

        set_correlation_id("outer")
        with correlation_scope("payout-cycle-1") as cid:
            assert cid == "payout-cycle-1"
            assert get_correlation_id() == "payout-cycle-1"
        assert get_correlation_id() == "outer"

        with correlation_scope() as generated:
            assert len(generated) == 32

    def test_correlation_ids_are_unique(self):
        from referral_engine.utils.logging import generate_correlation_id

        assert generate_correlation_id() != generate_correlation_id()
        assert len(generate_correlation_id()) == 32

    def test_configure_installs_json_handler(self):
        from referral_engine.utils.logging import StructuredJsonFormatter, configure_structured_logging

        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_structured_logging("WARNING")
            assert root.level == logging.WARNING
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredJsonFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


# ---------------------------------------------------------------------------
# referral_engine/utils/rate_limiter.py
# ---------------------------------------------------------------------------


def _make_redis_with_pipeline(results):
    mock_pipe = MagicMock()
    mock_pipe.execute = AsyncMock(return_value=results)
    mock_redis = MagicMock()
    mock_redis.pipeline.return_value = mock_pipe
    return mock_redis


class TestCheckRateLimit:
    """Tests for the Redis sliding-window rate limiter."""

    @pytest.mark.asyncio
    async def test_under_limit_returns_allowed(self):
        mock_redis = _make_redis_with_pipeline([0, True, 5, True])

        with patch("referral_engine.utils.rate_limiter.get_redis", new_callable=AsyncMock, return_value=mock_redis):
            from referral_engine.utils.rate_limiter import check_rate_limit

            allowed, retry_after = await check_rate_limit("track:1.2.3.4", limit=30)
        assert allowed is True
        assert retry_after is None

    @pytest.mark.asyncio
    async def test_over_limit_returns_not_allowed(self):
        mock_redis = _make_redis_with_pipeline([0, True, 31, True])

        with patch("referral_engine.utils.rate_limiter.get_redis", new_callable=AsyncMock, return_value=mock_redis):
            from referral_engine.utils.rate_limiter import check_rate_limit

            allowed, retry_after = await check_rate_limit("track:1.2.3.4", limit=30)
        assert allowed is False
        assert retry_after == 60

    @pytest.mark.asyncio
    async def test_key_is_namespaced(self):
        mock_redis = _make_redis_with_pipeline([0, True, 1, True])

        with patch("referral_engine.utils.rate_limiter.get_redis", new_callable=AsyncMock, return_value=mock_redis):
            from referral_engine.utils.rate_limiter import check_rate_limit

            await check_rate_limit("track:1.2.3.4", limit=30)
        pipe = mock_redis.pipeline.return_value
        assert pipe.zcard.call_args.args[0] == "referrals:ratelimit:track:1.2.3.4"

    @pytest.mark.asyncio
    async def test_redis_failure_fails_open(self):
        """When Redis is unavailable, requests are allowed through."""
        with patch(
            "referral_engine.utils.rate_limiter.get_redis",
            new_callable=AsyncMock,
            side_effect=ConnectionError("Redis down"),
        ):
            from referral_engine.utils.rate_limiter import check_rate_limit

            allowed, retry_after = await check_rate_limit("track:1.2.3.4", limit=30)
        assert allowed is True
        assert retry_after is None


# ---------------------------------------------------------------------------
# referral_engine/utils/timezone.py
# ---------------------------------------------------------------------------


class TestTimezoneHelpers:
    def test_utcnow_is_aware(self):
        from referral_engine.utils.timezone import utcnow

        assert utcnow().tzinfo is not None

    def test_ensure_utc_naive(self):
        from referral_engine.utils.timezone import ensure_utc

        assert ensure_utc(datetime(2026, 3, 1, 12, 0)) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_ensure_utc_converts_offsets(self):
        from referral_engine.utils.timezone import ensure_utc

        plus_two = timezone(timedelta(hours=2))
        converted = ensure_utc(datetime(2026, 3, 1, 14, 0, tzinfo=plus_two))
        assert converted == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert converted.tzinfo == timezone.utc

    def test_isoformat(self):
        from referral_engine.utils.timezone import isoformat

        assert isoformat(None) is None
        assert isoformat(datetime(2026, 3, 1, 12, 0)) == "2026-03-01T12:00:00+00:00"


# ---------------------------------------------------------------------------
# referral_engine/errors.py and the atomic unit of work
# ---------------------------------------------------------------------------


class TestErrors:
    def test_default_messages_and_codes(self):
        err = NotFound()
        assert err.message == "Not found"
        assert err.status_code == 404
        assert str(ValidationError("bad input")) == "bad input"
        assert PersistenceFailure.status_code == 503


class TestAtomic:
    @pytest.mark.asyncio
    async def test_commits_on_success(self):
        from referral_engine.database import atomic

        db = AsyncMock()
        async with atomic(db, "op"):
            pass
        db.commit.assert_awaited_once()
        db.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_domain_error_rolls_back_and_propagates(self):
        from referral_engine.database import atomic

        db = AsyncMock()
        with pytest.raises(NotFound):
            async with atomic(db, "op"):
                raise NotFound("gone")
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_error_becomes_persistence_failure(self):
        from sqlalchemy.exc import OperationalError
        from referral_engine.database import atomic

        db = AsyncMock()
        with pytest.raises(PersistenceFailure):
            async with atomic(db, "op"):
                raise OperationalError("SELECT 1", {}, Exception("connection lost"))
        db.rollback.assert_awaited_once()
