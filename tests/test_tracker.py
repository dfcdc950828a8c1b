"""
Tests for referral_engine/services/tracker.py - click recording.
"""
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import func, select

from referral_engine.errors import CodeExpired, CodeInactive, CodeLimitReached, CodeNotFound
from referral_engine.models.click import Click, Unconverted
from referral_engine.services.registry import (
    create_code,
    increment_usage,
    resolve_code,
    set_code_status,
)
from referral_engine.services.tracker import _clean_utm, mint_attribution_token, track_click
from referral_engine.utils.timezone import ensure_utc


async def _click_count(db) -> int:
    return (await db.execute(select(func.count(Click.id)))).scalar_one()


class TestTrackClick:
    @pytest.mark.asyncio
    async def test_records_click_and_mints_token(self, db, referral_code, now):
        result = await track_click(
            db,
            "abc123",
            client_ip="203.0.113.9",
            user_agent="Mozilla/5.0",
            referer="https://instagram.com/jane",
            utm_params={"source": "instagram", "campaign": "spring"},
            now=now,
        )

        assert len(result.tracking_id) >= 40
        assert ensure_utc(result.expires_at) == now + timedelta(days=30)

        click = await db.get(Click, result.click_id)
        assert click.attribution_token == result.tracking_id
        assert click.referral_code_id == referral_code.id
        assert click.partner_id == referral_code.partner_id
        assert click.ip_address == "203.0.113.9"
        assert click.utm_source == "instagram"
        assert click.utm_campaign == "spring"
        assert click.utm_medium is None
        assert click.state == Unconverted()
        assert click.converted_to_signup is False

    @pytest.mark.asyncio
    async def test_tracking_does_not_count_as_use(self, db, referral_code):
        await track_click(db, "ABC123", client_ip="1.1.1.1", user_agent="ua")
        await track_click(db, "ABC123", client_ip="1.1.1.1", user_agent="ua")
        refreshed = await resolve_code(db, "ABC123")
        assert refreshed.current_uses == 0
        assert await _click_count(db) == 2

    @pytest.mark.asyncio
    async def test_each_click_gets_its_own_token(self, db, referral_code):
        a = await track_click(db, "ABC123", client_ip="1.1.1.1", user_agent="ua")
        b = await track_click(db, "ABC123", client_ip="1.1.1.1", user_agent="ua")
        assert a.tracking_id != b.tracking_id

    @pytest.mark.asyncio
    async def test_expired_code_persists_nothing(self, db, partner):
        """Tracking EXPIRED1 after its expiry fails and stores no click."""
        past = datetime.now(timezone.utc) - timedelta(days=1)
        await create_code(db, partner.id, explicit_code="EXPIRED1", expires_at=past)
        await db.commit()

        with pytest.raises(CodeExpired):
            await track_click(db, "EXPIRED1", client_ip="1.1.1.1", user_agent="ua")
        assert await _click_count(db) == 0

    @pytest.mark.asyncio
    async def test_unknown_code(self, db, referral_code):
        with pytest.raises(CodeNotFound):
            await track_click(db, "MISSING", client_ip="1.1.1.1", user_agent="ua")
        assert await _click_count(db) == 0

    @pytest.mark.asyncio
    async def test_inactive_code(self, db, referral_code):
        await set_code_status(db, referral_code.id, "inactive")
        await db.commit()
        with pytest.raises(CodeInactive):
            await track_click(db, "ABC123", client_ip="1.1.1.1", user_agent="ua")

    @pytest.mark.asyncio
    async def test_code_at_cap(self, db, partner):
        code = await create_code(db, partner.id, explicit_code="ONEUSE", max_uses=1)
        await db.commit()
        await increment_usage(db, code.id)
        await db.commit()

        with pytest.raises(CodeLimitReached):
            await track_click(db, "ONEUSE", client_ip="1.1.1.1", user_agent="ua")

    @pytest.mark.asyncio
    async def test_missing_client_details(self, db, referral_code):
        result = await track_click(db, "ABC123", client_ip="", user_agent="")
        click = await db.get(Click, result.click_id)
        assert click.ip_address == "unknown"
        assert click.user_agent == "unknown"


class TestHelpers:
    def test_tokens_are_unique(self):
        tokens = {mint_attribution_token() for _ in range(100)}
        assert len(tokens) == 100

    def test_clean_utm_accepts_both_key_styles(self):
        cleaned = _clean_utm({"utm_source": " tiktok ", "medium": "social", "campaign": "", "term": None})
        assert cleaned == {"source": "tiktok", "medium": "social"}

    def test_clean_utm_truncates(self):
        cleaned = _clean_utm({"content": "x" * 400})
        assert len(cleaned["content"]) == 255

    def test_clean_utm_none(self):
        assert _clean_utm(None) == {}
