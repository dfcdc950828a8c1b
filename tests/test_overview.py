"""
Tests for referral_engine/services/overview.py - admin and partner analytics.
"""
import pytest
from datetime import datetime, timedelta, timezone

from referral_engine.services.commissions import approve_commissions, process_conversion
from referral_engine.services.overview import (
    admin_overview,
    month_bounds,
    partner_dashboard,
    period_metrics,
)
from referral_engine.services.partners import create_partner, update_partner
from referral_engine.services.payouts import mark_processed, schedule_payout
from referral_engine.services.tracker import track_click


async def _convert(db, user_id, conversion_type="signup", tier=None, source=None, now=None):
    tracked = await track_click(
        db, "ABC123", client_ip="192.0.2.1", user_agent="ua",
        utm_params={"source": source} if source else None, now=now,
    )
    result = await process_conversion(
        db, user_id, conversion_type, subscription_tier=tier,
        attribution_token=tracked.tracking_id, now=now,
    )
    return result.conversion_id


class TestMonthBounds:
    def test_mid_year(self):
        this_month, last_month = month_bounds(datetime(2026, 3, 15, 12, 30, tzinfo=timezone.utc))
        assert this_month == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert last_month == datetime(2026, 2, 1, tzinfo=timezone.utc)

    def test_january_wraps_to_december(self):
        this_month, last_month = month_bounds(datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc))
        assert this_month == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert last_month == datetime(2025, 12, 1, tzinfo=timezone.utc)


class TestPeriodMetrics:
    @pytest.mark.asyncio
    async def test_all_time_metrics(self, db, partner, referral_code):
        await update_partner(db, partner.id, subscription_commission_rate=500)
        await _convert(db, "user-1", source="instagram")
        await _convert(db, "user-2", "subscription", tier="premium", source="instagram")
        await track_click(db, "ABC123", client_ip="192.0.2.1", user_agent="ua", utm_params={"source": "tiktok"})
        await track_click(db, "ABC123", client_ip="192.0.2.1", user_agent="ua")

        metrics = await period_metrics(db, partner.id)

        assert metrics["clicks"] == 4
        assert metrics["signups"] == 1
        assert metrics["conversions"] == 1
        assert metrics["conversion_rate"] == 25.0
        assert metrics["total_earnings"] == 700
        assert metrics["pending_earnings"] == 700
        assert metrics["average_order_value"] == 2900
        assert metrics["top_referral_source"] == "instagram"
        assert metrics["period_start"] is None

    @pytest.mark.asyncio
    async def test_window_excludes_other_periods(self, db, partner, referral_code, now):
        await _convert(db, "old-user", now=now - timedelta(days=40))
        await _convert(db, "new-user", now=now)

        this_month, last_month = month_bounds(now)
        metrics = await period_metrics(db, partner.id, this_month, None)
        assert metrics["clicks"] == 1
        assert metrics["signups"] == 1
        assert metrics["period_start"].startswith("2026-03-01")

    @pytest.mark.asyncio
    async def test_no_activity(self, db, partner):
        metrics = await period_metrics(db, partner.id)
        assert metrics["clicks"] == 0
        assert metrics["conversion_rate"] == 0.0
        assert metrics["average_order_value"] == 0
        assert metrics["top_referral_source"] is None


class TestAdminOverview:
    @pytest.mark.asyncio
    async def test_overview_totals(self, db, partner, referral_code):
        partner_id = partner.id
        second, _ = await create_partner(
            db, user_id="user-2", contact_email="two@example.com",
            business_name="Second Partner", default_code="SECOND1",
        )
        await update_partner(db, second.id, status="inactive")

        first = await _convert(db, "user-1")
        await _convert(db, "user-2")
        await approve_commissions(db, [first], approved_by="admin-1")
        batch = await schedule_payout(db, partner_id, processed_by="admin-1")
        await mark_processed(db, batch.id, "txn_1")

        overview = await admin_overview(db)

        assert overview["total_partners"] == 2
        assert overview["active_partners"] == 1
        assert overview["total_conversions"] == 2
        assert overview["total_commissions_paid"] == 200
        assert overview["pending_payouts"] == 0
        assert overview["top_performers"][0]["id"] == str(partner_id)
        assert overview["top_performers"][0]["total_earnings"] == 400
        assert len(overview["recent_activity"]) == 2
        assert overview["recent_activity"][0]["partner_name"] == "Jane Smith Media"

    @pytest.mark.asyncio
    async def test_empty_program(self, db):
        overview = await admin_overview(db)
        assert overview["total_partners"] == 0
        assert overview["top_performers"] == []
        assert overview["recent_activity"] == []


class TestPartnerDashboard:
    @pytest.mark.asyncio
    async def test_dashboard_sections(self, db, partner, referral_code, now):
        await _convert(db, "last-month-user", now=now - timedelta(days=20))
        cid = await _convert(db, "this-month-user", now=now)
        await approve_commissions(db, [cid], approved_by="admin-1")
        await schedule_payout(db, partner.id, processed_by="admin-1")

        dashboard = await partner_dashboard(db, partner.id, now=now)

        assert dashboard["partner"]["pending_earnings"] == 400
        assert [c["code"] for c in dashboard["active_codes"]] == ["ABC123"]
        assert dashboard["active_codes"][0]["current_uses"] == 2
        assert len(dashboard["recent_conversions"]) == 2
        assert dashboard["analytics"]["this_month"]["signups"] == 1
        assert dashboard["analytics"]["last_month"]["signups"] == 1
        assert dashboard["analytics"]["all_time"]["signups"] == 2
        assert len(dashboard["payout_history"]) == 1
        assert dashboard["payout_history"][0]["amount"] == 200
        assert dashboard["payout_history"][0]["status"] == "pending"
