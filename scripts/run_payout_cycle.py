"""
Run one payout cycle. Meant for a cron trigger; the service itself never
schedules payouts on its own.

Steps:
- Auto-approve pending commissions older than --days-old (default from settings)
- Schedule a payout batch for every active partner with approved commissions

Usage:
    python scripts/run_payout_cycle.py
    python scripts/run_payout_cycle.py --days-old 14
    python scripts/run_payout_cycle.py --dry-run
"""
import argparse
import asyncio
import logging
import uuid

from referral_engine.config import get_settings
from referral_engine.database import async_session_factory
from referral_engine.services.payouts import run_payout_cycle
from referral_engine.utils.logging import configure_structured_logging, correlation_scope

logger = logging.getLogger(__name__)


async def main(days_old: int | None, dry_run: bool, processed_by: str) -> int:
    with correlation_scope(f"payout-cycle-{uuid.uuid4().hex[:12]}"):
        async with async_session_factory() as session:
            summary = await run_payout_cycle(
                session,
                processed_by=processed_by,
                days_old=days_old,
                dry_run=dry_run,
            )

    mode = "DRY RUN" if dry_run else "LIVE"
    print(f"\n{'=' * 60}")
    print(f"PAYOUT CYCLE ({mode})")
    print(f"{'=' * 60}")
    print(f"Commissions auto-approved: {summary['approved']}")
    print(f"Payouts scheduled:         {len(summary['scheduled'])}")
    for item in summary["scheduled"]:
        dollars, cents = divmod(item["amount"], 100)
        print(f"  - partner {item['partner_id'][:8]}: ${dollars}.{cents:02d}")
    print(f"Partners skipped:          {summary['skipped']}")
    print(f"Partners failed:           {summary['failed']}")
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one referral payout cycle")
    parser.add_argument("--days-old", type=int, default=None, help="Auto-approve commissions older than N days")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be scheduled without writing")
    parser.add_argument("--processed-by", default="cron", help="Actor recorded on scheduled batches")
    args = parser.parse_args()

    settings = get_settings()
    configure_structured_logging(settings.log_level, environment=settings.app_env)
    raise SystemExit(asyncio.run(main(args.days_old, args.dry_run, args.processed_by)))
