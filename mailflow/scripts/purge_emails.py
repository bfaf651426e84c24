"""Delete finished emails (Sent, Failed, Cancelled) and their logs after a retention period.

Usage: python -m mailflow.scripts.purge_emails [--days N]
"""
import argparse
import asyncio
from datetime import timedelta

from mailflow.config import settings
from mailflow.database import AsyncSessionLocal
from mailflow.services import outbox
from mailflow.services.clock import Clock, system_clock


async def purge_emails(days: int, clock: Clock = system_clock) -> int:
    async with AsyncSessionLocal() as db:
        purged = await outbox.purge_terminal_emails(db, older_than=clock.now() - timedelta(days=days))
    print(f"Purged {purged} emails older than {days} days")
    return purged


def main():
    parser = argparse.ArgumentParser(description="Purge finished mailflow emails")
    parser.add_argument(
        "--days", type=int, default=settings.OUTBOX_RETENTION_DAYS,
        help="keep finished emails updated within this many days",
    )
    args = parser.parse_args()
    if args.days < 0:
        parser.error("--days must not be negative")
    asyncio.run(purge_emails(args.days))


if __name__ == "__main__":
    main()
