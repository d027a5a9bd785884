from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from sessiongate.core.config import get_settings
from sessiongate.persistence.repos.message_cache import SqlMessageCacheStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete expired or delivered deferred messages")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Keep entries newer than this many days (default: MESSAGE_CACHE_RETENTION_DAYS)",
    )
    return parser


async def prune(retention_days: int | None = None) -> int:
    # Entries past expiry or delivered before the cutoff are never read again.
    days = retention_days if retention_days is not None else get_settings().message_cache_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=max(0, days))
    deleted = await SqlMessageCacheStore().prune(before=cutoff)
    print(f"pruned_message_cache_entries={deleted}")
    return deleted


def main() -> None:
    args = _build_parser().parse_args()
    asyncio.run(prune(args.retention_days))


if __name__ == "__main__":
    main()
