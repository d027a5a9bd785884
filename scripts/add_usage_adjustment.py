from __future__ import annotations

import argparse
import asyncio
import sys

from sessiongate.persistence.repos.messages import SqlTenantStore
from sessiongate.services.usage import DEFAULT_ADJUSTMENT_AMOUNT, DEFAULT_ADJUSTMENT_TYPE, UsageLedger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Add a manual conversation top-up for the current month")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--amount", type=int, default=DEFAULT_ADJUSTMENT_AMOUNT, help="Conversations to add")
    parser.add_argument("--type", default=DEFAULT_ADJUSTMENT_TYPE, help="Adjustment type label")
    parser.add_argument("--reason", default=None, help="Free-text reason for the audit trail")
    return parser


async def _add(args: argparse.Namespace) -> int:
    tenant = await SqlTenantStore().get(args.tenant)
    if tenant is None:
        print(f"tenant_not_found={args.tenant}", file=sys.stderr)
        return 1
    record = await UsageLedger().add_adjustment(
        args.tenant,
        amount=args.amount,
        type=args.type,
        reason=args.reason,
    )
    print(f"adjustment_id={record.id}")
    print(f"tenant_id={record.tenant_id}")
    print(f"period={record.year:04d}-{record.month:02d}")
    print(f"amount={record.amount}")
    return 0


def main() -> None:
    args = _build_parser().parse_args()
    raise SystemExit(asyncio.run(_add(args)))


if __name__ == "__main__":
    main()
