"""
Dev bootstrap script — seed a local account with credits.

Usage:
    python -m scripts.bootstrap_dev [account_id] [amount] [--create-tables]

This will:
  1. Optionally create the tables from the ORM models (handy for SQLite;
     use `alembic upgrade head` against PostgreSQL)
  2. Credit the account through the ledger with a MANUAL_DEV_… source id
  3. Print the resulting balance

Safe to re-run: each run uses a fresh source id, so it credits again.
"""

import argparse
import asyncio
import datetime
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from lookup_meter.core.database import Base, async_session_factory, engine
from lookup_meter.services import ledger

import lookup_meter.models.search_cache  # noqa: F401  (registers the table)


async def main(account_id: str, amount: int, create_tables: bool) -> None:
    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    source_id = "MANUAL_DEV_" + datetime.datetime.now(datetime.timezone.utc).strftime(
        "%Y%m%d%H%M%S%f"
    )

    async with async_session_factory() as session:
        balance = await ledger.credit(
            session,
            account_id,
            amount,
            source_id,
            description="Dev bootstrap credits",
        )

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  Account:    {account_id}")
    print(f"  Credited:   {amount} ({source_id})")
    print(f"  Balance:    {balance}")
    print()
    print(f"  Try:  curl -H 'X-Account-Id: {account_id}' ...")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed a dev account with credits.")
    parser.add_argument("account_id", nargs="?", default="dev-account")
    parser.add_argument("amount", nargs="?", type=int, default=100)
    parser.add_argument("--create-tables", action="store_true")
    args = parser.parse_args()
    asyncio.run(main(args.account_id, args.amount, args.create_tables))
