#!/usr/bin/env python3
"""
presale_admin.py — Operator commands for the presale ledger.

Commands:
    seed-tokens     Create or overwrite the token configuration table
    reconcile       Run one settlement reconciliation pass
    resolve-claim   Resolve a claim left pending by an unknown transfer outcome

Usage:
    python scripts/presale_admin.py seed-tokens
    python scripts/presale_admin.py reconcile
    python scripts/presale_admin.py resolve-claim <purchase_id> [--tx-hash HASH]

Without --tx-hash the pending claim is released back to unclaimed so the
owner can retry; pass the transfer hash once the transfer is confirmed on
the explorer to mark it claimed instead.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from tortoise import Tortoise

# ── Paths ──────────────────────────────────────────────────────
SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
BACKEND_DIR = PROJECT_ROOT / "backend"

# ── Colors ─────────────────────────────────────────────────────
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
RED = "\033[0;31m"
CYAN = "\033[0;36m"
NC = "\033[0m"


def log(msg: str) -> None:
    print(f"{CYAN}[presale_admin]{NC} {msg}")


def ok(msg: str) -> None:
    print(f"{GREEN}[  ok  ]{NC} {msg}")


def err(msg: str) -> None:
    print(f"{RED}[error ]{NC} {msg}", file=sys.stderr)


def load_env() -> None:
    """Load .env from project root or backend."""
    for env_path in (PROJECT_ROOT / ".env", BACKEND_DIR / ".env"):
        if env_path.exists():
            load_dotenv(env_path)
            return
    err("No .env file found. Copy .env.example to .env and fill in values.")
    sys.exit(1)


async def seed_tokens() -> None:
    from app.core.constants import DEFAULT_TOKENS
    from app.services.ledger import LedgerStore

    count = await LedgerStore().seed_token_configs(DEFAULT_TOKENS)
    for token in DEFAULT_TOKENS:
        log(
            f"{YELLOW}{token['symbol']}{NC}: price={token['unit_price']} "
            f"vesting={token['vesting_period_days']}d contract={token['contract_address']}"
        )
    ok(f"Seeded {count} token configs")


async def reconcile() -> None:
    from app.services.ledger import LedgerStore
    from app.services.purchase_limit import PurchaseLimitGuard
    from app.services.settlement import settlement_oracle
    from app.workers.reconciliation import reconcile_once

    ledger = LedgerStore()
    try:
        report = await reconcile_once(ledger, settlement_oracle, PurchaseLimitGuard(ledger))
    finally:
        await settlement_oracle.close()
    ok(
        f"confirmed={report.confirmed} failed={report.failed} "
        f"unresolved={report.unresolved} pending_claims={report.pending_claims}"
    )


async def resolve_claim(purchase_id: str, tx_hash: str | None) -> None:
    from app.core.errors import PresaleError
    from app.services.claim import ClaimOrchestrator
    from app.services.ledger import LedgerStore
    from app.services.settlement import settlement_oracle

    claims = ClaimOrchestrator(LedgerStore(), settlement_oracle)
    try:
        resolved = await claims.resolve_pending_claim(purchase_id, tx_hash)
    except PresaleError as e:
        err(f"{e.code}: {e.message}")
        sys.exit(1)

    if not resolved:
        err(f"Purchase {purchase_id} changed state while resolving; check it again")
        sys.exit(1)
    if tx_hash:
        ok(f"Purchase {purchase_id} marked claimed with {YELLOW}{tx_hash}{NC}")
    else:
        ok(f"Purchase {purchase_id} released back to unclaimed")


async def run(args: argparse.Namespace) -> None:
    from app.core.config import settings

    await Tortoise.init(config=settings.tortoise_config)
    try:
        if args.command == "seed-tokens":
            await seed_tokens()
        elif args.command == "reconcile":
            await reconcile()
        elif args.command == "resolve-claim":
            await resolve_claim(args.purchase_id, args.tx_hash)
    finally:
        await Tortoise.close_connections()


def main() -> None:
    parser = argparse.ArgumentParser(description="Presale ledger operator commands")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("seed-tokens", help="Create or overwrite token configs")
    subparsers.add_parser("reconcile", help="Run one reconciliation pass")

    resolve = subparsers.add_parser("resolve-claim", help="Resolve a pending claim")
    resolve.add_argument("purchase_id", help="Purchase UUID")
    resolve.add_argument("--tx-hash", default=None, help="Confirmed transfer tx hash")

    args = parser.parse_args()

    load_env()
    if str(BACKEND_DIR) not in sys.path:
        sys.path.insert(0, str(BACKEND_DIR))

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
