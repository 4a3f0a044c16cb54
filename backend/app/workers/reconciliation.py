"""
Settlement reconciliation worker.

Resolves SettlementAttempts whose outcome the purchase flow could not see:
attempts marked indeterminate, and pending attempts older than the grace
period (the process died between journaling and resolving them).

For each one the oracle is asked whether it processed the payment id:
- processed: the Purchase is committed, dated at the attempt's creation
- not processed and past the grace period: the attempt fails and the cap
  reservation is released
- oracle or ledger error: logged and left for the next pass

Claims stuck in ``pending`` are only logged; a
transfer cannot be looked up by id, so an operator resolves them with
``scripts/presale_admin.py resolve-claim``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from app.core.clock import SystemClock, system_clock
from app.core.config import settings
from app.models.presale import SettlementStatus
from app.services.ledger import LedgerStore
from app.services.purchase_limit import PurchaseLimitGuard
from app.services.settlement import SettlementOracle, settlement_oracle
from app.services.vesting import as_utc

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    confirmed: int = 0
    failed: int = 0
    unresolved: int = 0
    pending_claims: int = 0


async def reconcile_once(
    ledger: LedgerStore,
    oracle: SettlementOracle,
    limit_guard: PurchaseLimitGuard,
    clock: SystemClock = system_clock,
    grace_seconds: Optional[int] = None,
    timeout: Optional[float] = None,
) -> ReconcileReport:
    grace = timedelta(seconds=grace_seconds if grace_seconds is not None else settings.reconcile_grace_seconds)
    timeout = timeout if timeout is not None else settings.settlement_timeout_seconds
    now = clock.now()
    report = ReconcileReport()

    for attempt in await ledger.open_attempts():
        overdue = now - as_utc(attempt.created_at) >= grace
        if attempt.status == SettlementStatus.PENDING and not overdue:
            # Possibly still in flight in a request handler
            continue

        try:
            processed = await asyncio.wait_for(oracle.payment_processed(attempt.payment_id), timeout=timeout)
        except Exception as e:
            logger.warning(f"reconcile: could not query payment {attempt.payment_id}: {e!r}")
            report.unresolved += 1
            continue

        try:
            if processed:
                purchase = await ledger.record_purchase(attempt, attempt.settlement_tx_hash, attempt.created_at)
                if purchase is not None:
                    logger.info(f"reconcile: payment {attempt.payment_id} settled, purchase {purchase.id} recorded")
                    report.confirmed += 1
            elif overdue:
                if await ledger.mark_attempt(attempt, SettlementStatus.FAILED, now, "not processed by oracle"):
                    await limit_guard.release(attempt.wallet_address, attempt.token_symbol, attempt.reserved_tokens)
                    logger.info(f"reconcile: payment {attempt.payment_id} never settled, marked failed")
                    report.failed += 1
            else:
                report.unresolved += 1
        except Exception as e:
            # One bad attempt must not stall the rest of the journal
            logger.error(f"reconcile: could not resolve payment {attempt.payment_id}: {e!r}")
            report.unresolved += 1

    for purchase in await ledger.pending_claims():
        logger.error(
            f"reconcile: purchase {purchase.id} ({purchase.wallet_address}) has a pending claim; "
            "resolve with presale_admin.py resolve-claim"
        )
        report.pending_claims += 1

    return report


async def reconciliation_loop() -> None:
    """Background loop running reconcile_once every reconcile_interval_seconds."""
    ledger = LedgerStore()
    limit_guard = PurchaseLimitGuard(ledger)

    while True:
        try:
            report = await reconcile_once(ledger, settlement_oracle, limit_guard)
            if report.confirmed or report.failed or report.unresolved or report.pending_claims:
                logger.info(f"reconcile: {report}")
        except Exception as e:
            logger.error(f"reconcile: unhandled error: {e}")

        await asyncio.sleep(settings.reconcile_interval_seconds)
