from typing import Optional

from fastapi import Depends, Header

from app.core.clock import SystemClock, system_clock
from app.core.config import settings
from app.core.errors import Unauthorized
from app.models.presale import Purchase, Referral
from app.schemas.presale import PurchaseRecord, ReferralPurchaseEntry, ReferralRecord
from app.services.auth import verify_wallet_signature
from app.services.claim import ClaimOrchestrator
from app.services.ledger import LedgerStore
from app.services.purchase import PurchaseOrchestrator, normalize_wallet
from app.services.purchase_limit import PurchaseLimitGuard
from app.services.rate_limiter import build_rate_limiter
from app.services.referrals import ReferralLedger
from app.services.settlement import SettlementOracle, settlement_oracle

# Process-wide singletons; tests swap them through app.dependency_overrides
ledger_store = LedgerStore()
purchase_rate_limiter = build_rate_limiter(settings)


def get_ledger() -> LedgerStore:
    return ledger_store


def get_oracle() -> SettlementOracle:
    return settlement_oracle


def get_clock() -> SystemClock:
    return system_clock


def get_rate_limiter():
    return purchase_rate_limiter


def get_limit_guard(ledger: LedgerStore = Depends(get_ledger)) -> PurchaseLimitGuard:
    return PurchaseLimitGuard(ledger)


def get_purchase_orchestrator(
    ledger: LedgerStore = Depends(get_ledger),
    oracle: SettlementOracle = Depends(get_oracle),
    limit_guard: PurchaseLimitGuard = Depends(get_limit_guard),
    rate_limiter=Depends(get_rate_limiter),
    clock: SystemClock = Depends(get_clock),
) -> PurchaseOrchestrator:
    return PurchaseOrchestrator(ledger, oracle, limit_guard, rate_limiter=rate_limiter, clock=clock)


def get_claim_orchestrator(
    ledger: LedgerStore = Depends(get_ledger),
    oracle: SettlementOracle = Depends(get_oracle),
    clock: SystemClock = Depends(get_clock),
) -> ClaimOrchestrator:
    return ClaimOrchestrator(ledger, oracle, clock=clock)


def get_referral_ledger(
    ledger: LedgerStore = Depends(get_ledger),
    clock: SystemClock = Depends(get_clock),
) -> ReferralLedger:
    return ReferralLedger(ledger, clock=clock)


async def authenticated_wallet(
    signature: Optional[str] = Header(None),
    timestamp: Optional[str] = Header(None),
    walletaddress: Optional[str] = Header(None),
    clock: SystemClock = Depends(get_clock),
) -> Optional[str]:
    """Wallet proven by the signature headers; None when auth is disabled and no header is sent."""
    if not settings.require_wallet_signature:
        return walletaddress.lower() if walletaddress else None
    return verify_wallet_signature(walletaddress, timestamp, signature, clock.now())


def require_same_wallet(authenticated: Optional[str], wallet_address: str) -> None:
    if authenticated is not None and authenticated != normalize_wallet(wallet_address):
        raise Unauthorized("Signature does not match wallet_address")


def purchase_record(purchase: Purchase) -> PurchaseRecord:
    return PurchaseRecord(
        id=str(purchase.id),
        wallet_address=purchase.wallet_address,
        token_symbol=purchase.token_symbol.value,
        amount=float(purchase.amount),
        payment_tx_hash=purchase.payment_tx_hash,
        settlement_tx_hash=purchase.settlement_tx_hash,
        transfer_tx_hash=purchase.transfer_tx_hash,
        purchase_date=purchase.purchase_date,
        claimable=purchase.claimable,
        claimed=purchase.claimed,
        claim_status=purchase.claim_status.value,
        claim_date=purchase.claim_date,
        referrer=purchase.referrer,
    )


def referral_record(link: Referral) -> ReferralRecord:
    return ReferralRecord(
        referrer=link.referrer,
        referred=link.referred,
        bonus_amount=float(link.bonus_amount),
        timestamp=link.timestamp,
        purchases=[
            ReferralPurchaseEntry(amount=float(p.amount), bonus=float(p.bonus), timestamp=p.timestamp)
            for p in link.purchases
        ],
    )
