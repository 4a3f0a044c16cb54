import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends

from app.schemas.presale import (
    BalanceData,
    BalanceResponse,
    CheckPurchaseLimitRequest,
    ClaimableData,
    ClaimableItem,
    ClaimableResponse,
    ClaimData,
    ClaimRequest,
    ClaimResponse,
    ClaimStatusData,
    ClaimStatusResponse,
    HistoryEntry,
    PurchaseData,
    PurchaseLimitData,
    PurchaseLimitResponse,
    PurchaseRequest,
    PurchaseResponse,
    PurchasesResponse,
    TokenStats,
    TokenStatsResponse,
    TotalPurchasesData,
    TotalPurchasesResponse,
)
from app.services.claim import ClaimOrchestrator
from app.services.ledger import LedgerStore
from app.services.purchase import PurchaseOrchestrator, normalize_wallet
from app.services.purchase_limit import PurchaseLimitGuard

from .common import (
    authenticated_wallet,
    get_claim_orchestrator,
    get_ledger,
    get_limit_guard,
    get_purchase_orchestrator,
    purchase_record,
    require_same_wallet,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tokens", tags=["tokens"])


def _history(entries) -> list[HistoryEntry]:
    return [HistoryEntry(amount=float(h["amount"]), date=h["date"], tx_hash=h["tx_hash"]) for h in entries]


@router.get(
    "/stats",
    response_model=TokenStatsResponse,
    summary="Token sale configuration and progress",
)
async def token_stats(ledger: LedgerStore = Depends(get_ledger)) -> TokenStatsResponse:
    tokens = await ledger.token_configs()
    return TokenStatsResponse(
        data=[
            TokenStats(
                symbol=t.symbol.value,
                contract_address=t.contract_address,
                price=float(t.unit_price),
                total_supply=float(t.total_supply),
                sold_amount=float(t.sold_amount),
                remaining=float(Decimal(t.total_supply) - Decimal(t.sold_amount)),
                max_per_wallet=float(t.max_per_wallet) if t.max_per_wallet is not None else None,
                vesting_period_days=t.vesting_period_days,
            )
            for t in tokens
        ]
    )


@router.post(
    "/purchase",
    response_model=PurchaseResponse,
    summary="Settle and record a token purchase",
    description="Dry-runs verifyPayment, submits it, and records the purchase once the presale contract confirms it.",
)
async def purchase_tokens(
    request: PurchaseRequest,
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator),
) -> PurchaseResponse:
    result = await orchestrator.purchase(
        wallet_address=request.wallet_address,
        token_symbol=request.token_symbol,
        usd_amount=request.usd_amount,
        token_amount_wei=request.token_amount_wei,
        payment_tx_hash=request.payment_tx_hash,
        referrer=request.referrer,
        bonus_amount=request.bonus_amount,
    )
    return PurchaseResponse(
        data=PurchaseData(
            purchase=purchase_record(result.purchase),
            payment_id=result.payment_id,
            settlement_tx_hash=result.settlement_tx_hash,
            token_amount=float(result.token_amount),
        )
    )


@router.post(
    "/claim",
    response_model=ClaimResponse,
    summary="Claim vested tokens",
    description="Requires the signature, timestamp and walletaddress headers.",
)
async def claim_tokens(
    request: ClaimRequest,
    wallet: Optional[str] = Depends(authenticated_wallet),
    orchestrator: ClaimOrchestrator = Depends(get_claim_orchestrator),
) -> ClaimResponse:
    require_same_wallet(wallet, request.wallet_address)
    result = await orchestrator.claim(request.purchase_id, request.wallet_address)
    return ClaimResponse(
        data=ClaimData(
            purchase_id=result.purchase_id,
            transfer_tx_hash=result.transfer_tx_hash,
            amount=float(result.amount),
            claim_date=result.claim_date,
        )
    )


@router.get("/claim-status/{purchase_id}", response_model=ClaimStatusResponse)
async def claim_status(
    purchase_id: str,
    orchestrator: ClaimOrchestrator = Depends(get_claim_orchestrator),
) -> ClaimStatusResponse:
    view = await orchestrator.claim_status(purchase_id)
    return ClaimStatusResponse(
        data=ClaimStatusData(
            purchase_id=view.purchase_id,
            can_claim=view.can_claim,
            claimed=view.claimed,
            claim_status=view.claim_status,
            claim_date=view.claim_date,
            vesting_end_date=view.vesting_end_date,
            remaining_days=view.remaining_days,
        )
    )


@router.get("/claimable/{wallet_address}", response_model=ClaimableResponse)
async def claimable_tokens(
    wallet_address: str,
    orchestrator: ClaimOrchestrator = Depends(get_claim_orchestrator),
) -> ClaimableResponse:
    view = await orchestrator.claimable(wallet_address)
    return ClaimableResponse(
        data=ClaimableData(
            wallet_address=view.wallet_address,
            purchases=[
                ClaimableItem(
                    purchase=purchase_record(item["purchase"]),
                    contract_address=item["contract_address"],
                    is_claimable=item["is_claimable"],
                    vesting_end_date=item["vesting_end_date"],
                    remaining_days=item["remaining_days"],
                )
                for item in view.purchases
            ],
        )
    )


@router.get("/purchases/{wallet_address}", response_model=PurchasesResponse)
async def wallet_purchases(
    wallet_address: str,
    ledger: LedgerStore = Depends(get_ledger),
) -> PurchasesResponse:
    purchases = await ledger.purchases_for_wallet(normalize_wallet(wallet_address))
    return PurchasesResponse(data=[purchase_record(p) for p in reversed(purchases)])


@router.get("/total-purchases/{wallet_address}", response_model=TotalPurchasesResponse)
async def total_purchases(
    wallet_address: str,
    ledger: LedgerStore = Depends(get_ledger),
) -> TotalPurchasesResponse:
    wallet_address = normalize_wallet(wallet_address)
    purchases = await ledger.purchases_for_wallet(wallet_address)
    total = sum((Decimal(p.amount) for p in purchases), Decimal("0"))
    return TotalPurchasesResponse(
        data=TotalPurchasesData(
            wallet_address=wallet_address,
            total_amount=float(total),
            purchase_count=len(purchases),
        )
    )


@router.get("/balance/{wallet_address}/{symbol}", response_model=BalanceResponse)
async def token_balance(
    wallet_address: str,
    symbol: str,
    guard: PurchaseLimitGuard = Depends(get_limit_guard),
) -> BalanceResponse:
    balance = await guard.balance(normalize_wallet(wallet_address), symbol)
    return BalanceResponse(
        data=BalanceData(
            token_symbol=balance.token_symbol,
            balance=float(balance.balance),
            purchases=_history(balance.purchases),
        )
    )


@router.post(
    "/check-purchase-limit",
    response_model=PurchaseLimitResponse,
    summary="Check the GNF10 per-wallet limit",
    description="Advisory only; the limit is enforced again when the purchase is settled.",
)
async def check_purchase_limit(
    request: CheckPurchaseLimitRequest,
    guard: PurchaseLimitGuard = Depends(get_limit_guard),
) -> PurchaseLimitResponse:
    check = await guard.check_limit(normalize_wallet(request.wallet_address), request.token_amount)
    return PurchaseLimitResponse(
        data=PurchaseLimitData(
            allowed=check.allowed,
            current_balance=float(check.current_balance),
            remaining_allowance=float(check.remaining_allowance),
            purchase_history=_history(check.purchase_history),
        )
    )
