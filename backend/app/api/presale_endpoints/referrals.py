import logging

from fastapi import APIRouter, Depends

from app.schemas.presale import (
    ReferralEarningsData,
    ReferralEarningsResponse,
    ReferralListResponse,
    ReferralPurchaseEntry,
    ReferralResponse,
    ReferralStatsData,
    ReferralStatsResponse,
    SaveReferralRequest,
)
from app.services.referrals import ReferralLedger

from .common import get_referral_ledger, referral_record

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/referrals", tags=["referrals"])


@router.post("/save", response_model=ReferralResponse, summary="Record a referral")
async def save_referral(
    request: SaveReferralRequest,
    referrals: ReferralLedger = Depends(get_referral_ledger),
) -> ReferralResponse:
    link = await referrals.record_referral(request.referrer, request.referred)
    await link.fetch_related("purchases")
    return ReferralResponse(data=referral_record(link))


@router.get("/stats/{address}", response_model=ReferralStatsResponse, summary="Get referral stats")
async def referral_stats(
    address: str,
    referrals: ReferralLedger = Depends(get_referral_ledger),
) -> ReferralStatsResponse:
    stats = await referrals.stats(address)
    return ReferralStatsResponse(
        data=ReferralStatsData(
            total=stats.total,
            bonus=float(stats.bonus),
            referrals=[referral_record(link) for link in stats.referrals],
        )
    )


@router.get("/earnings/{address}", response_model=ReferralEarningsResponse, summary="Get referral earnings")
async def referral_earnings(
    address: str,
    referrals: ReferralLedger = Depends(get_referral_ledger),
) -> ReferralEarningsResponse:
    earnings = await referrals.earnings(address)
    return ReferralEarningsResponse(
        data=ReferralEarningsData(
            total_bonus=float(earnings.total_bonus),
            recent_purchases=[
                ReferralPurchaseEntry(
                    amount=float(p["amount"]),
                    bonus=float(p["bonus"]),
                    timestamp=p["timestamp"],
                    referred=p["referred"],
                )
                for p in earnings.recent_purchases
            ],
            referral_count=earnings.referral_count,
        )
    )


@router.get("/{address}", response_model=ReferralListResponse, summary="List referrals")
async def list_referrals(
    address: str,
    referrals: ReferralLedger = Depends(get_referral_ledger),
) -> ReferralListResponse:
    links = await referrals.referrals(address)
    return ReferralListResponse(data=[referral_record(link) for link in links])
