from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.presale import TokenSymbol


# --- Requests ---

class PurchaseRequest(BaseModel):
    """Record a paid purchase and settle it with the presale contract."""
    wallet_address: str = Field(..., description="Buyer's EVM wallet address")
    token_symbol: TokenSymbol = Field(..., description="Token being bought")
    usd_amount: Decimal = Field(..., description="Amount paid in USD")
    token_amount_wei: int = Field(..., description="Token amount in base units, as sent to the contract")
    payment_tx_hash: str = Field(..., description="Stablecoin payment transaction hash")
    referrer: Optional[str] = Field(None, description="Referrer wallet address")
    bonus_amount: Optional[Decimal] = Field(None, description="Referral bonus credited to the referrer")


class ClaimRequest(BaseModel):
    purchase_id: str
    wallet_address: str


class CheckPurchaseLimitRequest(BaseModel):
    wallet_address: str
    token_amount: Decimal = Field(..., ge=0, description="Proposed GNF10 token amount")


class SaveReferralRequest(BaseModel):
    referrer: Optional[str] = None
    referred: Optional[str] = None


# --- Response payloads ---

class PurchaseRecord(BaseModel):
    id: str
    wallet_address: str
    token_symbol: str
    amount: float = Field(..., description="USD amount")
    payment_tx_hash: str
    settlement_tx_hash: Optional[str] = None
    transfer_tx_hash: Optional[str] = None
    purchase_date: datetime
    claimable: bool
    claimed: bool
    claim_status: str
    claim_date: Optional[datetime] = None
    referrer: Optional[str] = None


class PurchaseData(BaseModel):
    purchase: PurchaseRecord
    payment_id: str
    settlement_tx_hash: str
    token_amount: float


class ClaimData(BaseModel):
    purchase_id: str
    transfer_tx_hash: str
    amount: float
    claim_date: datetime


class ClaimStatusData(BaseModel):
    purchase_id: str
    can_claim: bool
    claimed: bool
    claim_status: str
    claim_date: Optional[datetime] = None
    vesting_end_date: datetime
    remaining_days: int


class ClaimableItem(BaseModel):
    purchase: PurchaseRecord
    contract_address: str
    is_claimable: bool
    vesting_end_date: datetime
    remaining_days: int


class ClaimableData(BaseModel):
    wallet_address: str
    purchases: List[ClaimableItem]


class TotalPurchasesData(BaseModel):
    wallet_address: str
    total_amount: float = Field(..., description="Sum of USD amounts")
    purchase_count: int


class HistoryEntry(BaseModel):
    amount: float = Field(..., description="Token amount")
    date: datetime
    tx_hash: str


class BalanceData(BaseModel):
    token_symbol: str
    balance: float
    purchases: List[HistoryEntry] = []


class PurchaseLimitData(BaseModel):
    allowed: bool
    current_balance: float
    remaining_allowance: float
    purchase_history: List[HistoryEntry] = []


class TokenStats(BaseModel):
    symbol: str
    contract_address: str
    price: float
    total_supply: float
    sold_amount: float
    remaining: float
    max_per_wallet: Optional[float] = None
    vesting_period_days: int


class ReferralPurchaseEntry(BaseModel):
    amount: float
    bonus: float
    timestamp: datetime
    referred: Optional[str] = None


class ReferralRecord(BaseModel):
    referrer: str
    referred: str
    bonus_amount: float
    timestamp: datetime
    purchases: List[ReferralPurchaseEntry] = []


class ReferralStatsData(BaseModel):
    total: int
    bonus: float
    referrals: List[ReferralRecord]


class ReferralEarningsData(BaseModel):
    total_bonus: float
    recent_purchases: List[ReferralPurchaseEntry]
    referral_count: int


# --- Envelopes ---

class PurchaseResponse(BaseModel):
    success: bool = True
    data: PurchaseData


class ClaimResponse(BaseModel):
    success: bool = True
    data: ClaimData


class ClaimStatusResponse(BaseModel):
    success: bool = True
    data: ClaimStatusData


class ClaimableResponse(BaseModel):
    success: bool = True
    data: ClaimableData


class PurchasesResponse(BaseModel):
    success: bool = True
    data: List[PurchaseRecord]


class TotalPurchasesResponse(BaseModel):
    success: bool = True
    data: TotalPurchasesData


class BalanceResponse(BaseModel):
    success: bool = True
    data: BalanceData


class PurchaseLimitResponse(BaseModel):
    success: bool = True
    data: PurchaseLimitData


class TokenStatsResponse(BaseModel):
    success: bool = True
    data: List[TokenStats]


class ReferralResponse(BaseModel):
    success: bool = True
    data: ReferralRecord


class ReferralListResponse(BaseModel):
    success: bool = True
    data: List[ReferralRecord]


class ReferralStatsResponse(BaseModel):
    success: bool = True
    data: ReferralStatsData


class ReferralEarningsResponse(BaseModel):
    success: bool = True
    data: ReferralEarningsData
