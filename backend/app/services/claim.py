"""
Claim orchestration.

Eligibility is checked in a fixed order (exists, owner, not claimed, token
configured, vested). The claim itself is guarded by a conditional update of
``claim_status`` from unclaimed to pending, so a purchase can reach the
oracle's ``transfer`` at most once no matter how many requests race.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.core.clock import SystemClock, system_clock
from app.core.config import settings
from app.core.constants import TOKEN_DECIMALS
from app.core.errors import (
    AlreadyClaimed,
    ConfigMissing,
    Indeterminate,
    NotFound,
    SettlementError,
    Unauthorized,
    ValidationError,
    VestingNotComplete,
)
from app.models.presale import ClaimStatus, Purchase, TokenConfig
from app.services.ledger import LedgerStore
from app.services.purchase import normalize_wallet
from app.services.settlement import SettlementOracle
from app.services.vesting import is_claimable, remaining_days, vesting_end

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    purchase_id: str
    transfer_tx_hash: str
    amount: Decimal
    claim_date: datetime


@dataclass
class ClaimStatusView:
    purchase_id: str
    can_claim: bool
    claimed: bool
    claim_status: str
    claim_date: Optional[datetime]
    vesting_end_date: datetime
    remaining_days: int


@dataclass
class ClaimableView:
    wallet_address: str
    purchases: List[Dict[str, Any]] = field(default_factory=list)


def to_base_units(amount: Decimal) -> int:
    """Decimal token amount -> integer base units (18 decimals)."""
    return int(Decimal(amount).scaleb(TOKEN_DECIMALS))


def _parse_purchase_id(purchase_id: Any) -> str:
    if not purchase_id:
        raise ValidationError("purchase_id is required", field="purchase_id")
    try:
        return str(uuid.UUID(str(purchase_id)))
    except ValueError:
        raise ValidationError("Invalid purchase_id", field="purchase_id")


class ClaimOrchestrator:
    def __init__(
        self,
        ledger: LedgerStore,
        oracle: SettlementOracle,
        clock: SystemClock = system_clock,
        timeout: Optional[float] = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.settlement_timeout_seconds

    async def _token_for(self, purchase: Purchase) -> TokenConfig:
        token = await self.ledger.get_token_config(purchase.token_symbol)
        if token is None:
            logger.error(
                f"Token configuration missing for {purchase.token_symbol.value} "
                f"(purchase {purchase.id})"
            )
            raise ConfigMissing(f"Token configuration not found for {purchase.token_symbol.value}")
        return token

    async def _get_purchase(self, purchase_id: Any) -> Purchase:
        purchase = await self.ledger.get_purchase(_parse_purchase_id(purchase_id))
        if purchase is None:
            raise NotFound("Purchase not found")
        return purchase

    async def claim(self, purchase_id: Any, wallet_address: str) -> ClaimResult:
        wallet_address = normalize_wallet(wallet_address)
        purchase = await self._get_purchase(purchase_id)

        if purchase.wallet_address.lower() != wallet_address:
            raise Unauthorized("Not authorized to claim this purchase")
        if purchase.claimed or purchase.claim_status != ClaimStatus.UNCLAIMED:
            raise AlreadyClaimed("Tokens already claimed", claim_status=purchase.claim_status.value)

        token = await self._token_for(purchase)
        now = self.clock.now()
        end = vesting_end(purchase.purchase_date, token.vesting_period_days)
        if not is_claimable(now, end):
            raise VestingNotComplete(
                "Vesting period not complete",
                vesting_end_date=end.isoformat(),
                remaining_days=remaining_days(now, end),
            )

        if not await self.ledger.begin_claim(purchase.id):
            raise AlreadyClaimed("Claim already in progress")

        amount = to_base_units(purchase.amount)
        try:
            transfer_tx_hash = await asyncio.wait_for(
                self.oracle.transfer(wallet_address, amount, token.contract_address),
                timeout=self.timeout,
            )
        except SettlementError:
            await self.ledger.release_claim(purchase.id)
            logger.warning(f"Transfer for purchase {purchase.id} failed; claim released")
            raise
        except asyncio.TimeoutError:
            logger.error(f"Transfer for purchase {purchase.id} timed out; claim left pending")
            raise Indeterminate(
                "Transfer outcome unknown; the claim is pending operator review",
                purchase_id=str(purchase.id),
            )
        except Exception as e:
            logger.error(f"Transfer for purchase {purchase.id} errored: {e}; claim left pending")
            raise Indeterminate(
                "Transfer outcome unknown; the claim is pending operator review",
                purchase_id=str(purchase.id),
            ) from e

        claim_date = self.clock.now()
        if not await self.ledger.complete_claim(purchase.id, transfer_tx_hash, claim_date):
            # Only an operator resolving the same claim could have moved it
            logger.error(f"Purchase {purchase.id} left pending state during transfer {transfer_tx_hash}")

        logger.info(f"Claimed purchase {purchase.id} for {wallet_address}: {transfer_tx_hash}")
        return ClaimResult(
            purchase_id=str(purchase.id),
            transfer_tx_hash=transfer_tx_hash,
            amount=Decimal(purchase.amount),
            claim_date=claim_date,
        )

    async def claim_status(self, purchase_id: Any) -> ClaimStatusView:
        purchase = await self._get_purchase(purchase_id)
        token = await self._token_for(purchase)
        now = self.clock.now()
        end = vesting_end(purchase.purchase_date, token.vesting_period_days)
        claimable_now = is_claimable(now, end)
        return ClaimStatusView(
            purchase_id=str(purchase.id),
            can_claim=claimable_now and not purchase.claimed and purchase.claim_status == ClaimStatus.UNCLAIMED,
            claimed=purchase.claimed,
            claim_status=purchase.claim_status.value,
            claim_date=purchase.claim_date,
            vesting_end_date=end,
            remaining_days=remaining_days(now, end),
        )

    async def claimable(self, wallet_address: str) -> ClaimableView:
        """Unclaimed purchases of a wallet with their vesting status."""
        wallet_address = normalize_wallet(wallet_address)
        purchases = await self.ledger.purchases_for_wallet(wallet_address, unclaimed_only=True)
        configs = {c.symbol: c for c in await self.ledger.token_configs()}
        now = self.clock.now()

        items = []
        for purchase in purchases:
            token = configs.get(purchase.token_symbol)
            if token is None:
                logger.error(f"Token configuration missing for {purchase.token_symbol.value}")
                continue
            end = vesting_end(purchase.purchase_date, token.vesting_period_days)
            items.append(
                {
                    "purchase": purchase,
                    "contract_address": token.contract_address,
                    "is_claimable": is_claimable(now, end) and purchase.claim_status == ClaimStatus.UNCLAIMED,
                    "vesting_end_date": end,
                    "remaining_days": remaining_days(now, end),
                }
            )
        return ClaimableView(wallet_address=wallet_address, purchases=items)

    async def resolve_pending_claim(self, purchase_id: Any, transfer_tx_hash: Optional[str]) -> bool:
        """
        Operator resolution of a claim whose transfer outcome was unknown.

        With a transfer hash the claim is completed; without one it is released
        back to unclaimed so the owner can retry.
        """
        purchase = await self._get_purchase(purchase_id)
        if purchase.claim_status != ClaimStatus.PENDING:
            raise ValidationError(
                "Purchase has no pending claim", claim_status=purchase.claim_status.value
            )
        if transfer_tx_hash:
            resolved = await self.ledger.complete_claim(purchase.id, transfer_tx_hash, self.clock.now())
            logger.info(f"Pending claim {purchase.id} completed with {transfer_tx_hash}")
        else:
            resolved = await self.ledger.release_claim(purchase.id)
            logger.info(f"Pending claim {purchase.id} released")
        return resolved
