"""
Ledger store over the Tortoise ORM models.

Holds no business rules: every method is a single read, a single conditional
write, or one transactional commit. Conditional writes return whether they
won so callers can decide what losing means.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from app.core.constants import MAX_VERSION_RETRIES
from app.core.errors import LedgerConflict
from app.models.presale import (
    ClaimStatus,
    Purchase,
    Referral,
    ReferralPurchase,
    SettlementAttempt,
    SettlementStatus,
    TokenConfig,
    TokenSymbol,
    WalletEntitlement,
)

logger = logging.getLogger(__name__)

OPEN_SETTLEMENT_STATUSES = [SettlementStatus.PENDING, SettlementStatus.INDETERMINATE]


class LedgerStore:
    """Durable records of purchases, referrals and token configuration."""

    # --- Purchases ---

    async def get_purchase(self, purchase_id: str) -> Optional[Purchase]:
        return await Purchase.get_or_none(id=purchase_id)

    async def purchases_for_wallet(
        self,
        wallet_address: str,
        token_symbol: Optional[TokenSymbol] = None,
        unclaimed_only: bool = False,
    ) -> List[Purchase]:
        query = Purchase.filter(wallet_address=wallet_address)
        if token_symbol is not None:
            query = query.filter(token_symbol=token_symbol)
        if unclaimed_only:
            query = query.filter(claimed=False)
        return await query.order_by("purchase_date")

    async def purchase_for_payment(self, payment_id: str) -> Optional[Purchase]:
        return await Purchase.get_or_none(payment_id=payment_id)

    async def payment_tx_recorded(self, payment_tx_hash: str) -> bool:
        """True when the payment already produced a purchase or is being settled."""
        if await Purchase.filter(payment_tx_hash=payment_tx_hash).exists():
            return True
        return await SettlementAttempt.filter(
            payment_tx_hash=payment_tx_hash,
            status__in=OPEN_SETTLEMENT_STATUSES,
        ).exists()

    # --- Claim state (conditional updates on claim_status) ---

    async def begin_claim(self, purchase_id: str) -> bool:
        """Move unclaimed -> pending. Only one caller can win."""
        updated = await Purchase.filter(
            id=purchase_id, claim_status=ClaimStatus.UNCLAIMED, claimed=False
        ).update(claim_status=ClaimStatus.PENDING)
        return updated == 1

    async def release_claim(self, purchase_id: str) -> bool:
        """Move pending -> unclaimed after a transfer definitively failed."""
        updated = await Purchase.filter(
            id=purchase_id, claim_status=ClaimStatus.PENDING
        ).update(claim_status=ClaimStatus.UNCLAIMED)
        return updated == 1

    async def complete_claim(
        self, purchase_id: str, transfer_tx_hash: Optional[str], claim_date: datetime
    ) -> bool:
        """Move pending -> claimed, recording the transfer."""
        updated = await Purchase.filter(
            id=purchase_id, claim_status=ClaimStatus.PENDING
        ).update(
            claim_status=ClaimStatus.CLAIMED,
            claimed=True,
            claimable=True,
            claim_date=claim_date,
            transfer_tx_hash=transfer_tx_hash,
        )
        return updated == 1

    async def pending_claims(self) -> List[Purchase]:
        return await Purchase.filter(claim_status=ClaimStatus.PENDING).order_by("purchase_date")

    # --- Token configuration ---

    async def get_token_config(self, symbol: TokenSymbol) -> Optional[TokenConfig]:
        return await TokenConfig.get_or_none(symbol=symbol)

    async def token_configs(self) -> List[TokenConfig]:
        return await TokenConfig.all().order_by("id")

    async def seed_token_configs(self, tokens: Iterable[Dict[str, Any]]) -> int:
        """Create or overwrite token configs. Admin tooling only."""
        count = 0
        for token in tokens:
            values = dict(token)
            symbol = TokenSymbol(values.pop("symbol"))
            await TokenConfig.update_or_create(symbol=symbol, defaults=values)
            count += 1
        return count

    # --- Entitlement running totals ---

    async def get_entitlement(
        self, wallet_address: str, token_symbol: TokenSymbol
    ) -> Optional[WalletEntitlement]:
        return await WalletEntitlement.get_or_none(
            wallet_address=wallet_address, token_symbol=token_symbol
        )

    async def ensure_entitlement(
        self, wallet_address: str, token_symbol: TokenSymbol, initial_tokens: Decimal
    ) -> WalletEntitlement:
        entitlement, _ = await WalletEntitlement.get_or_create(
            wallet_address=wallet_address,
            token_symbol=token_symbol,
            defaults={"reserved_tokens": initial_tokens},
        )
        return entitlement

    async def compare_and_set_entitlement(
        self, entitlement: WalletEntitlement, new_total: Decimal
    ) -> bool:
        """Write ``new_total`` only if nobody else wrote since ``entitlement`` was read."""
        updated = await WalletEntitlement.filter(
            id=entitlement.id, version=entitlement.version
        ).update(reserved_tokens=new_total, version=entitlement.version + 1)
        return updated == 1

    # --- Settlement journal ---

    async def create_attempt(self, **values: Any) -> Optional[SettlementAttempt]:
        """
        Journal a new attempt holding the lock on its payment transaction.

        Returns None when another open or confirmed attempt already holds it.
        """
        try:
            return await SettlementAttempt.create(payment_lock=values["payment_tx_hash"], **values)
        except IntegrityError:
            return None

    async def get_attempt(self, payment_id: str) -> Optional[SettlementAttempt]:
        return await SettlementAttempt.get_or_none(payment_id=payment_id)

    async def mark_attempt(
        self,
        attempt: SettlementAttempt,
        status: SettlementStatus,
        resolved_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Transition an open attempt. Returns False if it was already resolved.

        Failing an attempt releases its payment lock so the payment can be retried.
        """
        values: Dict[str, Any] = {"status": status, "resolved_at": resolved_at, "error": error}
        if status == SettlementStatus.FAILED:
            values["payment_lock"] = None
        updated = await SettlementAttempt.filter(
            id=attempt.id, status__in=OPEN_SETTLEMENT_STATUSES
        ).update(**values)
        if updated:
            for key, value in values.items():
                setattr(attempt, key, value)
        return updated == 1

    async def open_attempts(self) -> List[SettlementAttempt]:
        return await SettlementAttempt.filter(
            status__in=OPEN_SETTLEMENT_STATUSES
        ).order_by("created_at")

    async def record_purchase(
        self,
        attempt: SettlementAttempt,
        settlement_tx_hash: Optional[str],
        purchase_date: datetime,
    ) -> Optional[Purchase]:
        """
        Commit a confirmed settlement as a Purchase.

        The attempt is closed, the purchase inserted and the referral credited
        in one transaction. Returns None when the attempt had already been
        resolved by someone else, so a settlement never yields two purchases.
        """
        async with in_transaction() as conn:
            closed = await SettlementAttempt.filter(
                id=attempt.id, status__in=OPEN_SETTLEMENT_STATUSES
            ).using_db(conn).update(
                status=SettlementStatus.CONFIRMED,
                settlement_tx_hash=settlement_tx_hash,
                resolved_at=purchase_date,
            )
            if not closed:
                return None

            purchase = await Purchase.create(
                using_db=conn,
                wallet_address=attempt.wallet_address,
                token_symbol=attempt.token_symbol,
                amount=attempt.usd_amount,
                payment_tx_hash=attempt.payment_tx_hash,
                payment_id=attempt.payment_id,
                settlement_tx_hash=settlement_tx_hash,
                purchase_date=purchase_date,
                referrer=attempt.referrer,
            )
            await SettlementAttempt.filter(id=attempt.id).using_db(conn).update(
                purchase_id=purchase.id
            )

            if attempt.referrer:
                await self._credit_referral(
                    conn,
                    referrer=attempt.referrer,
                    referred=attempt.wallet_address,
                    amount=attempt.usd_amount,
                    bonus=attempt.bonus_amount or Decimal("0"),
                    timestamp=purchase_date,
                )

        attempt.status = SettlementStatus.CONFIRMED
        attempt.settlement_tx_hash = settlement_tx_hash
        logger.info(f"Recorded purchase {purchase.id} for payment {attempt.payment_id}")
        return purchase

    # --- Referrals ---

    async def get_or_create_referral(
        self, referrer: str, referred: str, timestamp: datetime
    ) -> Tuple[Referral, bool]:
        return await Referral.get_or_create(
            referrer=referrer, referred=referred, defaults={"timestamp": timestamp}
        )

    async def referrals_for(self, referrer: str) -> List[Referral]:
        return await Referral.filter(referrer=referrer).order_by("timestamp").prefetch_related("purchases")

    async def _credit_referral(
        self,
        conn,
        referrer: str,
        referred: str,
        amount: Decimal,
        bonus: Decimal,
        timestamp: datetime,
    ) -> None:
        link, _ = await Referral.get_or_create(
            referrer=referrer,
            referred=referred,
            defaults={"timestamp": timestamp},
            using_db=conn,
        )
        for _ in range(MAX_VERSION_RETRIES):
            updated = await Referral.filter(id=link.id, version=link.version).using_db(conn).update(
                bonus_amount=link.bonus_amount + bonus,
                version=link.version + 1,
            )
            if updated:
                break
            link = await Referral.filter(id=link.id).using_db(conn).first()
        else:
            raise LedgerConflict(f"Could not credit referral {referrer} -> {referred}")

        await ReferralPurchase.create(
            using_db=conn,
            referral_id=link.id,
            amount=amount,
            bonus=bonus,
            timestamp=timestamp,
        )
