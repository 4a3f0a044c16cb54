"""
Purchase orchestration.

A purchase is admitted (input checks, rate limit, duplicate payment, cap
reservation), journaled as a SettlementAttempt, dry-run against the
settlement oracle, submitted, and only then committed as a Purchase.
Anything the oracle might have settled without telling us is left as an
indeterminate attempt for the reconciliation worker.
"""

import asyncio
import logging
import re
import secrets
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from app.core.clock import SystemClock, system_clock
from app.core.config import settings
from app.core.constants import PAYMENT_OPTIONS
from app.core.errors import (
    ConfigMissing,
    Indeterminate,
    RateLimited,
    SelfReferral,
    SettlementError,
    ValidationError,
    VerificationFailed,
)
from app.models.presale import Purchase, SettlementAttempt, SettlementStatus, TokenSymbol
from app.services.ledger import LedgerStore
from app.services.purchase_limit import PurchaseLimitGuard, tokens_for
from app.services.settlement import SettlementOracle

logger = logging.getLogger(__name__)

EVM_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_evm_address(value: Optional[str]) -> bool:
    return bool(value) and EVM_ADDRESS_REGEX.fullmatch(value.strip()) is not None


def normalize_wallet(value: Optional[str], field: str = "wallet_address") -> str:
    """Validate an EVM address and return it lowercased."""
    if not value or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    if not is_evm_address(value):
        raise ValidationError(f"Invalid {field}", field=field)
    return value.strip().lower()


def _positive_decimal(value: Any, field: str) -> Decimal:
    if value is None or value == "":
        raise ValidationError(f"{field} is required", field=field)
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number", field=field)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    return amount


def _positive_int(value: Any, field: str) -> int:
    if value is None or value == "":
        raise ValidationError(f"{field} is required", field=field)
    try:
        amount = int(str(value))
    except ValueError:
        raise ValidationError(f"{field} must be an integer", field=field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    return amount


@dataclass
class PurchaseResult:
    purchase: Purchase
    payment_id: str
    settlement_tx_hash: str
    token_amount: Decimal


class PurchaseOrchestrator:
    def __init__(
        self,
        ledger: LedgerStore,
        oracle: SettlementOracle,
        limit_guard: PurchaseLimitGuard,
        rate_limiter=None,
        clock: SystemClock = system_clock,
        timeout: Optional[float] = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.limit_guard = limit_guard
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.settlement_timeout_seconds

    def _payment_id(self, wallet_address: str) -> str:
        millis = int(self.clock.now().timestamp() * 1000)
        return f"{wallet_address}|{millis}|{secrets.token_hex(4)}"

    async def purchase(
        self,
        wallet_address: str,
        token_symbol: str,
        usd_amount: Any,
        token_amount_wei: Any,
        payment_tx_hash: str,
        referrer: Optional[str] = None,
        bonus_amount: Any = None,
    ) -> PurchaseResult:
        # 1. Input
        wallet_address = normalize_wallet(wallet_address)
        if not token_symbol:
            raise ValidationError("token_symbol is required", field="token_symbol")
        try:
            symbol = TokenSymbol(token_symbol)
        except ValueError:
            raise ValidationError(f"Invalid token symbol: {token_symbol}", field="token_symbol")
        usd = _positive_decimal(usd_amount, "usd_amount")
        amount_wei = _positive_int(token_amount_wei, "token_amount_wei")
        if not payment_tx_hash or not payment_tx_hash.strip():
            raise ValidationError("payment_tx_hash is required", field="payment_tx_hash")
        payment_tx_hash = payment_tx_hash.strip()

        if referrer:
            referrer = normalize_wallet(referrer, "referrer")
            if referrer == wallet_address:
                raise SelfReferral("Cannot refer yourself")
        else:
            referrer = None
        bonus = None
        if bonus_amount not in (None, ""):
            try:
                bonus = Decimal(str(bonus_amount))
            except InvalidOperation:
                raise ValidationError("bonus_amount must be a number", field="bonus_amount")
            if not bonus.is_finite() or bonus < 0:
                raise ValidationError("bonus_amount must not be negative", field="bonus_amount")

        # 2. Admission
        now = self.clock.now()
        if self.rate_limiter is not None and not await self.rate_limiter.allow(wallet_address, now):
            retry_after = await self.rate_limiter.retry_after(wallet_address, now)
            raise RateLimited(
                "Too many purchase requests. Please try again later.",
                retry_after_seconds=int(retry_after) + 1,
            )

        if await self.ledger.payment_tx_recorded(payment_tx_hash):
            raise ValidationError("Payment transaction already used", field="payment_tx_hash")

        token = await self.ledger.get_token_config(symbol)
        if token is None:
            logger.error(f"Token configuration missing for {symbol.value}")
            raise ConfigMissing(f"Token configuration not found for {symbol.value}")

        tokens = tokens_for(usd, token.unit_price)
        reserved = tokens if await self.limit_guard.reserve(wallet_address, token, tokens) else Decimal("0")

        # 3. Journal
        option_id = PAYMENT_OPTIONS[symbol.value]
        payment_id = self._payment_id(wallet_address)
        attempt = await self.ledger.create_attempt(
            payment_id=payment_id,
            wallet_address=wallet_address,
            token_symbol=symbol,
            usd_amount=usd,
            token_amount_wei=str(amount_wei),
            payment_tx_hash=payment_tx_hash,
            referrer=referrer,
            bonus_amount=bonus,
            reserved_tokens=reserved,
            created_at=now,
        )
        if attempt is None:
            # Lost the race for this payment transaction to a concurrent request
            await self.limit_guard.release(wallet_address, symbol, reserved)
            raise ValidationError("Payment transaction already used", field="payment_tx_hash")

        # 4. Dry run
        try:
            revert_reason = await asyncio.wait_for(
                self.oracle.simulate(wallet_address, option_id, amount_wei, payment_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            await self._fail(attempt, "simulation timed out")
            raise SettlementError("Payment verification timed out", payment_id=payment_id)
        except Exception as e:
            # Nothing was broadcast yet: a failed dry run is a clean failure
            await self._fail(attempt, f"simulation error: {e}")
            raise SettlementError("Payment verification unavailable", payment_id=payment_id) from e

        if revert_reason is not None:
            await self._fail(attempt, f"reverted: {revert_reason}")
            raise VerificationFailed("Payment verification failed", reason=revert_reason)

        # 5. Submit
        try:
            settlement_tx_hash = await asyncio.wait_for(
                self.oracle.submit_payment(wallet_address, option_id, amount_wei, payment_id),
                timeout=self.timeout,
            )
        except SettlementError as e:
            await self._fail(attempt, e.message)
            raise
        except asyncio.TimeoutError:
            await self._indeterminate(attempt, "settlement timed out")
            raise Indeterminate(
                "Settlement outcome unknown; the payment will be reconciled",
                payment_id=payment_id,
            )
        except Exception as e:
            await self._indeterminate(attempt, f"settlement error: {e}")
            raise Indeterminate(
                "Settlement outcome unknown; the payment will be reconciled",
                payment_id=payment_id,
            ) from e

        # 6. Commit
        purchase = await self.ledger.record_purchase(attempt, settlement_tx_hash, self.clock.now())
        if purchase is None:
            # Resolved concurrently by the reconciler
            purchase = await self.ledger.purchase_for_payment(payment_id)
            if purchase is None:
                raise Indeterminate(
                    "Settlement confirmed but the attempt was already resolved",
                    payment_id=payment_id,
                )

        logger.info(
            f"Purchase {purchase.id}: {wallet_address} bought {tokens} {symbol.value} "
            f"for {usd} USD (settlement {settlement_tx_hash})"
        )
        return PurchaseResult(
            purchase=purchase,
            payment_id=payment_id,
            settlement_tx_hash=settlement_tx_hash,
            token_amount=tokens,
        )

    async def _fail(self, attempt: SettlementAttempt, error: str) -> None:
        if await self.ledger.mark_attempt(attempt, SettlementStatus.FAILED, self.clock.now(), error):
            await self.limit_guard.release(
                attempt.wallet_address, attempt.token_symbol, attempt.reserved_tokens
            )
        logger.warning(f"Settlement {attempt.payment_id} failed: {error}")

    async def _indeterminate(self, attempt: SettlementAttempt, error: str) -> None:
        await self.ledger.mark_attempt(attempt, SettlementStatus.INDETERMINATE, None, error)
        logger.error(f"Settlement {attempt.payment_id} is indeterminate: {error}")
