"""
Per-wallet purchase cap for the capped token offering.

``check_limit`` is the advisory read used by clients before they pay.
``reserve`` is the enforcing write: it moves the wallet's running total with
an optimistic version check, so two concurrent purchases cannot both fit
under the cap when only one does.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.core.constants import CAPPED_TOKEN, DEFAULT_TOKENS, MAX_VERSION_RETRIES, WALLET_CAP
from app.core.errors import LedgerConflict, PurchaseLimitExceeded
from app.models.presale import Purchase, TokenConfig, TokenSymbol
from app.services.ledger import LedgerStore

logger = logging.getLogger(__name__)

_DEFAULT_PRICES = {t["symbol"]: t["unit_price"] for t in DEFAULT_TOKENS}


@dataclass
class LimitCheck:
    allowed: bool
    current_balance: Decimal
    remaining_allowance: Decimal
    purchase_history: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TokenBalance:
    token_symbol: str
    balance: Decimal
    purchases: List[Dict[str, Any]] = field(default_factory=list)


def _fmt(value: Decimal) -> str:
    return f"{Decimal(value).normalize():f}"


def tokens_for(usd_amount: Decimal, unit_price: Decimal) -> Decimal:
    """USD amount -> token quantity at a fixed unit price."""
    return Decimal(usd_amount) / Decimal(unit_price)


class PurchaseLimitGuard:
    """Computes and enforces a wallet's accumulated entitlement against its cap."""

    def __init__(self, ledger: LedgerStore, capped_token: str = CAPPED_TOKEN):
        self.ledger = ledger
        self.capped_token = TokenSymbol(capped_token)

    async def _pricing(self, token_symbol: TokenSymbol) -> tuple[Decimal, Optional[Decimal]]:
        """(unit price, cap) for a token, falling back to the launch defaults."""
        config = await self.ledger.get_token_config(token_symbol)
        if config is not None:
            cap = config.max_per_wallet
            if cap is None and token_symbol == self.capped_token:
                cap = WALLET_CAP
            return Decimal(config.unit_price), cap
        cap = WALLET_CAP if token_symbol == self.capped_token else None
        return _DEFAULT_PRICES[token_symbol.value], cap

    @staticmethod
    def _history(purchases: List[Purchase], unit_price: Decimal) -> List[Dict[str, Any]]:
        return [
            {
                "amount": tokens_for(p.amount, unit_price),
                "date": p.purchase_date,
                "tx_hash": p.payment_tx_hash,
            }
            for p in purchases
        ]

    async def current_balance(self, wallet_address: str, token_symbol: TokenSymbol, unit_price: Decimal) -> Decimal:
        purchases = await self.ledger.purchases_for_wallet(wallet_address, token_symbol)
        return sum((tokens_for(p.amount, unit_price) for p in purchases), Decimal("0"))

    async def check_limit(self, wallet_address: str, proposed_token_amount: Decimal) -> LimitCheck:
        wallet_address = wallet_address.lower()
        unit_price, cap = await self._pricing(self.capped_token)
        purchases = await self.ledger.purchases_for_wallet(wallet_address, self.capped_token)
        current = sum((tokens_for(p.amount, unit_price) for p in purchases), Decimal("0"))

        return LimitCheck(
            allowed=current + Decimal(proposed_token_amount) <= cap,
            current_balance=current,
            remaining_allowance=max(cap - current, Decimal("0")),
            purchase_history=self._history(purchases, unit_price),
        )

    async def balance(self, wallet_address: str, token_symbol: str) -> TokenBalance:
        """Entitlement derived from purchase history. Only the capped token is tracked."""
        wallet_address = wallet_address.lower()
        if token_symbol != self.capped_token.value:
            return TokenBalance(token_symbol=token_symbol, balance=Decimal("0"))

        unit_price, _ = await self._pricing(self.capped_token)
        purchases = await self.ledger.purchases_for_wallet(wallet_address, self.capped_token)
        history = self._history(purchases, unit_price)
        return TokenBalance(
            token_symbol=token_symbol,
            balance=sum((h["amount"] for h in history), Decimal("0")),
            purchases=history,
        )

    async def reserve(self, wallet_address: str, token: TokenConfig, tokens: Decimal) -> Decimal:
        """
        Add ``tokens`` to the wallet's running total if it stays within the cap.

        Returns the new total. Uncapped tokens are not tracked and return 0.
        """
        unit_price, cap = await self._pricing(token.symbol)
        if cap is None:
            return Decimal("0")

        entitlement = await self.ledger.get_entitlement(wallet_address, token.symbol)
        if entitlement is None:
            initial = await self.current_balance(wallet_address, token.symbol, unit_price)
            entitlement = await self.ledger.ensure_entitlement(wallet_address, token.symbol, initial)

        for _ in range(MAX_VERSION_RETRIES):
            current = Decimal(entitlement.reserved_tokens)
            new_total = current + tokens
            if new_total > cap:
                raise PurchaseLimitExceeded(
                    f"Purchase would exceed the {_fmt(cap)} {token.symbol.value} per-wallet limit",
                    current_balance=_fmt(current),
                    requested=_fmt(tokens),
                    remaining_allowance=_fmt(max(cap - current, Decimal("0"))),
                )
            if await self.ledger.compare_and_set_entitlement(entitlement, new_total):
                return new_total
            entitlement = await self.ledger.get_entitlement(wallet_address, token.symbol)

        raise LedgerConflict(f"Could not reserve entitlement for {wallet_address}")

    async def release(self, wallet_address: str, token_symbol: TokenSymbol, tokens: Decimal) -> None:
        """Give back a reservation whose settlement definitively failed."""
        if not tokens:
            return
        for _ in range(MAX_VERSION_RETRIES):
            entitlement = await self.ledger.get_entitlement(wallet_address, token_symbol)
            if entitlement is None:
                return
            new_total = max(Decimal(entitlement.reserved_tokens) - tokens, Decimal("0"))
            if await self.ledger.compare_and_set_entitlement(entitlement, new_total):
                return
        logger.error(f"Could not release {tokens} {token_symbol.value} reserved by {wallet_address}")
