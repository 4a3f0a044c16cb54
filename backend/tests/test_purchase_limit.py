"""Tests for the GNF10 per-wallet cap: advisory check and atomic reservation."""

import asyncio
from decimal import Decimal

import pytest

from app.core.errors import PurchaseLimitExceeded
from app.models.presale import Purchase, TokenSymbol

from conftest import START, WALLET, tx_hash


async def _record(wallet: str, usd_amount: str, n: int, symbol: TokenSymbol = TokenSymbol.GNF10) -> Purchase:
    return await Purchase.create(
        wallet_address=wallet,
        token_symbol=symbol,
        amount=Decimal(usd_amount),
        payment_tx_hash=tx_hash(n),
        payment_id=f"{wallet}|{n}|00",
        purchase_date=START,
    )


@pytest.mark.asyncio
async def test_check_limit_from_purchase_history(limit_guard) -> None:
    await _record(WALLET, "20", 1)

    check = await limit_guard.check_limit(WALLET, Decimal("150"))

    assert check.current_balance == Decimal("100")
    assert check.allowed is False
    assert check.remaining_allowance == Decimal("100")
    assert len(check.purchase_history) == 1


@pytest.mark.asyncio
async def test_check_limit_allows_up_to_cap(limit_guard) -> None:
    await _record(WALLET, "20", 1)

    assert (await limit_guard.check_limit(WALLET, Decimal("90"))).allowed is True
    assert (await limit_guard.check_limit(WALLET, Decimal("100"))).allowed is True
    assert (await limit_guard.check_limit(WALLET, Decimal("100.0001"))).allowed is False


@pytest.mark.asyncio
async def test_uncapped_tokens_do_not_count(limit_guard) -> None:
    await _record(WALLET, "600", 1, TokenSymbol.GNF1000)

    check = await limit_guard.check_limit(WALLET, Decimal("200"))

    assert check.current_balance == 0
    assert check.allowed is True


@pytest.mark.asyncio
async def test_check_limit_is_case_insensitive(limit_guard) -> None:
    await _record(WALLET, "20", 1)

    check = await limit_guard.check_limit(WALLET.upper().replace("0X", "0x"), Decimal("1"))

    assert check.current_balance == Decimal("100")


@pytest.mark.asyncio
async def test_balance_only_tracks_capped_token(limit_guard) -> None:
    await _record(WALLET, "20", 1)
    await _record(WALLET, "2", 2)

    balance = await limit_guard.balance(WALLET, "GNF10")
    other = await limit_guard.balance(WALLET, "GNF1000")

    assert balance.balance == Decimal("110")
    assert [h["tx_hash"] for h in balance.purchases] == [tx_hash(1), tx_hash(2)]
    assert other.balance == 0


@pytest.mark.asyncio
async def test_reserve_starts_from_history_and_enforces_cap(ledger, limit_guard) -> None:
    await _record(WALLET, "20", 1)
    token = await ledger.get_token_config(TokenSymbol.GNF10)

    with pytest.raises(PurchaseLimitExceeded) as exc_info:
        await limit_guard.reserve(WALLET, token, Decimal("150"))
    assert exc_info.value.details["current_balance"] == "100"
    assert exc_info.value.details["remaining_allowance"] == "100"

    assert await limit_guard.reserve(WALLET, token, Decimal("90")) == Decimal("190")


@pytest.mark.asyncio
async def test_concurrent_reservations_cannot_exceed_cap(ledger, limit_guard) -> None:
    token = await ledger.get_token_config(TokenSymbol.GNF10)
    await limit_guard.reserve(WALLET, token, Decimal("100"))

    results = await asyncio.gather(
        limit_guard.reserve(WALLET, token, Decimal("80")),
        limit_guard.reserve(WALLET, token, Decimal("80")),
        return_exceptions=True,
    )

    accepted = [r for r in results if not isinstance(r, Exception)]
    assert len(accepted) == 1
    entitlement = await ledger.get_entitlement(WALLET, TokenSymbol.GNF10)
    assert entitlement.reserved_tokens == Decimal("180")


@pytest.mark.asyncio
async def test_release_returns_reservation(ledger, limit_guard) -> None:
    token = await ledger.get_token_config(TokenSymbol.GNF10)
    await limit_guard.reserve(WALLET, token, Decimal("150"))

    await limit_guard.release(WALLET, TokenSymbol.GNF10, Decimal("150"))

    assert await limit_guard.reserve(WALLET, token, Decimal("200")) == Decimal("200")


@pytest.mark.asyncio
async def test_uncapped_reserve_is_a_no_op(ledger, limit_guard) -> None:
    token = await ledger.get_token_config(TokenSymbol.GNF1000)

    assert await limit_guard.reserve(WALLET, token, Decimal("1000000")) == 0
    assert await ledger.get_entitlement(WALLET, TokenSymbol.GNF1000) is None
