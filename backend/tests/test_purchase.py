"""Tests for PurchaseOrchestrator: admission, dry-run, settlement and commit."""

import asyncio
from decimal import Decimal

import pytest

from app.core.errors import (
    ConfigMissing,
    Indeterminate,
    PurchaseLimitExceeded,
    RateLimited,
    SelfReferral,
    SettlementError,
    ValidationError,
    VerificationFailed,
)
from app.models.presale import (
    Purchase,
    Referral,
    SettlementAttempt,
    SettlementStatus,
    TokenConfig,
    TokenSymbol,
)
from app.services.purchase import PurchaseOrchestrator
from app.services.rate_limiter import RateLimiter

from conftest import REFERRER, WALLET, tx_hash


@pytest.fixture
def orchestrator(ledger, oracle, limit_guard, clock) -> PurchaseOrchestrator:
    return PurchaseOrchestrator(ledger, oracle, limit_guard, clock=clock, timeout=0.2)


def _wei(tokens: int) -> int:
    return tokens * 10**18


@pytest.mark.asyncio
async def test_successful_purchase_records_settlement(orchestrator, oracle, clock) -> None:
    result = await orchestrator.purchase(
        wallet_address=WALLET.upper().replace("0X", "0x"),
        token_symbol="GNF10",
        usd_amount="20",
        token_amount_wei=_wei(100),
        payment_tx_hash=tx_hash(1),
    )

    assert result.token_amount == Decimal("100")
    assert result.settlement_tx_hash == "0x" + "ab" * 32
    assert result.payment_id.startswith(f"{WALLET}|{int(clock.now().timestamp() * 1000)}|")

    purchase = await Purchase.get(id=result.purchase.id)
    assert purchase.wallet_address == WALLET
    assert purchase.amount == Decimal("20")
    assert purchase.payment_id == result.payment_id
    assert purchase.claimed is False

    oracle.simulate.assert_awaited_once_with(WALLET, 0, _wei(100), result.payment_id)
    oracle.submit_payment.assert_awaited_once_with(WALLET, 0, _wei(100), result.payment_id)

    attempt = await SettlementAttempt.get(payment_id=result.payment_id)
    assert attempt.status == SettlementStatus.CONFIRMED


@pytest.mark.asyncio
async def test_option_ids_follow_token_symbol(orchestrator, oracle) -> None:
    await orchestrator.purchase(WALLET, "GNF1000", "6", _wei(10), tx_hash(1))
    await orchestrator.purchase(WALLET, "GNF10000", "3000000", _wei(1), tx_hash(2))

    option_ids = [c.args[1] for c in oracle.submit_payment.await_args_list]
    assert option_ids == [1, 2]


@pytest.mark.asyncio
async def test_payment_ids_are_unique(orchestrator) -> None:
    first = await orchestrator.purchase(WALLET, "GNF1000", "6", _wei(10), tx_hash(1))
    second = await orchestrator.purchase(WALLET, "GNF1000", "6", _wei(10), tx_hash(2))

    assert first.payment_id != second.payment_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"wallet_address": ""},
        {"wallet_address": "not-a-wallet"},
        {"token_symbol": "GNF5"},
        {"usd_amount": "0"},
        {"usd_amount": "-5"},
        {"usd_amount": "abc"},
        {"token_amount_wei": 0},
        {"payment_tx_hash": "  "},
    ],
)
async def test_invalid_input_is_rejected_before_settlement(orchestrator, oracle, overrides) -> None:
    kwargs = {
        "wallet_address": WALLET,
        "token_symbol": "GNF10",
        "usd_amount": "20",
        "token_amount_wei": _wei(100),
        "payment_tx_hash": tx_hash(1),
    }
    kwargs.update(overrides)

    with pytest.raises(ValidationError):
        await orchestrator.purchase(**kwargs)

    oracle.simulate.assert_not_awaited()
    assert await SettlementAttempt.all().count() == 0


@pytest.mark.asyncio
async def test_self_referral_rejected(orchestrator) -> None:
    with pytest.raises(SelfReferral):
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1), referrer=WALLET)


@pytest.mark.asyncio
async def test_duplicate_payment_tx_rejected(orchestrator, oracle) -> None:
    await orchestrator.purchase(WALLET, "GNF10", "2", _wei(10), tx_hash(1))

    with pytest.raises(ValidationError):
        await orchestrator.purchase(WALLET, "GNF10", "2", _wei(10), tx_hash(1))

    assert oracle.submit_payment.await_count == 1
    assert await Purchase.all().count() == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_payment_tx_settles_once(orchestrator, oracle, ledger) -> None:
    results = await asyncio.gather(
        orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(7)),
        orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(7)),
        return_exceptions=True,
    )

    rejected = [r for r in results if isinstance(r, ValidationError)]
    assert len(rejected) == 1
    assert rejected[0].details["field"] == "payment_tx_hash"
    assert oracle.submit_payment.await_count == 1
    assert await Purchase.filter(payment_tx_hash=tx_hash(7)).count() == 1
    assert await SettlementAttempt.filter(payment_tx_hash=tx_hash(7)).count() == 1
    # The losing request gave its reservation back
    entitlement = await ledger.get_entitlement(WALLET, TokenSymbol.GNF10)
    assert entitlement.reserved_tokens == Decimal("100")


@pytest.mark.asyncio
async def test_verification_failure_persists_no_purchase(orchestrator, oracle, ledger) -> None:
    oracle.simulate.return_value = "Payment already processed"

    with pytest.raises(VerificationFailed) as exc_info:
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    assert exc_info.value.details["reason"] == "Payment already processed"
    oracle.submit_payment.assert_not_awaited()
    assert await Purchase.all().count() == 0

    attempt = await SettlementAttempt.get(payment_tx_hash=tx_hash(1))
    assert attempt.status == SettlementStatus.FAILED
    # Reservation was released
    entitlement = await ledger.get_entitlement(WALLET, TokenSymbol.GNF10)
    assert entitlement.reserved_tokens == 0


@pytest.mark.asyncio
async def test_failed_payment_tx_can_be_retried(orchestrator, oracle) -> None:
    oracle.simulate.return_value = "not yet indexed"
    with pytest.raises(VerificationFailed):
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    oracle.simulate.return_value = None
    result = await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    assert result.purchase.payment_tx_hash == tx_hash(1)


@pytest.mark.asyncio
async def test_definitive_settlement_failure(orchestrator, oracle, ledger) -> None:
    oracle.submit_payment.side_effect = SettlementError("Transaction reverted")

    with pytest.raises(SettlementError):
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    assert await Purchase.all().count() == 0
    attempt = await SettlementAttempt.get(payment_tx_hash=tx_hash(1))
    assert attempt.status == SettlementStatus.FAILED
    entitlement = await ledger.get_entitlement(WALLET, TokenSymbol.GNF10)
    assert entitlement.reserved_tokens == 0


@pytest.mark.asyncio
async def test_settlement_timeout_is_indeterminate(orchestrator, oracle, ledger) -> None:
    async def never_confirms(*args):
        await asyncio.sleep(10)

    oracle.submit_payment.side_effect = never_confirms

    with pytest.raises(Indeterminate) as exc_info:
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    payment_id = exc_info.value.details["payment_id"]
    attempt = await SettlementAttempt.get(payment_id=payment_id)
    assert attempt.status == SettlementStatus.INDETERMINATE
    assert await Purchase.all().count() == 0
    # Submitted exactly once, never retried
    assert oracle.submit_payment.await_count == 1
    # Reservation is kept until reconciliation decides
    entitlement = await ledger.get_entitlement(WALLET, TokenSymbol.GNF10)
    assert entitlement.reserved_tokens == Decimal("100")
    # And the payment tx cannot be reused meanwhile
    with pytest.raises(ValidationError):
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))


@pytest.mark.asyncio
async def test_simulation_timeout_is_a_clean_failure(orchestrator, oracle) -> None:
    async def slow(*args):
        await asyncio.sleep(10)

    oracle.simulate.side_effect = slow

    with pytest.raises(SettlementError):
        await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    oracle.submit_payment.assert_not_awaited()
    attempt = await SettlementAttempt.get(payment_tx_hash=tx_hash(1))
    assert attempt.status == SettlementStatus.FAILED


@pytest.mark.asyncio
async def test_cap_end_to_end(orchestrator, oracle) -> None:
    await orchestrator.purchase(WALLET, "GNF10", "20", _wei(100), tx_hash(1))

    # 150 more tokens: 100 + 150 > 200
    with pytest.raises(PurchaseLimitExceeded):
        await orchestrator.purchase(WALLET, "GNF10", "30", _wei(150), tx_hash(2))

    # 90 more tokens: 190 <= 200
    result = await orchestrator.purchase(WALLET, "GNF10", "18", _wei(90), tx_hash(3))
    assert result.token_amount == Decimal("90")
    assert oracle.submit_payment.await_count == 2


@pytest.mark.asyncio
async def test_concurrent_purchases_cannot_exceed_cap(orchestrator) -> None:
    results = await asyncio.gather(
        orchestrator.purchase(WALLET, "GNF10", "30", _wei(150), tx_hash(1)),
        orchestrator.purchase(WALLET, "GNF10", "30", _wei(150), tx_hash(2)),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, PurchaseLimitExceeded)) == 1
    assert await Purchase.all().count() == 1


@pytest.mark.asyncio
async def test_rate_limited(ledger, oracle, limit_guard, clock) -> None:
    orchestrator = PurchaseOrchestrator(
        ledger, oracle, limit_guard, rate_limiter=RateLimiter(max_requests=1), clock=clock, timeout=0.2
    )
    await orchestrator.purchase(WALLET, "GNF1000", "6", _wei(10), tx_hash(1))

    with pytest.raises(RateLimited) as exc_info:
        await orchestrator.purchase(WALLET, "GNF1000", "6", _wei(10), tx_hash(2))

    assert exc_info.value.details["retry_after_seconds"] > 0
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_missing_token_config(orchestrator, oracle) -> None:
    await TokenConfig.filter(symbol=TokenSymbol.GNF1000).delete()

    with pytest.raises(ConfigMissing):
        await orchestrator.purchase(WALLET, "GNF1000", "6", _wei(10), tx_hash(1))

    oracle.simulate.assert_not_awaited()


@pytest.mark.asyncio
async def test_referral_credited_with_purchase(orchestrator, clock) -> None:
    result = await orchestrator.purchase(
        WALLET, "GNF10", "20", _wei(100), tx_hash(1), referrer=REFERRER, bonus_amount="1.5"
    )

    assert result.purchase.referrer == REFERRER
    link = await Referral.get(referrer=REFERRER, referred=WALLET).prefetch_related("purchases")
    assert link.bonus_amount == Decimal("1.5")
    assert [(p.amount, p.bonus) for p in link.purchases] == [(Decimal("20"), Decimal("1.5"))]
