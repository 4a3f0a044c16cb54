"""Tests for ClaimOrchestrator: ordered eligibility checks and at-most-once transfer."""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.constants import DEFAULT_TOKENS
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
from app.models.presale import ClaimStatus, Purchase, TokenConfig, TokenSymbol
from app.services.claim import ClaimOrchestrator, to_base_units

from conftest import OTHER_WALLET, START, WALLET, tx_hash

CONTRACTS = {t["symbol"]: t["contract_address"] for t in DEFAULT_TOKENS}


@pytest.fixture
def claims(ledger, oracle, clock) -> ClaimOrchestrator:
    return ClaimOrchestrator(ledger, oracle, clock=clock, timeout=0.2)


async def _purchase(symbol: TokenSymbol = TokenSymbol.GNF1000, usd_amount: str = "60", n: int = 1) -> Purchase:
    return await Purchase.create(
        wallet_address=WALLET,
        token_symbol=symbol,
        amount=Decimal(usd_amount),
        payment_tx_hash=tx_hash(n),
        payment_id=f"{WALLET}|{n}|00",
        purchase_date=START,
    )


def test_to_base_units() -> None:
    assert to_base_units(Decimal("60")) == 60 * 10**18
    assert to_base_units(Decimal("0.5")) == 5 * 10**17


@pytest.mark.asyncio
async def test_vesting_boundary(claims, clock, oracle) -> None:
    purchase = await _purchase()

    clock.current = START + timedelta(days=364)
    with pytest.raises(VestingNotComplete) as exc_info:
        await claims.claim(purchase.id, WALLET)
    assert exc_info.value.details["remaining_days"] == 1
    assert exc_info.value.details["vesting_end_date"] == (START + timedelta(days=365)).isoformat()

    clock.current = START + timedelta(days=365) - timedelta(seconds=1)
    with pytest.raises(VestingNotComplete):
        await claims.claim(purchase.id, WALLET)

    clock.current = START + timedelta(days=365)
    result = await claims.claim(purchase.id, WALLET)

    assert result.transfer_tx_hash == "0x" + "cd" * 32
    oracle.transfer.assert_awaited_once_with(WALLET, 60 * 10**18, CONTRACTS["GNF1000"])


@pytest.mark.asyncio
async def test_claim_commits_claim_fields(claims, clock) -> None:
    purchase = await _purchase(TokenSymbol.GNF10, "20")

    await claims.claim(purchase.id, WALLET.upper().replace("0X", "0x"))

    stored = await Purchase.get(id=purchase.id)
    assert stored.claimed is True
    assert stored.claimable is True
    assert stored.claim_status == ClaimStatus.CLAIMED
    assert stored.claim_date is not None
    assert stored.transfer_tx_hash == "0x" + "cd" * 32


@pytest.mark.asyncio
async def test_checks_run_in_order(claims, clock) -> None:
    with pytest.raises(NotFound):
        await claims.claim(uuid.uuid4(), WALLET)

    purchase = await _purchase(TokenSymbol.GNF10, "20")
    with pytest.raises(Unauthorized):
        await claims.claim(purchase.id, OTHER_WALLET)

    await claims.claim(purchase.id, WALLET)
    with pytest.raises(AlreadyClaimed):
        await claims.claim(purchase.id, WALLET)


@pytest.mark.asyncio
async def test_malformed_purchase_id(claims) -> None:
    with pytest.raises(ValidationError):
        await claims.claim("not-a-uuid", WALLET)


@pytest.mark.asyncio
async def test_missing_token_config(claims, oracle) -> None:
    purchase = await _purchase()
    await TokenConfig.filter(symbol=TokenSymbol.GNF1000).delete()

    with pytest.raises(ConfigMissing):
        await claims.claim(purchase.id, WALLET)
    oracle.transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrent_claims_transfer_once(claims, oracle) -> None:
    purchase = await _purchase(TokenSymbol.GNF10, "20")

    results = await asyncio.gather(
        claims.claim(purchase.id, WALLET),
        claims.claim(purchase.id, WALLET),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, AlreadyClaimed)) == 1
    assert oracle.transfer.await_count == 1
    stored = await Purchase.get(id=purchase.id)
    assert stored.claimed is True


@pytest.mark.asyncio
async def test_failed_transfer_can_be_retried(claims, oracle) -> None:
    purchase = await _purchase(TokenSymbol.GNF10, "20")
    oracle.transfer.side_effect = SettlementError("Transaction reverted")

    with pytest.raises(SettlementError):
        await claims.claim(purchase.id, WALLET)

    stored = await Purchase.get(id=purchase.id)
    assert stored.claimed is False
    assert stored.claim_status == ClaimStatus.UNCLAIMED

    oracle.transfer.side_effect = None
    result = await claims.claim(purchase.id, WALLET)
    assert result.purchase_id == str(purchase.id)


@pytest.mark.asyncio
async def test_transfer_timeout_leaves_claim_pending(claims, oracle) -> None:
    purchase = await _purchase(TokenSymbol.GNF10, "20")

    async def never_confirms(*args):
        await asyncio.sleep(10)

    oracle.transfer.side_effect = never_confirms

    with pytest.raises(Indeterminate) as exc_info:
        await claims.claim(purchase.id, WALLET)
    assert exc_info.value.details["purchase_id"] == str(purchase.id)

    stored = await Purchase.get(id=purchase.id)
    assert stored.claim_status == ClaimStatus.PENDING
    assert stored.claimed is False

    # No second transfer while the outcome is unknown
    with pytest.raises(AlreadyClaimed):
        await claims.claim(purchase.id, WALLET)
    assert oracle.transfer.await_count == 1


@pytest.mark.asyncio
async def test_resolve_pending_claim(claims, oracle) -> None:
    completed = await _purchase(TokenSymbol.GNF10, "20", n=1)
    released = await _purchase(TokenSymbol.GNF10, "2", n=2)
    await Purchase.filter(id__in=[completed.id, released.id]).update(claim_status=ClaimStatus.PENDING)

    assert await claims.resolve_pending_claim(completed.id, "0x" + "ee" * 32) is True
    assert await claims.resolve_pending_claim(released.id, None) is True

    done = await Purchase.get(id=completed.id)
    assert done.claimed is True
    assert done.transfer_tx_hash == "0x" + "ee" * 32
    back = await Purchase.get(id=released.id)
    assert back.claim_status == ClaimStatus.UNCLAIMED

    with pytest.raises(ValidationError):
        await claims.resolve_pending_claim(completed.id, None)


@pytest.mark.asyncio
async def test_claim_status(claims, clock) -> None:
    purchase = await _purchase()
    clock.current = START + timedelta(days=100)

    status = await claims.claim_status(str(purchase.id))

    assert status.can_claim is False
    assert status.claimed is False
    assert status.remaining_days == 265
    assert status.vesting_end_date == START + timedelta(days=365)


@pytest.mark.asyncio
async def test_claimable_lists_unclaimed_with_vesting(claims, clock) -> None:
    vested = await _purchase(TokenSymbol.GNF10, "20", n=1)
    locked = await _purchase(TokenSymbol.GNF1000, "60", n=2)
    claimed = await _purchase(TokenSymbol.GNF10, "2", n=3)
    await claims.claim(claimed.id, WALLET)

    view = await claims.claimable(WALLET)

    by_id = {str(item["purchase"].id): item for item in view.purchases}
    assert set(by_id) == {str(vested.id), str(locked.id)}
    assert by_id[str(vested.id)]["is_claimable"] is True
    assert by_id[str(locked.id)]["is_claimable"] is False
    assert by_id[str(locked.id)]["remaining_days"] == 365
