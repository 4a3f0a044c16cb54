"""
Tortoise ORM models for the presale ledger.

These models track:
- Purchases and their claim state
- Token sale configuration (owned by admin tooling, read-only to the core)
- Referral links and the purchases credited to them
- Per-wallet entitlement running totals for capped tokens
- A journal of settlement oracle submissions, used for reconciliation
"""

from tortoise import fields, models
from enum import Enum


class TokenSymbol(str, Enum):
    """Presale token offerings."""
    GNF10 = "GNF10"
    GNF1000 = "GNF1000"
    GNF10000 = "GNF10000"


class ClaimStatus(str, Enum):
    """Claim progress of a purchase."""
    UNCLAIMED = "unclaimed"
    PENDING = "pending"  # transfer submitted, outcome not yet recorded
    CLAIMED = "claimed"


class SettlementStatus(str, Enum):
    """Outcome of a settlement oracle submission."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"


class Purchase(models.Model):
    """
    A confirmed token purchase.

    Created only after the settlement oracle confirmed the payment. Claim
    fields are written exclusively through conditional updates on
    ``claim_status``; rows are never deleted.
    """
    id = fields.UUIDField(pk=True)

    wallet_address = fields.CharField(max_length=64, index=True)
    token_symbol = fields.CharEnumField(TokenSymbol, max_length=16, index=True)

    # USD-denominated
    amount = fields.DecimalField(max_digits=36, decimal_places=18)

    payment_tx_hash = fields.CharField(max_length=128, unique=True)
    payment_id = fields.CharField(max_length=160, unique=True)
    settlement_tx_hash = fields.CharField(max_length=128, null=True)
    transfer_tx_hash = fields.CharField(max_length=128, null=True)

    purchase_date = fields.DatetimeField(index=True)

    claimable = fields.BooleanField(default=False)
    claim_status = fields.CharEnumField(ClaimStatus, max_length=16, default=ClaimStatus.UNCLAIMED)
    claimed = fields.BooleanField(default=False)
    claim_date = fields.DatetimeField(null=True)

    referrer = fields.CharField(max_length=64, null=True)

    class Meta:
        table = "purchases"
        indexes = [
            ("wallet_address", "token_symbol"),
        ]


class TokenConfig(models.Model):
    """Sale parameters of one presale token."""
    id = fields.IntField(pk=True)
    symbol = fields.CharEnumField(TokenSymbol, max_length=16, unique=True)
    contract_address = fields.CharField(max_length=64)
    unit_price = fields.DecimalField(max_digits=36, decimal_places=18)
    total_supply = fields.DecimalField(max_digits=36, decimal_places=18)
    sold_amount = fields.DecimalField(max_digits=36, decimal_places=18, default=0)
    max_per_wallet = fields.DecimalField(max_digits=36, decimal_places=18, null=True)
    vesting_period_days = fields.IntField(default=0)

    class Meta:
        table = "token_configs"


class Referral(models.Model):
    """A referrer/referred pair with its accumulated bonus."""
    id = fields.UUIDField(pk=True)
    referrer = fields.CharField(max_length=64, index=True)
    referred = fields.CharField(max_length=64)
    bonus_amount = fields.DecimalField(max_digits=36, decimal_places=18, default=0)
    timestamp = fields.DatetimeField()
    version = fields.IntField(default=0)

    purchases: fields.ReverseRelation["ReferralPurchase"]

    class Meta:
        table = "referrals"
        unique_together = [("referrer", "referred")]


class ReferralPurchase(models.Model):
    """A purchase credited to a referral link."""
    id = fields.IntField(pk=True)
    referral = fields.ForeignKeyField("models.Referral", related_name="purchases")
    amount = fields.DecimalField(max_digits=36, decimal_places=18)
    bonus = fields.DecimalField(max_digits=36, decimal_places=18)
    timestamp = fields.DatetimeField()

    class Meta:
        table = "referral_purchases"
        ordering = ["timestamp", "id"]


class WalletEntitlement(models.Model):
    """
    Running total of capped-token entitlement per wallet.

    Includes in-flight reservations; updated with an optimistic version check
    so concurrent purchases cannot push a wallet past its cap.
    """
    id = fields.IntField(pk=True)
    wallet_address = fields.CharField(max_length=64)
    token_symbol = fields.CharEnumField(TokenSymbol, max_length=16)
    reserved_tokens = fields.DecimalField(max_digits=36, decimal_places=18, default=0)
    version = fields.IntField(default=0)

    class Meta:
        table = "wallet_entitlements"
        unique_together = [("wallet_address", "token_symbol")]


class SettlementAttempt(models.Model):
    """
    Journal entry for every payment submitted to the settlement oracle.

    Written before the oracle is called so that a crash or timeout leaves a
    record the reconciliation worker can resolve.
    """
    id = fields.UUIDField(pk=True)
    payment_id = fields.CharField(max_length=160, unique=True)

    wallet_address = fields.CharField(max_length=64, index=True)
    token_symbol = fields.CharEnumField(TokenSymbol, max_length=16)
    usd_amount = fields.DecimalField(max_digits=36, decimal_places=18)
    token_amount_wei = fields.CharField(max_length=80)
    payment_tx_hash = fields.CharField(max_length=128, index=True)
    # Equals payment_tx_hash while the attempt is open or confirmed, NULL once
    # failed: at most one live attempt per payment transaction
    payment_lock = fields.CharField(max_length=128, unique=True, null=True)
    referrer = fields.CharField(max_length=64, null=True)
    bonus_amount = fields.DecimalField(max_digits=36, decimal_places=18, null=True)
    reserved_tokens = fields.DecimalField(max_digits=36, decimal_places=18, default=0)

    status = fields.CharEnumField(SettlementStatus, max_length=20, default=SettlementStatus.PENDING, index=True)
    settlement_tx_hash = fields.CharField(max_length=128, null=True)
    error = fields.TextField(null=True)
    purchase = fields.ForeignKeyField("models.Purchase", related_name="settlements", null=True)

    created_at = fields.DatetimeField()
    resolved_at = fields.DatetimeField(null=True)

    class Meta:
        table = "settlement_attempts"
