from decimal import Decimal

# Presale tokens are 18-decimal ERC-20s
TOKEN_DECIMALS = 18

SECONDS_PER_DAY = 86400

# Settlement option ids (must match the presale contract)
PAYMENT_OPTIONS = {
    "GNF10": 0,
    "GNF1000": 1,
    "GNF10000": 2,
}

# Only GNF10 is capped per wallet
CAPPED_TOKEN = "GNF10"
WALLET_CAP = Decimal("200")

# Seed values for the token configuration table
DEFAULT_TOKENS = [
    {
        "symbol": "GNF10",
        "contract_address": "0xAEd556A73beAE48868967ED3755D02fd4a2f62E4",
        "unit_price": Decimal("0.2"),
        "total_supply": Decimal("500000"),
        "max_per_wallet": Decimal("200"),
        "vesting_period_days": 0,
    },
    {
        "symbol": "GNF1000",
        "contract_address": "0x390D5B3A854864CAF342008b61cE4b8b9716bda8",
        "unit_price": Decimal("0.6"),
        "total_supply": Decimal("2000000"),
        "max_per_wallet": None,
        "vesting_period_days": 365,
    },
    {
        "symbol": "GNF10000",
        "contract_address": "0x4C9c0772A58ad89844C7B6Eb701B2E0ED34a9601",
        "unit_price": Decimal("3000000"),
        "total_supply": Decimal("3000000"),
        "max_per_wallet": None,
        "vesting_period_days": 1095,
    },
]

# Referral earnings show at most this many recent purchases
RECENT_REFERRAL_PURCHASES = 10

# Optimistic-version retries before a conditional write gives up
MAX_VERSION_RETRIES = 5
