import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.core.clock import SystemClock, system_clock
from app.core.constants import RECENT_REFERRAL_PURCHASES
from app.core.errors import SelfReferral, ValidationError
from app.models.presale import Referral
from app.services.ledger import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class ReferralEarnings:
    total_bonus: Decimal
    recent_purchases: List[Dict[str, Any]] = field(default_factory=list)
    referral_count: int = 0


@dataclass
class ReferralStats:
    total: int
    bonus: Decimal
    referrals: List[Referral] = field(default_factory=list)


def _normalize(address: Optional[str], name: str) -> str:
    address = (address or "").strip().lower()
    if not address:
        raise ValidationError("Both referrer and referred addresses are required", field=name)
    return address


class ReferralLedger:
    """Records referrer/referred pairs once and aggregates their bonuses."""

    def __init__(self, ledger: LedgerStore, clock: SystemClock = system_clock):
        self.ledger = ledger
        self.clock = clock

    async def record_referral(self, referrer: str, referred: str) -> Referral:
        """Create the pair, or return the existing one."""
        referrer = _normalize(referrer, "referrer")
        referred = _normalize(referred, "referred")
        if referrer == referred:
            raise SelfReferral("Cannot refer yourself")

        link, created = await self.ledger.get_or_create_referral(referrer, referred, self.clock.now())
        if created:
            logger.info(f"Referral recorded: {referrer} -> {referred}")
        return link

    async def referrals(self, referrer: str) -> List[Referral]:
        return await self.ledger.referrals_for(_normalize(referrer, "referrer"))

    async def stats(self, referrer: str) -> ReferralStats:
        links = await self.referrals(referrer)
        return ReferralStats(
            total=len(links),
            bonus=sum((Decimal(link.bonus_amount) for link in links), Decimal("0")),
            referrals=links,
        )

    async def earnings(self, referrer: str) -> ReferralEarnings:
        links = await self.referrals(referrer)

        recent: List[Dict[str, Any]] = []
        for link in links:
            for purchase in list(link.purchases)[-RECENT_REFERRAL_PURCHASES:]:
                recent.append(
                    {
                        "amount": purchase.amount,
                        "bonus": purchase.bonus,
                        "timestamp": purchase.timestamp,
                        "referred": link.referred,
                    }
                )
        recent.sort(key=lambda p: p["timestamp"], reverse=True)

        return ReferralEarnings(
            total_bonus=sum((Decimal(link.bonus_amount) for link in links), Decimal("0")),
            recent_purchases=recent[:RECENT_REFERRAL_PURCHASES],
            referral_count=len(links),
        )
