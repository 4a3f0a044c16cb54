"""
Wallet signature authentication.

The client personal-signs ``"{walletAddress}:{timestamp}"`` (timestamp in
epoch milliseconds) and sends the signature, timestamp and wallet address as
headers. A signature is accepted for ``auth_max_age_seconds`` after its
timestamp.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from app.core.config import settings
from app.core.errors import Unauthorized

logger = logging.getLogger(__name__)


def auth_message(wallet_address: str, timestamp: str) -> str:
    return f"{wallet_address}:{timestamp}"


def verify_wallet_signature(
    wallet_address: Optional[str],
    timestamp: Optional[str],
    signature: Optional[str],
    now: datetime,
    max_age_seconds: Optional[int] = None,
) -> str:
    """Return the lowercased wallet address, or raise Unauthorized."""
    if not wallet_address or not timestamp or not signature:
        raise Unauthorized("Missing authentication headers")

    max_age = max_age_seconds if max_age_seconds is not None else settings.auth_max_age_seconds
    try:
        signed_at = datetime.fromtimestamp(int(timestamp) / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        raise Unauthorized("Invalid timestamp")

    age = (now - signed_at).total_seconds()
    if age > max_age or age < -max_age:
        raise Unauthorized("Signature expired")

    try:
        recovered = Account.recover_message(
            encode_defunct(text=auth_message(wallet_address, timestamp)),
            signature=signature,
        )
    except Exception as e:
        logger.info(f"Signature recovery failed for {wallet_address}: {e}")
        raise Unauthorized("Invalid signature")

    if recovered.lower() != wallet_address.lower():
        raise Unauthorized("Invalid signature")
    return wallet_address.lower()
