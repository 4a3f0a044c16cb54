"""
Settlement oracle: the external party that confirms payments and moves tokens.

SettlementOracle is the narrow interface the orchestrators call.
Web3SettlementOracle implements it against the presale contract on the GNF
EVM network: ``verifyPayment`` is dry-run with ``eth_call`` before it is
submitted, and claims are plain ERC-20 ``transfer`` calls from the operator
wallet.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError

from app.core.config import settings
from app.core.errors import SettlementError

logger = logging.getLogger(__name__)

PRESALE_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [
            {"name": "buyer", "type": "address"},
            {"name": "optionId", "type": "uint8"},
            {"name": "amount", "type": "uint256"},
            {"name": "paymentId", "type": "string"},
        ],
        "name": "verifyPayment",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "paymentId", "type": "string"}],
        "name": "isPaymentProcessed",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC20_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


class SettlementOracle(ABC):
    """
    Interface to the settlement oracle.

    Retries and backoff for the underlying network calls belong to the
    implementation; callers put their own deadline around each call.
    """

    @abstractmethod
    async def simulate(self, buyer: str, option_id: int, amount: int, payment_id: str) -> Optional[str]:
        """Dry-run a payment verification. Returns None when it would succeed, else the revert reason."""
        pass

    @abstractmethod
    async def submit_payment(self, buyer: str, option_id: int, amount: int, payment_id: str) -> str:
        """Submit the payment verification and wait for confirmation. Returns the tx hash."""
        pass

    @abstractmethod
    async def transfer(self, to: str, amount: int, token_contract: str) -> str:
        """Transfer ``amount`` base units of ``token_contract`` to ``to``. Returns the tx hash."""
        pass

    @abstractmethod
    async def payment_processed(self, payment_id: str) -> bool:
        """Whether the oracle has settled ``payment_id``."""
        pass

    @abstractmethod
    async def is_connected(self) -> bool:
        pass

    async def close(self) -> None:
        pass


class Web3SettlementOracle(SettlementOracle):
    """Settlement through the presale contract using web3.py."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        gas_limit: Optional[int] = None,
    ):
        self._rpc_url = rpc_url or settings.gnf_rpc_url
        self._contract_address = contract_address or settings.presale_contract_address
        self._private_key = private_key or settings.operator_private_key
        self._chain_id = chain_id or settings.gnf_chain_id
        self._gas_limit = gas_limit or settings.settlement_gas_limit
        self._web3: Optional[AsyncWeb3] = None
        self._account: Optional[LocalAccount] = None
        # One operator wallet: nonces must be handed out one at a time
        self._nonce_lock = asyncio.Lock()

    @property
    def operator(self) -> LocalAccount:
        if self._account is None:
            if not self._private_key:
                raise ValueError("OPERATOR_PRIVATE_KEY not configured")
            self._account = Account.from_key(self._private_key)
        return self._account

    def _get_web3(self) -> AsyncWeb3:
        if self._web3 is None:
            self._web3 = AsyncWeb3(AsyncHTTPProvider(self._rpc_url))
        return self._web3

    def _presale_contract(self):
        if not self._contract_address:
            raise ValueError("PRESALE_CONTRACT_ADDRESS not configured")
        w3 = self._get_web3()
        return w3.eth.contract(address=Web3.to_checksum_address(self._contract_address), abi=PRESALE_ABI)

    async def close(self) -> None:
        if self._web3 is not None:
            await self._web3.provider.disconnect()
            self._web3 = None

    async def is_connected(self) -> bool:
        try:
            return await self._get_web3().is_connected()
        except Exception:
            return False

    # --- Reads ---

    async def simulate(self, buyer: str, option_id: int, amount: int, payment_id: str) -> Optional[str]:
        call = self._presale_contract().functions.verifyPayment(
            Web3.to_checksum_address(buyer), option_id, amount, payment_id
        )
        try:
            await call.call({"from": self.operator.address})
        except ContractLogicError as e:
            reason = e.message or str(e)
            logger.info(f"verifyPayment dry-run reverted for {payment_id}: {reason}")
            return reason
        return None

    async def payment_processed(self, payment_id: str) -> bool:
        return await self._presale_contract().functions.isPaymentProcessed(payment_id).call()

    # --- Writes ---

    async def submit_payment(self, buyer: str, option_id: int, amount: int, payment_id: str) -> str:
        call = self._presale_contract().functions.verifyPayment(
            Web3.to_checksum_address(buyer), option_id, amount, payment_id
        )
        tx_hash = await self._send(call)
        logger.info(f"verifyPayment confirmed: {tx_hash} for payment {payment_id}")
        return tx_hash

    async def transfer(self, to: str, amount: int, token_contract: str) -> str:
        w3 = self._get_web3()
        token = w3.eth.contract(address=Web3.to_checksum_address(token_contract), abi=ERC20_ABI)
        call = token.functions.transfer(Web3.to_checksum_address(to), amount)
        tx_hash = await self._send(call)
        logger.info(f"transfer confirmed: {tx_hash} amount={amount} to={to}")
        return tx_hash

    async def _send(self, call) -> str:
        """
        Sign, broadcast and wait for a contract call.

        Raises SettlementError only when the chain definitively rejected the
        transaction (pre-broadcast revert or a failed receipt). Anything else
        propagates untouched: the caller cannot know whether it landed.
        """
        w3 = self._get_web3()
        operator = self.operator

        async with self._nonce_lock:
            nonce = await w3.eth.get_transaction_count(operator.address, "pending")
            try:
                tx = await call.build_transaction(
                    {
                        "from": operator.address,
                        "nonce": nonce,
                        "chainId": self._chain_id,
                        "gas": self._gas_limit,
                        "gasPrice": await w3.eth.gas_price,
                    }
                )
            except ContractLogicError as e:
                raise SettlementError(f"Transaction rejected: {e.message or e}") from e
            signed = operator.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)

        hex_hash = Web3.to_hex(tx_hash)
        logger.info(f"Transaction sent: {hex_hash}")

        receipt = await w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt["status"] != 1:
            raise SettlementError(f"Transaction {hex_hash} reverted", tx_hash=hex_hash)
        return hex_hash


# Singleton instance
settlement_oracle = Web3SettlementOracle()
