"""EVM settlement adapter: AsyncWeb3 over HTTP, signing with eth-account.

A round trip is several calls (approvals and two swaps) that must land
together, so bundles go through an operator-deployed batch executor
contract exposing ``execute((address,uint256,bytes)[])``, which reverts
every call if one fails. The contract holds the trading inventory; the
signer only owns it and pays gas.
"""

from __future__ import annotations

import asyncio
import base64
import time
from typing import Any, Awaitable, Optional, Sequence

from eth_abi import decode, encode
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

from config import settings
from models.quote import InstructionSpec
from models.settlement import (
    BalanceSnapshot,
    SettlementReceipt,
    SettlementRejected,
    SettlementReverted,
    SettlementTimeout,
)
from services.chain.evm_networks import evm_network_for
from utils.logger import get_logger
from utils.rate_limiter import rate_limiter

logger = get_logger("evm")

NATIVE_TRANSFER_GAS = 21_000
BALANCE_OF_SELECTOR = AsyncWeb3.keccak(text="balanceOf(address)")[:4]
EXECUTE_BATCH_SELECTOR = AsyncWeb3.keccak(text="execute((address,uint256,bytes)[])")[:4]


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return "0x" + bytes(value).hex()


def _raw_transaction(signed: Any) -> bytes:
    # eth-account renamed rawTransaction to raw_transaction.
    raw = getattr(signed, "raw_transaction", None)
    if raw is None:
        raw = signed.rawTransaction
    return raw


def encode_batch(instructions: Sequence[InstructionSpec]) -> bytes:
    """Calldata for ``execute`` carrying every instruction as one call."""
    calls = []
    for spec in instructions:
        calldata = base64.b64decode(spec.data) if spec.data else b""
        calls.append((AsyncWeb3.to_checksum_address(spec.program_id), int(spec.value), calldata))
    return EXECUTE_BATCH_SELECTOR + encode(["(address,uint256,bytes)[]"], [calls])


class EvmExecutionAdapter:
    """Chain execution adapter for one EVM chain, mainnet or its testnet."""

    def __init__(
        self,
        chain: str,
        network: str = "mainnet",
        rpc_url: Optional[str] = None,
        *,
        web3: Optional[AsyncWeb3] = None,
        executor_contract: Optional[str] = None,
        confirm_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        gas_multiplier: Optional[float] = None,
    ):
        evm_network = evm_network_for(chain, network)
        self.chain = evm_network.chain
        self.network = network
        self.chain_id = evm_network.chain_id
        self.native_mint = evm_network.wrapped_native
        self.rpc_url = rpc_url or settings.evm_rpc_url_for(chain, network) or evm_network.rpc_url
        self.web3 = web3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": settings.API_TIMEOUT_SECONDS})
        )
        self.executor_contract = executor_contract or settings.evm_executor_contract_for(chain, network)
        self.confirm_timeout = settings.SETTLEMENT_CONFIRM_TIMEOUT_SECONDS if confirm_timeout is None else confirm_timeout
        self.poll_interval = settings.SETTLEMENT_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.gas_multiplier = settings.EVM_GAS_LIMIT_MULTIPLIER if gas_multiplier is None else gas_multiplier

    async def _eth(self, call: Awaitable[Any]) -> Any:
        await rate_limiter.acquire("evm_rpc")
        return await call

    # ==================== SIGNERS ====================

    def load_signer(self, secret: str) -> LocalAccount:
        return Account.from_key((secret or "").strip())

    def signer_address(self, signer: LocalAccount) -> str:
        return signer.address

    def trading_address(self, signer: LocalAccount) -> str:
        if not self.executor_contract:
            raise SettlementRejected(f"No batch executor contract configured for {self.chain} {self.network}")
        return AsyncWeb3.to_checksum_address(self.executor_contract)

    def generate_signer(self) -> tuple[str, str]:
        account = Account.create()
        return account.address, _hex(account.key)

    # ==================== BALANCES ====================

    async def get_native_balance(self, address: str) -> int:
        return int(await self._eth(self.web3.eth.get_balance(AsyncWeb3.to_checksum_address(address))))

    async def get_token_balance(self, owner: str, mint: str) -> int:
        calldata = BALANCE_OF_SELECTOR + encode(["address"], [AsyncWeb3.to_checksum_address(owner)])
        result = await self._eth(
            self.web3.eth.call({"to": AsyncWeb3.to_checksum_address(mint), "data": _hex(calldata)})
        )
        if not result:
            return 0
        return int(decode(["uint256"], bytes(result))[0])

    async def snapshot_balances(self, owner: str, mints: Sequence[str]) -> BalanceSnapshot:
        native = await self.get_native_balance(owner)
        tokens: dict[str, int] = {}
        for mint in dict.fromkeys(mints):
            tokens[mint] = await self.get_token_balance(owner, mint)
        return BalanceSnapshot(owner=owner, native=native, tokens=tokens)

    # ==================== SUBMISSION ====================

    async def resolve_lookup_tables(self, addresses: Sequence[str]) -> list[Any]:
        """EVM bundles use no lookup tables."""
        return []

    async def submit_atomic(
        self,
        instructions: Sequence[InstructionSpec],
        lookup_tables: Sequence[Any],
        signer: LocalAccount,
    ) -> SettlementReceipt:
        if not instructions:
            raise SettlementRejected("Bundle has no calls")
        contract = self.trading_address(signer)
        try:
            calldata = encode_batch(instructions)
        except (ValueError, TypeError) as exc:
            raise SettlementRejected(f"Invalid call: {exc}") from exc
        transaction = {"to": contract, "data": _hex(calldata), "value": 0}
        return await self._send_and_confirm(transaction, signer, calls=len(instructions))

    async def transfer_native(self, signer: LocalAccount, destination: str, amount: int) -> SettlementReceipt:
        transaction = {
            "to": AsyncWeb3.to_checksum_address(destination),
            "value": int(amount),
            "gas": NATIVE_TRANSFER_GAS,
        }
        return await self._send_and_confirm(transaction, signer, calls=1)

    async def transfer_fee(self) -> int:
        return NATIVE_TRANSFER_GAS * int(await self._eth(self.web3.eth.gas_price))

    async def _send_and_confirm(self, transaction: dict[str, Any], signer: LocalAccount, *, calls: int) -> SettlementReceipt:
        transaction = {
            **transaction,
            "from": signer.address,
            "chainId": self.chain_id,
            "nonce": await self._eth(self.web3.eth.get_transaction_count(signer.address, "pending")),
            "gasPrice": int(await self._eth(self.web3.eth.gas_price)),
        }
        if "gas" not in transaction:
            try:
                estimate = await self._eth(self.web3.eth.estimate_gas(transaction))
            except Exception as exc:
                # A reverting bundle fails estimation; nothing has been sent.
                raise SettlementRejected(f"Gas estimation failed: {exc}") from exc
            transaction["gas"] = int(int(estimate) * self.gas_multiplier)

        try:
            signed = signer.sign_transaction(transaction)
            tx_hash = _hex(await self._eth(self.web3.eth.send_raw_transaction(_raw_transaction(signed))))
        except Exception as exc:
            raise SettlementRejected(f"Failed to send transaction: {exc}") from exc

        logger.info("Transaction sent", signature=tx_hash, chain=self.chain, network=self.network, calls=calls)
        return await self._await_confirmation(tx_hash)

    async def _await_confirmation(self, tx_hash: str) -> SettlementReceipt:
        deadline = time.monotonic() + self.confirm_timeout
        while time.monotonic() < deadline:
            try:
                receipt = await self._eth(self.web3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound:
                receipt = None
            except Exception as exc:
                logger.warning("Receipt poll failed", signature=tx_hash, error=str(exc))
                receipt = None

            if receipt:
                if int(receipt.get("status", 0)) != 1:
                    raise SettlementReverted("Transaction reverted", signature=tx_hash)
                return SettlementReceipt(
                    signature=tx_hash,
                    slot=receipt.get("blockNumber"),
                    confirmation_status="confirmed",
                )
            await asyncio.sleep(self.poll_interval)

        raise SettlementTimeout(
            f"Transaction not confirmed within {self.confirm_timeout:.0f}s",
            signature=tx_hash,
        )
