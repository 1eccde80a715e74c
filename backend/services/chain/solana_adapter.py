"""Solana settlement adapter: JSON-RPC over httpx, signing with solders."""

from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Any, Optional, Sequence

import httpx
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from config import settings
from models.quote import InstructionSpec
from models.settlement import (
    BalanceSnapshot,
    SettlementReceipt,
    SettlementRejected,
    SettlementReverted,
    SettlementTimeout,
)
from utils.logger import get_logger
from utils.rate_limiter import rate_limiter
from utils.retry import RetryConfig, RetryableClient

logger = get_logger("solana")

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"

# Address lookup table account layout: 56-byte header, then 32-byte keys.
_LOOKUP_TABLE_HEADER_SIZE = 56
_PUBKEY_SIZE = 32

_FINAL_STATUSES = {"confirmed", "finalized"}
# One signature, no compute budget.
_TRANSFER_FEE = 5_000


class SolanaRpcError(Exception):
    def __init__(self, method: str, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.rpc_message = message
        self.data = data


def to_solders_instruction(spec: InstructionSpec) -> Instruction:
    accounts = [
        AccountMeta(
            pubkey=Pubkey.from_string(account.pubkey),
            is_signer=account.is_signer,
            is_writable=account.is_writable,
        )
        for account in spec.accounts
    ]
    return Instruction(
        program_id=Pubkey.from_string(spec.program_id),
        data=base64.b64decode(spec.data) if spec.data else b"",
        accounts=accounts,
    )


def parse_lookup_table(address: str, raw_data: bytes) -> AddressLookupTableAccount:
    if len(raw_data) < _LOOKUP_TABLE_HEADER_SIZE:
        raise ValueError(f"Lookup table {address} data too short ({len(raw_data)} bytes)")
    body = raw_data[_LOOKUP_TABLE_HEADER_SIZE:]
    addresses = [
        Pubkey.from_bytes(body[offset : offset + _PUBKEY_SIZE])
        for offset in range(0, len(body) - len(body) % _PUBKEY_SIZE, _PUBKEY_SIZE)
    ]
    return AddressLookupTableAccount(key=Pubkey.from_string(address), addresses=addresses)


class SolanaExecutionAdapter:
    """Chain execution adapter for Solana mainnet or devnet."""

    chain = "SOLANA"
    native_mint = WRAPPED_SOL_MINT

    def __init__(
        self,
        network: str = "devnet",
        rpc_url: Optional[str] = None,
        *,
        commitment: Optional[str] = None,
        confirm_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.network = network
        self.rpc_url = rpc_url or settings.rpc_url_for(network)
        self.commitment = commitment or settings.SOLANA_COMMITMENT
        self.confirm_timeout = settings.SETTLEMENT_CONFIRM_TIMEOUT_SECONDS if confirm_timeout is None else confirm_timeout
        self.poll_interval = settings.SETTLEMENT_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self._retry_config = retry_config
        self._client: Optional[httpx.AsyncClient] = http_client
        self._request_id = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _rpc(self, method: str, params: list) -> Any:
        self._request_id += 1
        await rate_limiter.acquire("solana_rpc")
        client = RetryableClient(await self._get_client(), self._retry_config or RetryConfig.from_settings())
        response = await client.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
        )
        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise SolanaRpcError(method, error.get("code"), str(error.get("message")), error.get("data"))
        return body.get("result")

    # ==================== SIGNERS ====================

    def load_signer(self, secret: str) -> Keypair:
        text = (secret or "").strip()
        if text.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(text)))
        return Keypair.from_base58_string(text)

    def signer_address(self, signer: Keypair) -> str:
        return str(signer.pubkey())

    def trading_address(self, signer: Keypair) -> str:
        return self.signer_address(signer)

    def generate_signer(self) -> tuple[str, str]:
        keypair = Keypair()
        return str(keypair.pubkey()), str(keypair)

    # ==================== BALANCES ====================

    async def get_native_balance(self, address: str) -> int:
        result = await self._rpc("getBalance", [address, {"commitment": self.commitment}])
        return int((result or {}).get("value") or 0)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        total = 0
        for account in (result or {}).get("value") or []:
            info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            total += int(info.get("tokenAmount", {}).get("amount") or 0)
        return total

    async def snapshot_balances(self, owner: str, mints: Sequence[str]) -> BalanceSnapshot:
        native = await self.get_native_balance(owner)
        tokens: dict[str, int] = {}
        for mint in dict.fromkeys(mints):
            tokens[mint] = await self.get_token_balance(owner, mint)
        return BalanceSnapshot(owner=owner, native=native, tokens=tokens)

    # ==================== SUBMISSION ====================

    async def resolve_lookup_tables(self, addresses: Sequence[str]) -> list[AddressLookupTableAccount]:
        tables: list[AddressLookupTableAccount] = []
        for address in dict.fromkeys(addresses):
            result = await self._rpc("getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}])
            value = (result or {}).get("value")
            if not value:
                raise SettlementRejected(f"Lookup table {address} not found")
            raw = base64.b64decode(value["data"][0])
            tables.append(parse_lookup_table(address, raw))
        return tables

    async def submit_atomic(
        self,
        instructions: Sequence[InstructionSpec],
        lookup_tables: Sequence[AddressLookupTableAccount],
        signer: Keypair,
    ) -> SettlementReceipt:
        try:
            solders_ixs = [to_solders_instruction(spec) for spec in instructions]
        except ValueError as exc:
            raise SettlementRejected(f"Invalid instruction: {exc}") from exc
        return await self._send_and_confirm(solders_ixs, list(lookup_tables), signer)

    async def transfer_native(self, signer: Keypair, destination: str, amount: int) -> SettlementReceipt:
        instruction = transfer(
            TransferParams(
                from_pubkey=signer.pubkey(),
                to_pubkey=Pubkey.from_string(destination),
                lamports=int(amount),
            )
        )
        return await self._send_and_confirm([instruction], [], signer)

    async def transfer_fee(self) -> int:
        return _TRANSFER_FEE

    async def _send_and_confirm(
        self,
        instructions: list[Instruction],
        lookup_tables: list[AddressLookupTableAccount],
        signer: Keypair,
    ) -> SettlementReceipt:
        blockhash_result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        blockhash = Hash.from_string(blockhash_result["value"]["blockhash"])
        try:
            message = MessageV0.try_compile(
                payer=signer.pubkey(),
                instructions=instructions,
                address_lookup_table_accounts=lookup_tables,
                recent_blockhash=blockhash,
            )
            transaction = VersionedTransaction(message, [signer])
            encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        except Exception as exc:
            raise SettlementRejected(f"Failed to build transaction: {exc}") from exc

        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": self.commitment,
                        "maxRetries": 3,
                    },
                ],
            )
        except SolanaRpcError as exc:
            raise SettlementRejected(exc.rpc_message) from exc

        logger.info("Transaction sent", signature=signature, network=self.network, instructions=len(instructions))
        return await self._await_confirmation(str(signature))

    async def _await_confirmation(self, signature: str) -> SettlementReceipt:
        deadline = time.monotonic() + self.confirm_timeout
        while time.monotonic() < deadline:
            try:
                result = await self._rpc(
                    "getSignatureStatuses",
                    [[signature], {"searchTransactionHistory": True}],
                )
            except (SolanaRpcError, httpx.HTTPError) as exc:
                logger.warning("Signature status poll failed", signature=signature, error=str(exc))
                result = None

            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                if status.get("err"):
                    raise SettlementReverted(f"Transaction reverted: {status['err']}", signature=signature)
                if status.get("confirmationStatus") in _FINAL_STATUSES:
                    return SettlementReceipt(
                        signature=signature,
                        slot=status.get("slot"),
                        confirmation_status=status["confirmationStatus"],
                    )
            await asyncio.sleep(self.poll_interval)

        raise SettlementTimeout(
            f"Transaction not confirmed within {self.confirm_timeout:.0f}s",
            signature=signature,
        )
