"""Shared fixtures for arbitrage pipeline tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import asyncio
import base64
import struct
from typing import Any, Callable, Optional, Union

import pytest
from solders.keypair import Keypair

from models.quote import (
    AccountSpec,
    FallbackQuote,
    InstructionSpec,
    NoRoute,
    RealQuote,
    RouteStep,
    SwapInstructions,
)
from models.settlement import BalanceSnapshot, SettlementReceipt
from services import system_state
from services.chain import register_chain_adapter, reset_chain_adapters
from services.instruction_bundle import COMPUTE_BUDGET_PROGRAM_ID
from services.jupiter_client import FallbackQuoteBlocked
from services.risk_ledger import strategy_locks
from utils.rate_limiter import rate_limiter
from utils.secrets import reset_secrets_cache

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ATA_PROGRAM = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SWAP_PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


def new_address() -> str:
    return str(Keypair().pubkey())


def make_quote(
    input_mint: str,
    output_mint: str,
    in_amount: int,
    out_amount: int,
    *,
    fee: int = 0,
    priority_fee: Optional[int] = None,
    venue: str = "Orca",
    fallback: bool = False,
) -> Union[RealQuote, FallbackQuote]:
    step = RouteStep(
        venue=venue,
        amm_key=f"amm-{venue.lower()}",
        input_mint=input_mint,
        output_mint=output_mint,
        in_amount=in_amount,
        out_amount=out_amount,
        fee_amount=fee,
        fee_mint=input_mint,
    )
    quote_cls = FallbackQuote if fallback else RealQuote
    return quote_cls(
        input_mint=input_mint,
        output_mint=output_mint,
        in_amount=in_amount,
        out_amount=out_amount,
        route=(step,),
        slippage_bps=50,
        priority_fee=priority_fee,
        raw={"inputMint": input_mint, "outputMint": output_mint},
    )


def compute_budget_ix(kind: int, value: int) -> InstructionSpec:
    fmt = "<BI" if kind == 2 else "<BQ"
    return InstructionSpec(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=(),
        data=base64.b64encode(struct.pack(fmt, kind, value)).decode("ascii"),
    )


def create_ata_ix(owner: str, mint: str) -> InstructionSpec:
    return InstructionSpec(
        program_id=ATA_PROGRAM,
        accounts=(
            AccountSpec(pubkey=owner, is_signer=True, is_writable=True),
            AccountSpec(pubkey=mint, is_signer=False, is_writable=False),
        ),
        data=base64.b64encode(b"\x01").decode("ascii"),
    )


def swap_ix(tag: bytes, owner: str) -> InstructionSpec:
    return InstructionSpec(
        program_id=SWAP_PROGRAM,
        accounts=(AccountSpec(pubkey=owner, is_signer=True, is_writable=True),),
        data=base64.b64encode(tag).decode("ascii"),
    )


QuoteRule = Union[Any, Callable[[int], Any]]


class FakeQuoteSource:
    """Quote source keyed by direction.

    ``rules[(input_mint, output_mint)]`` is either a fixed result (a quote,
    ``NoRoute`` or an exception to raise) or a callable taking the amount.
    """

    def __init__(self, rules: Optional[dict[tuple[str, str], QuoteRule]] = None):
        self.rules: dict[tuple[str, str], QuoteRule] = dict(rules or {})
        self.quote_calls: list[dict[str, Any]] = []
        self.swap_calls: list[Any] = []

    async def get_quote(
        self,
        input_mint,
        output_mint,
        amount,
        slippage_bps=None,
        allowed_venues=None,
        excluded_venues=None,
    ):
        self.quote_calls.append(
            {
                "input_mint": input_mint,
                "output_mint": output_mint,
                "amount": amount,
                "allowed_venues": list(allowed_venues or []),
            }
        )
        rule = self.rules.get((input_mint, output_mint))
        if rule is None:
            return NoRoute(input_mint=input_mint, output_mint=output_mint, amount=amount)
        if isinstance(rule, BaseException):
            raise rule
        if callable(rule):
            return rule(amount)
        return rule

    async def get_swap_instructions(self, quote, signer):
        self.swap_calls.append(quote)
        if isinstance(quote, FallbackQuote):
            raise FallbackQuoteBlocked("blocked: quote is mock data")
        return SwapInstructions(
            swap=swap_ix(f"swap:{quote.input_mint[:4]}".encode(), signer),
            compute_budget=[compute_budget_ix(2, 200_000), compute_budget_ix(3, 1_000)],
            setup=[create_ata_ix(signer, USDC_MINT)],
        )


def profitable_round_trip(
    token_in: str = SOL_MINT,
    token_out: str = USDC_MINT,
    *,
    gain: int = 2_000_000,
) -> FakeQuoteSource:
    """Leg A trades 1:1, leg B returns ``gain`` extra units of ``token_in``."""
    return FakeQuoteSource(
        {
            (token_in, token_out): lambda amount: make_quote(token_in, token_out, amount, amount),
            (token_out, token_in): lambda amount: make_quote(token_out, token_in, amount, amount + gain),
        }
    )


class FakeChainAdapter:
    """In-memory ledger standing in for a chain. Signers are plain addresses."""

    chain = "SOLANA"
    native_mint = SOL_MINT

    def __init__(self, network: str = "devnet"):
        self.network = network
        self.native: dict[str, int] = {}
        self.tokens: dict[tuple[str, str], int] = {}
        self.submitted: list[dict[str, Any]] = []
        self.transfers: list[dict[str, Any]] = []
        self.submit_error: Optional[Exception] = None
        self.transfer_error: Optional[Exception] = None
        self.on_submit: Optional[Callable[["FakeChainAdapter", str], None]] = None
        self.generated: list[tuple[str, str]] = []
        self._signatures = 0

    def _next_signature(self) -> str:
        self._signatures += 1
        return f"sig-{self._signatures}"

    def load_signer(self, secret):
        return secret

    def signer_address(self, signer):
        return signer

    def trading_address(self, signer):
        return signer

    def generate_signer(self):
        keypair = Keypair()
        pair = (str(keypair.pubkey()), str(keypair))
        self.generated.append(pair)
        return pair

    async def get_native_balance(self, address):
        return self.native.get(address, 0)

    async def get_token_balance(self, owner, mint):
        return self.tokens.get((owner, mint), 0)

    async def snapshot_balances(self, owner, mints):
        return BalanceSnapshot(
            owner=owner,
            native=self.native.get(owner, 0),
            tokens={mint: self.tokens.get((owner, mint), 0) for mint in dict.fromkeys(mints)},
        )

    async def resolve_lookup_tables(self, addresses):
        return list(addresses)

    async def submit_atomic(self, instructions, lookup_tables, signer):
        self.submitted.append({"instructions": list(instructions), "lookup_tables": list(lookup_tables)})
        if self.submit_error is not None:
            raise self.submit_error
        if self.on_submit is not None:
            self.on_submit(self, signer)
        return SettlementReceipt(signature=self._next_signature(), slot=100)

    async def transfer_native(self, signer, destination, amount):
        if self.transfer_error is not None:
            raise self.transfer_error
        self.native[signer] = self.native.get(signer, 0) - amount
        self.native[destination] = self.native.get(destination, 0) + amount
        self.transfers.append({"from": signer, "to": destination, "amount": amount})
        return SettlementReceipt(signature=self._next_signature(), slot=100)

    async def transfer_fee(self):
        return 5_000


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    """Process-wide registries and locks start clean for every test."""
    reset_chain_adapters()
    strategy_locks.clear()
    reset_secrets_cache()
    monkeypatch.setattr(system_state, "_transition_lock", asyncio.Lock())
    monkeypatch.setattr(rate_limiter, "_buckets", {})
    monkeypatch.setattr(rate_limiter, "_locks", {})
    yield
    reset_chain_adapters()
    strategy_locks.clear()
    reset_secrets_cache()


@pytest.fixture
def fake_adapter():
    adapter = FakeChainAdapter()
    register_chain_adapter("SOLANA", "devnet", adapter)
    return adapter
