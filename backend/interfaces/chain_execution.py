"""Contracts for quote sources and settlement chains.

The execution engine, scanner and fee-payer manager depend only on these
protocols; concrete clients live under ``services``.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol, Sequence

from models.quote import InstructionSpec, QuoteResult, SwapInstructions
from models.settlement import BalanceSnapshot, SettlementReceipt


class QuoteSource(Protocol):
    """Directional swap pricing with optional venue constraints."""

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
        allowed_venues: Optional[Iterable[str]] = None,
        excluded_venues: Optional[Iterable[str]] = None,
    ) -> QuoteResult:
        """Return a real quote, a fallback quote, or NoRoute."""

    async def get_swap_instructions(self, quote: QuoteResult, signer: str) -> SwapInstructions:
        """Convert a real quote into ordered primitive instructions."""


class ChainExecutionAdapter(Protocol):
    """Balance reads and atomic submission for one chain + network."""

    chain: str
    network: str
    native_mint: str

    def load_signer(self, secret: str) -> Any:
        """Decode a stored secret into a signer object."""

    def signer_address(self, signer: Any) -> str:
        """Public address of a signer."""

    def trading_address(self, signer: Any) -> str:
        """Address that holds the trading inventory a bundle swaps from and into."""

    def generate_signer(self) -> tuple[str, str]:
        """Create a new wallet; returns (public address, secret)."""

    async def get_native_balance(self, address: str) -> int:
        """Native balance in the smallest unit."""

    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Summed token balance for ``owner`` in the token's base unit."""

    async def snapshot_balances(self, owner: str, mints: Sequence[str]) -> BalanceSnapshot:
        """Native plus per-mint balances read together."""

    async def resolve_lookup_tables(self, addresses: Sequence[str]) -> list[Any]:
        """Fetch account lookup structures referenced by a bundle."""

    async def submit_atomic(
        self,
        instructions: Sequence[InstructionSpec],
        lookup_tables: Sequence[Any],
        signer: Any,
    ) -> SettlementReceipt:
        """Sign, send and await confirmation of one atomic unit.

        Raises SettlementRejected, SettlementTimeout or SettlementReverted.
        """

    async def transfer_native(self, signer: Any, destination: str, amount: int) -> SettlementReceipt:
        """Send native currency and await confirmation."""

    async def transfer_fee(self) -> int:
        """Current native cost of one plain transfer."""
