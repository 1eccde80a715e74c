"""Value types exchanged with the quote source and the settlement adapter.

A quote lookup has exactly three outcomes, modelled as a tagged union:

* ``RealQuote``      live price from the aggregator, executable
* ``FallbackQuote``  synthesized when the aggregator is unreachable; usable
  for scanning and display, never for execution
* ``NoRoute``        the aggregator answered but has no route for the pair

Transport failures are not a fourth variant; they raise ``QuoteSourceError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass(frozen=True)
class RouteStep:
    venue: str
    amm_key: Optional[str]
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    fee_amount: int
    fee_mint: Optional[str]
    percent: int = 100


@dataclass(frozen=True)
class _PricedQuote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    route: tuple[RouteStep, ...]
    slippage_bps: int
    price_impact_pct: str = "0"
    priority_fee: Optional[int] = None
    other_amount_threshold: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def route_fee_total(self) -> int:
        return sum(step.fee_amount for step in self.route)

    @property
    def venues(self) -> list[str]:
        seen: list[str] = []
        for step in self.route:
            if step.venue and step.venue not in seen:
                seen.append(step.venue)
        return seen

    @property
    def primary_venue(self) -> Optional[str]:
        venues = self.venues
        return venues[0] if venues else None


@dataclass(frozen=True)
class RealQuote(_PricedQuote):
    is_fallback = False


@dataclass(frozen=True)
class FallbackQuote(_PricedQuote):
    is_fallback = True


@dataclass(frozen=True)
class NoRoute:
    input_mint: str
    output_mint: str
    amount: int
    reason: str = "no route found"
    is_fallback = False


QuoteResult = Union[RealQuote, FallbackQuote, NoRoute]
PricedQuote = Union[RealQuote, FallbackQuote]


# ==================== INSTRUCTIONS ====================


@dataclass(frozen=True)
class AccountSpec:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class InstructionSpec:
    """Chain-agnostic primitive instruction (program, accounts, base64 data).

    On EVM chains ``program_id`` is the call target, ``data`` the base64
    calldata and ``value`` the native amount attached to the call.
    """

    program_id: str
    accounts: tuple[AccountSpec, ...]
    data: str
    value: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InstructionSpec":
        accounts = tuple(
            AccountSpec(
                pubkey=str(item["pubkey"]),
                is_signer=bool(item.get("isSigner", False)),
                is_writable=bool(item.get("isWritable", False)),
            )
            for item in payload.get("accounts") or []
        )
        return cls(
            program_id=str(payload["programId"]),
            accounts=accounts,
            data=str(payload.get("data") or ""),
        )

    def account_keys(self) -> tuple[str, ...]:
        return tuple(account.pubkey for account in self.accounts)


@dataclass
class SwapInstructions:
    """Ordered instruction groups for one swap leg."""

    swap: InstructionSpec
    compute_budget: list[InstructionSpec] = field(default_factory=list)
    setup: list[InstructionSpec] = field(default_factory=list)
    token_ledger: Optional[InstructionSpec] = None
    cleanup: Optional[InstructionSpec] = None
    lookup_table_addresses: list[str] = field(default_factory=list)


@dataclass
class MergedBundle:
    """Single atomic instruction sequence plus the lookup tables it needs."""

    instructions: list[InstructionSpec]
    lookup_table_addresses: list[str]
    duplicates_removed: int = 0
