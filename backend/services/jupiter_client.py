"""Jupiter aggregator adapter (quote source for the Solana leg pricing).

``get_quote`` returns one of ``RealQuote``, ``FallbackQuote`` or ``NoRoute``
and raises ``QuoteSourceError`` for transport or parse failures that
survive the bounded retry. ``get_swap_instructions`` turns a real quote into
the primitive instruction groups used to build the atomic bundle.
"""

from __future__ import annotations

import random
import secrets
from typing import Any, Iterable, Optional

import httpx

from config import settings
from models.quote import (
    FallbackQuote,
    InstructionSpec,
    NoRoute,
    PricedQuote,
    QuoteResult,
    RealQuote,
    RouteStep,
    SwapInstructions,
)
from utils.logger import get_logger
from utils.rate_limiter import endpoint_for_url, rate_limiter
from utils.retry import RetryConfig, RetryableClient

logger = get_logger("jupiter")

FALLBACK_VENUE_LABEL = "Mock DEX"

# Route labels accepted as leg venue constraints.
SUPPORTED_VENUES = frozenset(
    {
        "Raydium",
        "Raydium CLMM",
        "Raydium CP",
        "Orca",
        "Orca (Whirlpools)",
        "Whirlpool",
        "Meteora",
        "Meteora DLMM",
        "Phoenix",
        "Lifinity",
        "Lifinity V2",
        "Cropper",
        "Saros",
        "Saber",
        "Aldrin",
        "Crema",
        "Invariant",
        "Marinade",
        "OpenBook",
        "GooseFX",
        "FluxBeam",
        "BonkSwap",
        "Pump.fun",
        "Jupiter",
        FALLBACK_VENUE_LABEL,
    }
)


class QuoteSourceError(Exception):
    """Transport, HTTP or payload failure talking to the quote source."""

    def __init__(self, message: str, status_code: Optional[int] = None, cause: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.cause = cause


class FallbackQuoteBlocked(Exception):
    """A fallback (simulated) quote was handed to an execution path."""


def match_venue_name(name: Optional[str], venues: Iterable[str]) -> tuple[bool, Optional[str]]:
    """Return ``(valid, suggestion)`` for a venue constraint against ``venues``.

    An empty constraint means "any venue" and is always valid. A near match
    (substring either way, case-insensitive) is offered as a suggestion.
    """
    if not name:
        return True, None
    venues = sorted(venues)
    wanted = name.strip().lower()
    for venue in venues:
        if venue.lower() == wanted:
            return True, None
    for venue in venues:
        lowered = venue.lower()
        if wanted in lowered or lowered in wanted:
            return False, venue
    return False, None


def validate_venue_name(name: Optional[str]) -> tuple[bool, Optional[str]]:
    return match_venue_name(name, SUPPORTED_VENUES)


def supported_venue_list() -> list[str]:
    return sorted(SUPPORTED_VENUES)


def _as_int(value: Any, field_name: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise QuoteSourceError(f"Malformed quote field {field_name}: {value!r}")
    try:
        return int(str(value))
    except (TypeError, ValueError) as exc:
        raise QuoteSourceError(f"Malformed quote field {field_name}: {value!r}", cause=exc) from exc


def parse_quote(payload: dict[str, Any], *, fallback: bool = False) -> PricedQuote:
    """Build a quote value from a Jupiter ``/quote`` response body."""
    if not isinstance(payload, dict):
        raise QuoteSourceError("Quote payload is not an object", cause=payload)
    try:
        route = tuple(
            RouteStep(
                venue=str(step["swapInfo"].get("label") or ""),
                amm_key=step["swapInfo"].get("ammKey"),
                input_mint=str(step["swapInfo"].get("inputMint") or ""),
                output_mint=str(step["swapInfo"].get("outputMint") or ""),
                in_amount=_as_int(step["swapInfo"].get("inAmount"), "routePlan.inAmount"),
                out_amount=_as_int(step["swapInfo"].get("outAmount"), "routePlan.outAmount"),
                fee_amount=_as_int(step["swapInfo"].get("feeAmount"), "routePlan.feeAmount"),
                fee_mint=step["swapInfo"].get("feeMint"),
                percent=int(step.get("percent") or 100),
            )
            for step in payload.get("routePlan") or []
        )
        input_mint = str(payload["inputMint"])
        output_mint = str(payload["outputMint"])
    except (KeyError, TypeError, AttributeError) as exc:
        raise QuoteSourceError(f"Malformed quote payload: {exc}", cause=payload) from exc

    priority_raw = payload.get("prioritizationFeeLamports")
    threshold_raw = payload.get("otherAmountThreshold")
    quote_cls = FallbackQuote if fallback else RealQuote
    return quote_cls(
        input_mint=input_mint,
        output_mint=output_mint,
        in_amount=_as_int(payload.get("inAmount"), "inAmount"),
        out_amount=_as_int(payload.get("outAmount"), "outAmount"),
        route=route,
        slippage_bps=int(payload.get("slippageBps") or 0),
        price_impact_pct=str(payload.get("priceImpactPct") or "0"),
        priority_fee=_as_int(priority_raw, "prioritizationFeeLamports") if priority_raw is not None else None,
        other_amount_threshold=_as_int(threshold_raw, "otherAmountThreshold") if threshold_raw is not None else None,
        raw=payload,
    )


def build_fallback_quote(input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> FallbackQuote:
    """Synthesize a plausible quote: 0.1%-0.5% haircut, 0.3% route fee."""
    spread_multiplier = 0.995 + random.random() * 0.004
    out_amount = int(amount * spread_multiplier)
    fee_amount = amount * 3 // 1000
    payload = {
        "inputMint": input_mint,
        "inAmount": str(amount),
        "outputMint": output_mint,
        "outAmount": str(out_amount),
        "otherAmountThreshold": str(out_amount),
        "swapMode": "ExactIn",
        "slippageBps": slippage_bps,
        "platformFee": None,
        "priceImpactPct": f"{random.random() * 0.1:.4f}",
        "routePlan": [
            {
                "swapInfo": {
                    "ammKey": f"MockAMM{secrets.token_hex(4)}",
                    "label": FALLBACK_VENUE_LABEL,
                    "inputMint": input_mint,
                    "outputMint": output_mint,
                    "inAmount": str(amount),
                    "outAmount": str(out_amount),
                    "feeAmount": str(fee_amount),
                    "feeMint": input_mint,
                },
                "percent": 100,
            }
        ],
        "prioritizationFeeLamports": settings.DEFAULT_PRIORITY_FEE,
        "isMock": True,
    }
    return parse_quote(payload, fallback=True)


def _is_unreachable(error: Exception) -> bool:
    # DNS failures and refused connections surface as ConnectError.
    return isinstance(error, (httpx.ConnectError, ConnectionError))


class JupiterClient:
    """Client for the Jupiter v6 quote and swap-instructions endpoints"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        allow_fallback: Optional[bool] = None,
        force_fallback: Optional[bool] = None,
        retry_config: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.JUPITER_API_URL).rstrip("/")
        self.allow_fallback = settings.QUOTE_FALLBACK_ENABLED if allow_fallback is None else allow_fallback
        self.force_fallback = settings.QUOTE_FORCE_MOCK if force_fallback is None else force_fallback
        self._retry_config = retry_config
        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        await rate_limiter.acquire(endpoint_for_url(url))
        retrying = RetryableClient(
            await self._get_client(),
            self._retry_config or RetryConfig.from_settings(),
            passthrough_statuses=(400,),
        )
        return await retrying.request(method, url, **kwargs)

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
        allowed_venues: Optional[Iterable[str]] = None,
        excluded_venues: Optional[Iterable[str]] = None,
    ) -> QuoteResult:
        """Fetch an ExactIn quote, optionally constrained to named venues."""
        slippage = settings.DEFAULT_SLIPPAGE_BPS if slippage_bps is None else int(slippage_bps)
        amount = int(amount)
        if self.force_fallback:
            return build_fallback_quote(input_mint, output_mint, amount, slippage)

        params: dict[str, Any] = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage),
            "swapMode": "ExactIn",
            "maxAccounts": str(settings.QUOTE_MAX_ACCOUNTS),
        }
        allowed = [venue for venue in (allowed_venues or []) if venue]
        excluded = [venue for venue in (excluded_venues or []) if venue]
        if allowed:
            params["dexes"] = ",".join(allowed)
        if excluded:
            params["excludeDexes"] = ",".join(excluded)

        url = f"{self.base_url}/quote"
        try:
            response = await self._request("GET", url, params=params)
        except httpx.HTTPStatusError as exc:
            raise QuoteSourceError(
                f"Jupiter quote API failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                cause=exc.response.text,
            ) from exc
        except Exception as exc:
            if _is_unreachable(exc) and self.allow_fallback:
                logger.warning(
                    "Quote source unreachable, serving fallback quote",
                    input_mint=input_mint,
                    output_mint=output_mint,
                    error=str(exc),
                )
                return build_fallback_quote(input_mint, output_mint, amount, slippage)
            raise QuoteSourceError(f"Failed to fetch Jupiter quote: {exc}", cause=exc) from exc

        if response.status_code == 400:
            reason = response.text.strip() or "no route found"
            logger.info("No route", input_mint=input_mint, output_mint=output_mint, venues=allowed or None)
            return NoRoute(input_mint=input_mint, output_mint=output_mint, amount=amount, reason=reason[:500])

        try:
            payload = response.json()
        except ValueError as exc:
            raise QuoteSourceError("Quote response is not JSON", status_code=response.status_code, cause=exc) from exc

        quote = parse_quote(payload)
        logger.debug(
            "Quote received",
            input_mint=quote.input_mint,
            output_mint=quote.output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            venues=quote.venues,
        )
        return quote

    async def get_swap_instructions(
        self,
        quote: QuoteResult,
        signer: str,
        wrap_and_unwrap_sol: bool = True,
    ) -> SwapInstructions:
        """Convert an accepted quote plus signer into ordered instruction groups."""
        if isinstance(quote, FallbackQuote):
            raise FallbackQuoteBlocked("blocked: quote is mock data")
        if not isinstance(quote, RealQuote):
            raise QuoteSourceError("Cannot build swap instructions without a priced quote")

        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": signer,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        url = f"{self.base_url}/swap-instructions"
        try:
            response = await self._request("POST", url, json=body)
        except httpx.HTTPStatusError as exc:
            raise QuoteSourceError(
                f"Jupiter swap-instructions API failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                cause=exc.response.text,
            ) from exc
        except Exception as exc:
            raise QuoteSourceError(f"Failed to get Jupiter swap instructions: {exc}", cause=exc) from exc

        if response.status_code == 400:
            raise QuoteSourceError(
                "Jupiter swap-instructions rejected the quote",
                status_code=400,
                cause=response.text,
            )
        try:
            return parse_swap_instructions(response.json())
        except ValueError as exc:
            raise QuoteSourceError("Swap-instructions response is not JSON", cause=exc) from exc


def parse_swap_instructions(payload: dict[str, Any]) -> SwapInstructions:
    if not isinstance(payload, dict) or not payload.get("swapInstruction"):
        raise QuoteSourceError("Swap-instructions payload has no swap instruction", cause=payload)
    try:
        token_ledger = payload.get("tokenLedgerInstruction")
        cleanup = payload.get("cleanupInstruction")
        return SwapInstructions(
            swap=InstructionSpec.from_payload(payload["swapInstruction"]),
            compute_budget=[InstructionSpec.from_payload(item) for item in payload.get("computeBudgetInstructions") or []],
            setup=[InstructionSpec.from_payload(item) for item in payload.get("setupInstructions") or []],
            token_ledger=InstructionSpec.from_payload(token_ledger) if token_ledger else None,
            cleanup=InstructionSpec.from_payload(cleanup) if cleanup else None,
            lookup_table_addresses=[str(item) for item in payload.get("addressLookupTableAddresses") or []],
        )
    except (KeyError, TypeError) as exc:
        raise QuoteSourceError(f"Malformed swap-instructions payload: {exc}", cause=payload) from exc


jupiter_client = JupiterClient()
