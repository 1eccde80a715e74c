"""0x Swap API v2 adapter (quote source for EVM chains).

Pricing uses the allowance-holder ``/price`` endpoint, which needs no
taker. ``get_swap_instructions`` asks ``/quote`` for the firm transaction
and returns it as an ERC-20 ``approve`` of the sell amount to the
allowance target followed by the swap call, both sent from the taker.
"""

from __future__ import annotations

import base64
from typing import Any, Iterable, Optional

import httpx
from eth_abi import encode
from web3 import Web3

from config import settings
from models.quote import (
    FallbackQuote,
    InstructionSpec,
    NoRoute,
    QuoteResult,
    RealQuote,
    RouteStep,
    SwapInstructions,
)
from services.chain.evm_networks import evm_network_for
from services.jupiter_client import (
    FALLBACK_VENUE_LABEL,
    FallbackQuoteBlocked,
    QuoteSourceError,
    build_fallback_quote,
    match_venue_name,
)
from utils.logger import get_logger
from utils.rate_limiter import endpoint_for_url, rate_limiter
from utils.retry import RetryConfig, RetryableClient

logger = get_logger("zerox")

# 0x marks the chain's native currency with this pseudo-address.
NATIVE_TOKEN_SENTINEL = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
ERC20_APPROVE_SELECTOR = Web3.keccak(text="approve(address,uint256)")[:4]

# Liquidity source names accepted as leg venue constraints.
ZEROX_SOURCES = frozenset(
    {
        "Aerodrome_V2",
        "Aerodrome_V3",
        "Balancer_V2",
        "Balancer_V3",
        "Camelot_V2",
        "Camelot_V3",
        "Curve",
        "DODO_V2",
        "Fluid",
        "Maverick_V2",
        "PancakeSwap_V2",
        "PancakeSwap_V3",
        "QuickSwap_V2",
        "QuickSwap_V3",
        "Solidly_V3",
        "SushiSwap",
        "SushiSwap_V3",
        "Uniswap_V2",
        "Uniswap_V3",
        "Uniswap_V4",
        "Velodrome_V2",
        "WOOFi_V2",
        FALLBACK_VENUE_LABEL,
    }
)


def validate_source_name(name: Optional[str]) -> tuple[bool, Optional[str]]:
    return match_venue_name(name, ZEROX_SOURCES)


def _as_int(value: Any, field_name: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise QuoteSourceError(f"Malformed 0x field {field_name}: {value!r}")
    try:
        return int(str(value))
    except (TypeError, ValueError) as exc:
        raise QuoteSourceError(f"Malformed 0x field {field_name}: {value!r}", cause=exc) from exc


def _hex_to_base64(value: str) -> str:
    text = str(value or "")
    if text.startswith("0x"):
        text = text[2:]
    try:
        return base64.b64encode(bytes.fromhex(text)).decode("ascii")
    except ValueError as exc:
        raise QuoteSourceError(f"Malformed calldata: {value[:20]!r}", cause=exc) from exc


def _network_fee(payload: dict[str, Any]) -> Optional[int]:
    if payload.get("totalNetworkFee") not in (None, ""):
        return _as_int(payload["totalNetworkFee"], "totalNetworkFee")
    transaction = payload.get("transaction") or {}
    gas = payload.get("gas") or transaction.get("gas")
    gas_price = payload.get("gasPrice") or transaction.get("gasPrice")
    if gas and gas_price:
        return _as_int(gas, "gas") * _as_int(gas_price, "gasPrice")
    return None


def parse_price(
    payload: dict[str, Any],
    *,
    sell_token: str,
    buy_token: str,
    sell_amount: int,
    slippage_bps: int,
    params: Optional[dict[str, Any]] = None,
) -> RealQuote:
    """Build a quote value from a ``/price`` response body.

    0x nets its own fees into ``buyAmount``, so route steps carry no fee.
    ``raw`` keeps the response and the request parameters for ``/quote``.
    """
    if not isinstance(payload, dict):
        raise QuoteSourceError("0x price payload is not an object", cause=payload)
    if "buyAmount" not in payload:
        raise QuoteSourceError("0x price payload has no buyAmount", cause=payload)
    buy_amount = _as_int(payload["buyAmount"], "buyAmount")

    steps = []
    try:
        for fill in (payload.get("route") or {}).get("fills") or []:
            share = int(fill.get("proportionBps") or 10_000)
            source_token = str(fill.get("from") or sell_token)
            target_token = str(fill.get("to") or buy_token)
            steps.append(
                RouteStep(
                    venue=str(fill.get("source") or ""),
                    amm_key=None,
                    input_mint=source_token,
                    output_mint=target_token,
                    in_amount=sell_amount * share // 10_000 if source_token.lower() == sell_token.lower() else 0,
                    out_amount=buy_amount * share // 10_000 if target_token.lower() == buy_token.lower() else 0,
                    fee_amount=0,
                    fee_mint=None,
                    percent=share // 100,
                )
            )
    except (TypeError, ValueError, AttributeError) as exc:
        raise QuoteSourceError(f"Malformed 0x route: {exc}", cause=payload) from exc

    threshold_raw = payload.get("minBuyAmount")
    return RealQuote(
        input_mint=sell_token,
        output_mint=buy_token,
        in_amount=sell_amount,
        out_amount=buy_amount,
        route=tuple(steps),
        slippage_bps=slippage_bps,
        price_impact_pct=str(payload.get("estimatedPriceImpact") or "0"),
        priority_fee=_network_fee(payload),
        other_amount_threshold=_as_int(threshold_raw, "minBuyAmount") if threshold_raw is not None else None,
        raw={"price": payload, "params": dict(params or {})},
    )


def approve_instruction(token: str, spender: str, amount: int) -> InstructionSpec:
    calldata = ERC20_APPROVE_SELECTOR + encode(
        ["address", "uint256"], [Web3.to_checksum_address(spender), int(amount)]
    )
    return InstructionSpec(program_id=token, accounts=(), data=base64.b64encode(calldata).decode("ascii"))


def parse_firm_quote(payload: dict[str, Any], quote: RealQuote) -> SwapInstructions:
    """Turn a ``/quote`` response into approve + swap calls for one leg."""
    if not isinstance(payload, dict) or not payload.get("transaction"):
        raise QuoteSourceError("0x quote payload has no transaction", cause=payload)
    transaction = payload["transaction"]
    if not transaction.get("to"):
        raise QuoteSourceError("0x quote transaction has no target", cause=payload)

    firm_out = _as_int(payload.get("buyAmount"), "buyAmount")
    floor = quote.other_amount_threshold or 0
    if firm_out < floor:
        raise QuoteSourceError(f"Firm 0x quote {firm_out} is below the priced minimum {floor}", cause=payload)

    swap = InstructionSpec(
        program_id=str(transaction["to"]),
        accounts=(),
        data=_hex_to_base64(transaction.get("data") or ""),
        value=_as_int(transaction.get("value"), "transaction.value"),
    )
    setup: list[InstructionSpec] = []
    allowance = (payload.get("issues") or {}).get("allowance") or {}
    spender = payload.get("allowanceTarget") or allowance.get("spender")
    if spender and quote.input_mint.lower() != NATIVE_TOKEN_SENTINEL.lower():
        setup.append(approve_instruction(quote.input_mint, spender, quote.in_amount))
    return SwapInstructions(swap=swap, setup=setup)


def _is_unreachable(error: Exception) -> bool:
    return isinstance(error, (httpx.ConnectError, ConnectionError))


class ZeroExClient:
    """Client for the 0x allowance-holder price and quote endpoints on one chain."""

    def __init__(
        self,
        chain: str,
        network: str = "mainnet",
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        allow_fallback: Optional[bool] = None,
        force_fallback: Optional[bool] = None,
        retry_config: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        evm_network = evm_network_for(chain, network)
        self.chain = evm_network.chain
        self.network = network
        self.chain_id = evm_network.chain_id
        self.base_url = (base_url or settings.ZEROX_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ZEROX_API_KEY
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

    def _headers(self) -> dict[str, str]:
        headers = {"0x-version": "v2"}
        if self.api_key:
            headers["0x-api-key"] = self.api_key
        return headers

    async def _request(self, url: str, params: dict[str, Any]) -> httpx.Response:
        await rate_limiter.acquire(endpoint_for_url(url))
        retrying = RetryableClient(
            await self._get_client(),
            self._retry_config or RetryConfig.from_settings(),
            passthrough_statuses=(400, 404),
        )
        return await retrying.get(url, params=params, headers=self._headers())

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
        allowed_venues: Optional[Iterable[str]] = None,
        excluded_venues: Optional[Iterable[str]] = None,
    ) -> QuoteResult:
        """Fetch an indicative sell-side price, optionally constrained to named sources."""
        slippage = settings.DEFAULT_SLIPPAGE_BPS if slippage_bps is None else int(slippage_bps)
        amount = int(amount)
        if self.force_fallback:
            return build_fallback_quote(input_mint, output_mint, amount, slippage)

        params: dict[str, Any] = {
            "chainId": str(self.chain_id),
            "sellToken": input_mint,
            "buyToken": output_mint,
            "sellAmount": str(amount),
            "slippageBps": str(slippage),
        }
        allowed = [venue for venue in (allowed_venues or []) if venue]
        excluded = [venue for venue in (excluded_venues or []) if venue]
        if allowed:
            params["includedSources"] = ",".join(allowed)
        if excluded:
            params["excludedSources"] = ",".join(excluded)

        url = f"{self.base_url}/swap/allowance-holder/price"
        try:
            response = await self._request(url, params)
        except httpx.HTTPStatusError as exc:
            raise QuoteSourceError(
                f"0x price API failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                cause=exc.response.text,
            ) from exc
        except Exception as exc:
            if _is_unreachable(exc) and self.allow_fallback:
                logger.warning(
                    "Quote source unreachable, serving fallback quote",
                    chain=self.chain,
                    input_mint=input_mint,
                    output_mint=output_mint,
                    error=str(exc),
                )
                return build_fallback_quote(input_mint, output_mint, amount, slippage)
            raise QuoteSourceError(f"Failed to fetch 0x price: {exc}", cause=exc) from exc

        if response.status_code in (400, 404):
            reason = response.text.strip() or "no liquidity"
            logger.info("No route", chain=self.chain, input_mint=input_mint, output_mint=output_mint)
            return NoRoute(input_mint=input_mint, output_mint=output_mint, amount=amount, reason=reason[:500])

        try:
            payload = response.json()
        except ValueError as exc:
            raise QuoteSourceError("0x price response is not JSON", status_code=response.status_code, cause=exc) from exc

        if isinstance(payload, dict) and payload.get("liquidityAvailable") is False:
            return NoRoute(input_mint=input_mint, output_mint=output_mint, amount=amount, reason="no liquidity")

        quote = parse_price(
            payload,
            sell_token=input_mint,
            buy_token=output_mint,
            sell_amount=amount,
            slippage_bps=slippage,
            params=params,
        )
        logger.debug(
            "Quote received",
            chain=self.chain,
            input_mint=quote.input_mint,
            output_mint=quote.output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            venues=quote.venues,
        )
        return quote

    async def get_swap_instructions(self, quote: QuoteResult, signer: str) -> SwapInstructions:
        """Fetch the firm transaction for ``quote`` with ``signer`` as taker."""
        if isinstance(quote, FallbackQuote):
            raise FallbackQuoteBlocked("blocked: quote is mock data")
        if not isinstance(quote, RealQuote):
            raise QuoteSourceError("Cannot build swap instructions without a priced quote")

        params = dict(quote.raw.get("params") or {})
        params.update(
            {
                "chainId": str(self.chain_id),
                "sellToken": quote.input_mint,
                "buyToken": quote.output_mint,
                "sellAmount": str(quote.in_amount),
                "slippageBps": str(quote.slippage_bps),
                "taker": signer,
            }
        )
        url = f"{self.base_url}/swap/allowance-holder/quote"
        try:
            response = await self._request(url, params)
        except httpx.HTTPStatusError as exc:
            raise QuoteSourceError(
                f"0x quote API failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                cause=exc.response.text,
            ) from exc
        except Exception as exc:
            raise QuoteSourceError(f"Failed to get 0x quote: {exc}", cause=exc) from exc

        if response.status_code in (400, 404):
            raise QuoteSourceError("0x quote API rejected the swap", status_code=response.status_code, cause=response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise QuoteSourceError("0x quote response is not JSON", cause=exc) from exc
        return parse_firm_quote(payload, quote)
