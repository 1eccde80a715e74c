"""Lookup of chain execution adapters and quote sources by (chain, network)."""

from __future__ import annotations

from interfaces.chain_execution import ChainExecutionAdapter, QuoteSource
from services.chain.evm_networks import is_evm_chain

_ADAPTERS: dict[tuple[str, str], ChainExecutionAdapter] = {}
_QUOTE_SOURCES: dict[tuple[str, str], QuoteSource] = {}


def _key(chain: str, network: str) -> tuple[str, str]:
    return str(chain or "").upper(), str(network or "devnet").lower()


def register_chain_adapter(chain: str, network: str, adapter: ChainExecutionAdapter) -> None:
    _ADAPTERS[_key(chain, network)] = adapter


def register_quote_source(chain: str, network: str, source: QuoteSource) -> None:
    _QUOTE_SOURCES[_key(chain, network)] = source


def reset_chain_adapters() -> None:
    _ADAPTERS.clear()
    _QUOTE_SOURCES.clear()


def get_chain_adapter(chain: str, network: str = "devnet") -> ChainExecutionAdapter:
    """Return the adapter for ``chain``/``network``, creating Solana and EVM ones lazily."""
    key = _key(chain, network)
    adapter = _ADAPTERS.get(key)
    if adapter is not None:
        return adapter
    if key[0] == "SOLANA":
        from services.chain.solana_adapter import SolanaExecutionAdapter

        adapter = SolanaExecutionAdapter(network=key[1])
    elif is_evm_chain(key[0]):
        from services.chain.evm_adapter import EvmExecutionAdapter

        adapter = EvmExecutionAdapter(key[0], key[1])
    else:
        raise ValueError(f"No execution adapter for chain {key[0]} ({key[1]})")
    _ADAPTERS[key] = adapter
    return adapter


def get_quote_source(chain: str, network: str = "devnet") -> QuoteSource:
    """Return the quote source pricing ``chain``: Jupiter for Solana, 0x for EVM chains."""
    key = _key(chain, network)
    source = _QUOTE_SOURCES.get(key)
    if source is not None:
        return source
    if key[0] == "SOLANA":
        from services.jupiter_client import jupiter_client

        return jupiter_client
    if not is_evm_chain(key[0]):
        raise ValueError(f"No quote source for chain {key[0]} ({key[1]})")
    from services.zerox_client import ZeroExClient

    source = ZeroExClient(key[0], key[1])
    _QUOTE_SOURCES[key] = source
    return source


async def close_quote_sources() -> None:
    for source in list(_QUOTE_SOURCES.values()):
        close = getattr(source, "close", None)
        if close is not None:
            await close()
