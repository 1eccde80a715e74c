from .registry import (
    close_quote_sources,
    get_chain_adapter,
    get_quote_source,
    register_chain_adapter,
    register_quote_source,
    reset_chain_adapters,
)

__all__ = [
    "close_quote_sources",
    "get_chain_adapter",
    "get_quote_source",
    "register_chain_adapter",
    "register_quote_source",
    "reset_chain_adapters",
]
