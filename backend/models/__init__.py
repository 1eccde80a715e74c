from .quote import (
    AccountSpec,
    FallbackQuote,
    InstructionSpec,
    MergedBundle,
    NoRoute,
    PricedQuote,
    QuoteResult,
    RealQuote,
    RouteStep,
    SwapInstructions,
)

__all__ = [
    "AccountSpec",
    "FallbackQuote",
    "InstructionSpec",
    "MergedBundle",
    "NoRoute",
    "PricedQuote",
    "QuoteResult",
    "RealQuote",
    "RouteStep",
    "SwapInstructions",
]
