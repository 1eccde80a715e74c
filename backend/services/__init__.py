from importlib import import_module

__all__ = [
    "JupiterClient",
    "ProfitWaterfall",
    "SafeModeCircuitBreaker",
    "AtomicExecutor",
    "RefillDispatcher",
]

_LAZY_EXPORTS = {
    "JupiterClient": ("services.jupiter_client", "JupiterClient"),
    "ProfitWaterfall": ("services.profit_waterfall", "ProfitWaterfall"),
    "SafeModeCircuitBreaker": ("services.circuit_breaker", "SafeModeCircuitBreaker"),
    "AtomicExecutor": ("services.atomic_executor", "AtomicExecutor"),
    "RefillDispatcher": ("services.refill_dispatcher", "RefillDispatcher"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
