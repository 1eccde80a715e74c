"""Static per-chain facts for the supported EVM networks."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class EvmNetwork:
    chain: str
    name: str
    chain_id: int
    rpc_url: str
    wrapped_native: str
    native_symbol: str


_NETWORKS: dict[tuple[str, str], EvmNetwork] = {
    ("ETHEREUM", "mainnet"): EvmNetwork(
        "ETHEREUM", "mainnet", 1, "https://eth.llamarpc.com", "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", "ETH"
    ),
    ("ETHEREUM", "testnet"): EvmNetwork(
        "ETHEREUM", "sepolia", 11155111, "https://rpc.sepolia.org", "0xfFf9976782d46CC05630D1f6eBAb18b2324d6B14", "ETH"
    ),
    ("POLYGON", "mainnet"): EvmNetwork(
        "POLYGON", "mainnet", 137, "https://polygon-rpc.com", "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", "POL"
    ),
    ("POLYGON", "testnet"): EvmNetwork(
        "POLYGON", "amoy", 80002, "https://rpc-amoy.polygon.technology", "0x360ad4f9a9A8EFe9A8DCB5f461c4Cc1047E1Dcf9", "POL"
    ),
    ("ARBITRUM", "mainnet"): EvmNetwork(
        "ARBITRUM", "mainnet", 42161, "https://arb1.arbitrum.io/rpc", "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", "ETH"
    ),
    ("ARBITRUM", "testnet"): EvmNetwork(
        "ARBITRUM",
        "sepolia",
        421614,
        "https://sepolia-rollup.arbitrum.io/rpc",
        "0x980B62Da83eFf3D4576C647993b0c1D7faf17c73",
        "ETH",
    ),
    ("BSC", "mainnet"): EvmNetwork(
        "BSC", "mainnet", 56, "https://bsc-dataseed.binance.org", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", "BNB"
    ),
    ("BSC", "testnet"): EvmNetwork(
        "BSC",
        "testnet",
        97,
        "https://data-seed-prebsc-1-s1.binance.org:8545",
        "0xae13d989daC2f0dEbFf460aC112a837C89BAa7cd",
        "BNB",
    ),
    ("BASE", "mainnet"): EvmNetwork(
        "BASE", "mainnet", 8453, "https://mainnet.base.org", "0x4200000000000000000000000000000000000006", "ETH"
    ),
    ("BASE", "testnet"): EvmNetwork(
        "BASE", "sepolia", 84532, "https://sepolia.base.org", "0x4200000000000000000000000000000000000006", "ETH"
    ),
}

EVM_CHAINS = frozenset(chain for chain, _ in _NETWORKS)


def is_evm_chain(chain: str) -> bool:
    return str(chain or "").upper() in EVM_CHAINS


def evm_network_for(chain: str, network: str) -> EvmNetwork:
    """Mainnet when ``network`` is "mainnet", the chain's testnet for anything else."""
    mode = "mainnet" if str(network or "").strip().lower() == "mainnet" else "testnet"
    try:
        return _NETWORKS[(str(chain or "").upper(), mode)]
    except KeyError:
        raise ValueError(f"Unsupported EVM chain: {chain}") from None
