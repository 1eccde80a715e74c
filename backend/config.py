from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "roundtrip_arb.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"

LAMPORTS_PER_SOL = 1_000_000_000


def _chain_network_key(chain: str, network: str) -> str:
    network = str(network or "").strip().lower()
    return f"{str(chain or '').strip().upper()}:{'mainnet' if network == 'mainnet' else 'testnet'}"


def _lookup_chain_network(mapping: dict[str, str], chain: str, network: str) -> Optional[str]:
    wanted = _chain_network_key(chain, network)
    for key, value in mapping.items():
        key_chain, _, key_network = str(key).partition(":")
        if value and _chain_network_key(key_chain, key_network) == wanted:
            return str(value).strip()
    return None


class Settings(BaseSettings):
    # Quote source (Jupiter aggregator)
    JUPITER_API_URL: str = "https://quote-api.jup.ag/v6"
    QUOTE_FALLBACK_ENABLED: bool = True  # Serve mock quotes when the quote API is unreachable
    QUOTE_FORCE_MOCK: bool = False  # Always return mock quotes (offline development)
    QUOTE_MAX_ACCOUNTS: int = 64  # Cap per-leg account usage so two legs fit one transaction
    JUPITER_QUOTE_RATE_PER_SECOND: float = 5.0
    JUPITER_SWAP_RATE_PER_SECOND: float = 2.0

    # Quote source for EVM chains (0x Swap API v2, allowance-holder flow)
    ZEROX_API_URL: str = "https://api.0x.org"
    ZEROX_API_KEY: Optional[str] = None
    ZEROX_RATE_PER_SECOND: float = 2.0

    # Settlement chain RPC
    SOLANA_MAINNET_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    SOLANA_DEVNET_RPC_URL: str = "https://api.devnet.solana.com"
    SOLANA_COMMITMENT: str = "confirmed"
    SETTLEMENT_CONFIRM_TIMEOUT_SECONDS: float = 60.0
    SETTLEMENT_POLL_INTERVAL_SECONDS: float = 1.0
    EVM_RPC_URLS: dict[str, str] = {}  # "POLYGON:mainnet" -> RPC url; public endpoints otherwise
    EVM_EXECUTOR_CONTRACTS: dict[str, str] = {}  # "POLYGON:mainnet" -> batch executor contract
    EVM_GAS_LIMIT_MULTIPLIER: float = 1.2

    # Wallets
    EXECUTOR_WALLET_SECRET_KEY: Optional[str] = None  # base58 keypair that signs arbitrage bundles
    OPS_WALLET_SECRET_KEY: Optional[str] = None  # base58 keypair funding fee-payer top-ups
    EVM_EXECUTOR_WALLET_SECRET_KEY: Optional[str] = None  # hex private key signing EVM bundles
    EVM_OPS_WALLET_SECRET_KEY: Optional[str] = None  # hex private key funding EVM fee-payer top-ups

    # HTTP behaviour
    API_TIMEOUT_SECONDS: float = 15.0
    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 8.0

    # Trade sizing and profit thresholds (all amounts in smallest units)
    DEFAULT_TRADE_AMOUNT: int = 100_000_000  # 0.1 SOL
    DEFAULT_SLIPPAGE_BPS: int = 50
    MIN_NET_PROFIT: int = 200_000  # 0.0002 SOL
    MIN_PROFIT_BPS: int = 10
    MAX_NOTIONAL: int = 10 * LAMPORTS_PER_SOL

    # Profit waterfall cost model
    COMPUTE_BUDGET_FEE: int = 5_000  # Base signature fee per transaction
    DEFAULT_PRIORITY_FEE: int = 1_000  # Used when a quote carries no prioritization fee
    SLIPPAGE_BUFFER_BPS: int = 50  # Reserved against realized slippage, of notional
    ATA_RENT_EXEMPT: int = 2_039_280  # Refundable; reported, never subtracted

    # Circuit breaker
    MAX_PROFIT_DIVERGENCE_RATIO: float = 0.5  # Trip when realized < estimate * (1 - ratio)
    MIN_DIVERGENCE_DELTA: int = 1_000_000  # Ignore shortfalls smaller than this

    # Fee payer inventory
    AUTO_REFILL_PROFIT_TRIGGER: int = 10_000_000  # Realized profit that kicks off a refill pass
    DEFAULT_MIN_FEE_PAYER_BALANCE: int = 50_000_000  # 0.05 SOL
    DEFAULT_FEE_PAYER_TOP_UP: int = 200_000_000  # 0.2 SOL
    DEFAULT_OPS_WALLET_RESERVE: int = 5_000  # Funding wallet keeps at least this after a transfer
    EVM_DEFAULT_MIN_FEE_PAYER_BALANCE: int = 10_000_000_000_000_000  # 0.01 native (wei)
    EVM_DEFAULT_FEE_PAYER_TOP_UP: int = 50_000_000_000_000_000  # 0.05 native (wei)
    EVM_DEFAULT_OPS_WALLET_RESERVE: int = 0

    # Orchestrator
    ARB_CYCLE_INTERVAL_SECONDS: int = 60
    EXECUTION_BATCH_LIMIT: int = 10
    SCAN_CONCURRENCY_PER_CHAIN: int = 4

    # Database
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    @field_validator(
        "JUPITER_API_URL",
        "ZEROX_API_URL",
        "SOLANA_MAINNET_RPC_URL",
        "SOLANA_DEVNET_RPC_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so worker cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    def rpc_url_for(self, network: str) -> str:
        if str(network or "").strip().lower() == "mainnet":
            return self.SOLANA_MAINNET_RPC_URL
        return self.SOLANA_DEVNET_RPC_URL

    def evm_rpc_url_for(self, chain: str, network: str) -> Optional[str]:
        url = _lookup_chain_network(self.EVM_RPC_URLS, chain, network)
        return url.rstrip("/") if url else None

    def evm_executor_contract_for(self, chain: str, network: str) -> Optional[str]:
        return _lookup_chain_network(self.EVM_EXECUTOR_CONTRACTS, chain, network)

    def executor_secret_for(self, chain: str) -> Optional[str]:
        if str(chain or "SOLANA").upper() == "SOLANA":
            return self.EXECUTOR_WALLET_SECRET_KEY
        return self.EVM_EXECUTOR_WALLET_SECRET_KEY

    def ops_secret_for(self, chain: str) -> Optional[str]:
        if str(chain or "SOLANA").upper() == "SOLANA":
            return self.OPS_WALLET_SECRET_KEY
        return self.EVM_OPS_WALLET_SECRET_KEY

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
