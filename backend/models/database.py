from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    Date,
    DateTime,
    Float,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from pathlib import Path
import enum
import logging
import os

from config import settings
from models.types import BigAmount
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class ChainType(str, enum.Enum):
    SOLANA = "SOLANA"
    ETHEREUM = "ETHEREUM"
    BASE = "BASE"
    POLYGON = "POLYGON"
    ARBITRUM = "ARBITRUM"
    BSC = "BSC"


class RunStatus(str, enum.Enum):
    SIMULATED = "SIMULATED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class RunPurpose(str, enum.Enum):
    MANUAL = "MANUAL"
    FEE_PAYER_REFILL = "FEE_PAYER_REFILL"
    OPS_REFILL = "OPS_REFILL"


class AccountingBasis(str, enum.Enum):
    NATIVE = "NATIVE"  # round trip starts and ends in the chain's native (or wrapped native) asset
    TOKEN_IN = "TOKEN_IN"  # realized profit measured on the input token balance


class CycleStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class RefillStatus(str, enum.Enum):
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    FAILED = "FAILED"


class AlertType(str, enum.Enum):
    SAFE_MODE_TRIPPED = "SAFE_MODE_TRIPPED"
    PROFIT_DIVERGENCE = "PROFIT_DIVERGENCE"
    DAILY_LOSS_BREACH = "DAILY_LOSS_BREACH"
    FEE_PAYER_SHORTFALL = "FEE_PAYER_SHORTFALL"


# ==================== STRATEGIES & RUNS ====================


class ArbitrageStrategy(Base):
    """Round-trip route definition with its risk limits."""

    __tablename__ = "arbitrage_strategies"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    chain = Column(String, nullable=False, default=ChainType.SOLANA.value, index=True)
    network = Column(String, nullable=False, default="devnet")  # mainnet | devnet
    token_in = Column(String, nullable=False)
    token_out = Column(String, nullable=False)
    venue_a = Column(String, nullable=True)  # restrict leg A to this DEX label
    venue_b = Column(String, nullable=True)  # restrict leg B to this DEX label
    trade_amount = Column(BigAmount, nullable=False)
    slippage_bps = Column(Integer, nullable=False, default=50)

    is_enabled = Column(Boolean, nullable=False, default=True)
    is_auto_enabled = Column(Boolean, nullable=False, default=False)
    is_for_fee_payer_refill = Column(Boolean, nullable=False, default=False)
    is_for_ops_refill = Column(Boolean, nullable=False, default=False)

    # Risk limits (smallest units)
    min_expected_profit = Column(BigAmount, nullable=False, default=0)
    min_profit_to_gas_ratio = Column(Float, nullable=False, default=0.0)
    max_daily_loss = Column(BigAmount, nullable=False, default=0)  # 0 disables the check
    max_trades_per_day = Column(Integer, nullable=False, default=0)  # 0 disables the check
    max_trade_notional = Column(BigAmount, nullable=True)

    # Flash loan configuration
    use_flash_loan = Column(Boolean, nullable=False, default=False)
    flash_loan_provider = Column(String, nullable=True)
    flash_loan_token = Column(String, nullable=True)
    flash_loan_amount = Column(BigAmount, nullable=True)
    flash_loan_fee_bps = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ArbitrageRun(Base):
    """One evaluated opportunity: scan result, decision and execution outcome."""

    __tablename__ = "arbitrage_runs"

    id = Column(String, primary_key=True)
    strategy_id = Column(
        String,
        ForeignKey("arbitrage_strategies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chain = Column(String, nullable=False, default=ChainType.SOLANA.value)
    status = Column(String, nullable=False, default=RunStatus.SIMULATED.value)
    run_type = Column(String, nullable=False, default="SCAN")  # SCAN | EXECUTION
    purpose = Column(String, nullable=False, default=RunPurpose.MANUAL.value)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    input_amount = Column(BigAmount, nullable=False, default=0)
    estimated_profit = Column(BigAmount, nullable=True)
    estimated_gas_cost = Column(BigAmount, nullable=True)
    actual_profit = Column(BigAmount, nullable=True)  # null until settled
    profit_drift = Column(BigAmount, nullable=True)  # actual - estimated
    accounting_basis = Column(String, nullable=True)
    is_fallback_quote = Column(Boolean, nullable=False, default=False)
    used_flash_loan = Column(Boolean, nullable=False, default=False)

    approved_for_auto_execution = Column(Boolean, nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    auto_executed = Column(Boolean, nullable=False, default=False)

    tx_signature = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, default=dict)

    __table_args__ = (
        Index("idx_arbitrage_runs_status_started", "status", "started_at"),
        Index("idx_arbitrage_runs_pending_decision", "status", "decided_at"),
    )


class DailyRiskLimit(Base):
    """Per-strategy, per-UTC-day accumulator for realized trades and PnL."""

    __tablename__ = "daily_risk_limits"

    id = Column(String, primary_key=True)
    strategy_id = Column(
        String,
        ForeignKey("arbitrage_strategies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date = Column(Date, nullable=False)
    chain = Column(String, nullable=False, default=ChainType.SOLANA.value)
    total_trades = Column(Integer, nullable=False, default=0)
    total_pnl = Column(BigAmount, nullable=False, default=0)
    total_loss = Column(BigAmount, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("strategy_id", "date", name="uq_daily_risk_strategy_date"),
        Index("idx_daily_risk_date", "date"),
    )


# ==================== FEE PAYERS ====================


class FeePayer(Base):
    """Gas-paying wallet. Deactivated, never deleted."""

    __tablename__ = "fee_payers"

    id = Column(String, primary_key=True)
    label = Column(String, nullable=True)
    public_key = Column(String, nullable=False, unique=True)
    encrypted_secret = Column(Text, nullable=True)  # only for wallets generated here
    chain = Column(String, nullable=False, default=ChainType.SOLANA.value, index=True)
    network = Column(String, nullable=False, default="devnet")
    is_active = Column(Boolean, nullable=False, default=True)
    balance = Column(BigAmount, nullable=False, default=0)
    balance_updated_at = Column(DateTime, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class FeePayerTopUp(Base):
    """Audit row for every attempted fee-payer funding transfer."""

    __tablename__ = "fee_payer_topups"

    id = Column(String, primary_key=True)
    fee_payer_id = Column(
        String,
        ForeignKey("fee_payers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    source = Column(String, nullable=False, default="OPS_WALLET")  # OPS_WALLET | ARBITRAGE_PROFIT
    source_address = Column(String, nullable=True)
    destination_address = Column(String, nullable=False)
    chain = Column(String, nullable=False, default=ChainType.SOLANA.value)
    amount = Column(BigAmount, nullable=False)
    status = Column(String, nullable=False, default="SUCCESS")  # SUCCESS | FAILED
    tx_signature = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class WalletRefillRequest(Base):
    """Outstanding request to fund a wallet from arbitrage profit."""

    __tablename__ = "wallet_refill_requests"

    id = Column(String, primary_key=True)
    wallet_type = Column(String, nullable=False, default="FEE_PAYER")  # FEE_PAYER | OPS
    wallet_address = Column(String, nullable=False)
    chain = Column(String, nullable=False, default=ChainType.SOLANA.value)
    reason = Column(String, nullable=False, default="FEE_PAYER_LOW_BALANCE")
    required_amount = Column(BigAmount, nullable=False, default=0)
    status = Column(String, nullable=False, default=RefillStatus.PENDING.value, index=True)
    fulfilled_by_run_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    fulfilled_at = Column(DateTime, nullable=True)


# ==================== SYSTEM STATE ====================


class SystemSettings(Base):
    """Singleton automation and safety flags (id="default")."""

    __tablename__ = "system_settings"

    id = Column(String, primary_key=True, default="default")
    auto_arbitrage_enabled = Column(Boolean, nullable=False, default=False)
    auto_flash_loans_enabled = Column(Boolean, nullable=False, default=False)
    safe_mode_enabled = Column(Boolean, nullable=False, default=False)
    safe_mode_reason = Column(Text, nullable=True)
    safe_mode_triggered_at = Column(DateTime, nullable=True)
    max_global_daily_loss = Column(BigAmount, nullable=False, default=0)  # 0 disables
    max_global_trades_per_day = Column(Integer, nullable=False, default=50)  # 0 disables
    is_mainnet_mode = Column(Boolean, nullable=False, default=False)
    # {"SOLANA": {"min_fee_payer_balance": ..., "fee_payer_top_up": ..., "ops_wallet_reserve": ...}}
    chain_limits = Column(JSON, default=dict)
    version = Column(Integer, nullable=False, default=1)
    updated_by = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ArbitrageAlert(Base):
    """Operator-facing alert; stands until acknowledged."""

    __tablename__ = "arbitrage_alerts"

    id = Column(String, primary_key=True)
    alert_type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, default="warning")  # info | warning | critical
    chain = Column(String, nullable=True)
    run_id = Column(String, nullable=True, index=True)
    strategy_id = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String, nullable=True)


class AutomationLog(Base):
    """One orchestrator cycle, append-only."""

    __tablename__ = "automation_logs"

    id = Column(String, primary_key=True)
    trigger_type = Column(String, nullable=False, default="scheduled")  # scheduled | manual
    cycle_started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    cycle_finished_at = Column(DateTime, nullable=True)
    scan_result = Column(JSON, nullable=True)
    decision_result = Column(JSON, nullable=True)
    execution_result = Column(JSON, nullable=True)
    wallet_check_result = Column(JSON, nullable=True)
    overall_status = Column(String, nullable=False, default=CycleStatus.RUNNING.value)
    error_message = Column(Text, nullable=True)


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades between the API process and the worker."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    with lock_path.open("a", encoding="utf-8") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


async def init_database():
    """Initialize database and apply Alembic migrations."""
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session
