"""DB-backed global automation settings and the safe-mode state machine.

Readers take one ``SettingsSnapshot`` per cycle. Every write goes through
``apply_state_transition``, which serializes writers in-process and uses the
row ``version`` as a compare-and-set guard against writers in other
processes (API server vs. worker).
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import SystemSettings
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("system_state")

SYSTEM_SETTINGS_ID = "default"
TRANSITIONS = ("update_settings", "trip_safe_mode", "clear_safe_mode")
_UPDATABLE_FIELDS = (
    "auto_arbitrage_enabled",
    "auto_flash_loans_enabled",
    "max_global_daily_loss",
    "max_global_trades_per_day",
    "is_mainnet_mode",
)
_CHAIN_LIMIT_KEYS = ("min_fee_payer_balance", "fee_payer_top_up", "ops_wallet_reserve")
_MAX_CAS_ATTEMPTS = 3

_transition_lock = asyncio.Lock()


class StaleSettingsError(Exception):
    """The settings row changed between read and conditional write."""


class InvalidTransitionError(ValueError):
    pass


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return default


@dataclass(frozen=True)
class ChainLimits:
    min_fee_payer_balance: int
    fee_payer_top_up: int
    ops_wallet_reserve: int

    @classmethod
    def defaults(cls, chain: str = "SOLANA") -> "ChainLimits":
        if str(chain or "SOLANA").upper() != "SOLANA":
            return cls(
                min_fee_payer_balance=settings.EVM_DEFAULT_MIN_FEE_PAYER_BALANCE,
                fee_payer_top_up=settings.EVM_DEFAULT_FEE_PAYER_TOP_UP,
                ops_wallet_reserve=settings.EVM_DEFAULT_OPS_WALLET_RESERVE,
            )
        return cls(
            min_fee_payer_balance=settings.DEFAULT_MIN_FEE_PAYER_BALANCE,
            fee_payer_top_up=settings.DEFAULT_FEE_PAYER_TOP_UP,
            ops_wallet_reserve=settings.DEFAULT_OPS_WALLET_RESERVE,
        )


@dataclass(frozen=True)
class SettingsSnapshot:
    auto_arbitrage_enabled: bool = False
    auto_flash_loans_enabled: bool = False
    safe_mode_enabled: bool = False
    safe_mode_reason: Optional[str] = None
    safe_mode_triggered_at: Optional[datetime] = None
    max_global_daily_loss: int = 0
    max_global_trades_per_day: int = 50
    is_mainnet_mode: bool = False
    chain_limits: dict[str, ChainLimits] = field(default_factory=dict)
    version: int = 1

    @property
    def network(self) -> str:
        return "mainnet" if self.is_mainnet_mode else "devnet"

    def limits_for(self, chain: str) -> ChainLimits:
        chain = str(chain or "").upper()
        return self.chain_limits.get(chain) or ChainLimits.defaults(chain)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["safe_mode_triggered_at"] = _to_iso(self.safe_mode_triggered_at)
        payload["network"] = self.network
        return payload


def _parse_chain_limits(raw: Any) -> dict[str, ChainLimits]:
    parsed: dict[str, ChainLimits] = {}
    for chain, values in (raw or {}).items() if isinstance(raw, dict) else []:
        if not isinstance(values, dict):
            continue
        defaults = ChainLimits.defaults(chain)
        parsed[str(chain).upper()] = ChainLimits(
            **{key: _safe_int(values.get(key), getattr(defaults, key)) for key in _CHAIN_LIMIT_KEYS}
        )
    return parsed


def _snapshot_from_row(row: SystemSettings) -> SettingsSnapshot:
    return SettingsSnapshot(
        auto_arbitrage_enabled=bool(row.auto_arbitrage_enabled),
        auto_flash_loans_enabled=bool(row.auto_flash_loans_enabled),
        safe_mode_enabled=bool(row.safe_mode_enabled),
        safe_mode_reason=row.safe_mode_reason,
        safe_mode_triggered_at=row.safe_mode_triggered_at,
        max_global_daily_loss=_safe_int(row.max_global_daily_loss),
        max_global_trades_per_day=_safe_int(row.max_global_trades_per_day, 50),
        is_mainnet_mode=bool(row.is_mainnet_mode),
        chain_limits=_parse_chain_limits(row.chain_limits),
        version=_safe_int(row.version, 1),
    )


def _serialize_settings(row: SystemSettings) -> dict[str, Any]:
    payload = _snapshot_from_row(row).to_dict()
    payload["updated_by"] = row.updated_by
    payload["updated_at"] = _to_iso(row.updated_at)
    return payload


async def ensure_system_settings(session: AsyncSession) -> SystemSettings:
    row = await session.get(SystemSettings, SYSTEM_SETTINGS_ID)
    if row is None:
        defaults = ChainLimits.defaults()
        row = SystemSettings(
            id=SYSTEM_SETTINGS_ID,
            auto_arbitrage_enabled=False,
            auto_flash_loans_enabled=False,
            safe_mode_enabled=False,
            max_global_daily_loss=0,
            max_global_trades_per_day=50,
            is_mainnet_mode=False,
            chain_limits={"SOLANA": asdict(defaults)},
            version=1,
            updated_at=utcnow(),
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)
    return row


async def read_settings_snapshot(session: AsyncSession) -> SettingsSnapshot:
    row = await ensure_system_settings(session)
    await session.refresh(row)
    return _snapshot_from_row(row)


async def read_system_settings(session: AsyncSession) -> dict[str, Any]:
    row = await ensure_system_settings(session)
    await session.refresh(row)
    return _serialize_settings(row)


def _values_for_transition(row: SystemSettings, transition: str, fields: dict[str, Any]) -> dict[str, Any]:
    if transition == "trip_safe_mode":
        if row.safe_mode_enabled:
            return {}
        return {
            "safe_mode_enabled": True,
            "safe_mode_reason": str(fields.get("reason") or "Safe mode enabled"),
            "safe_mode_triggered_at": utcnow(),
        }

    if transition == "clear_safe_mode":
        if not row.safe_mode_enabled:
            return {}
        return {"safe_mode_enabled": False, "safe_mode_reason": None, "safe_mode_triggered_at": None}

    values: dict[str, Any] = {}
    for key in _UPDATABLE_FIELDS:
        if key in fields and fields[key] is not None:
            value = fields[key]
            if key in {"max_global_daily_loss", "max_global_trades_per_day"}:
                value = int(value)
                if value < 0:
                    raise InvalidTransitionError(f"{key} must be non-negative")
            else:
                value = bool(value)
            values[key] = value
    if isinstance(fields.get("chain_limits"), dict):
        merged = dict(row.chain_limits or {})
        for chain, limits in fields["chain_limits"].items():
            if not isinstance(limits, dict):
                continue
            current = dict(merged.get(str(chain).upper()) or asdict(ChainLimits.defaults(chain)))
            for key in _CHAIN_LIMIT_KEYS:
                if limits.get(key) is not None:
                    amount = int(limits[key])
                    if amount < 0:
                        raise InvalidTransitionError(f"{chain}.{key} must be non-negative")
                    current[key] = amount
            merged[str(chain).upper()] = current
        values["chain_limits"] = merged
    return values


async def apply_state_transition(
    session: AsyncSession,
    transition: str,
    *,
    expected_version: Optional[int] = None,
    operator: Optional[str] = None,
    **fields: Any,
) -> tuple[SettingsSnapshot, bool]:
    """Apply one settings transition; returns ``(snapshot, changed)``.

    With ``expected_version`` the write only lands if nobody else wrote
    since that version, otherwise ``StaleSettingsError``. Without it, a
    concurrent write is retried against the fresh row.
    """
    if transition not in TRANSITIONS:
        raise InvalidTransitionError(f"Unknown settings transition: {transition}")

    async with _transition_lock:
        for _ in range(_MAX_CAS_ATTEMPTS):
            row = await ensure_system_settings(session)
            await session.refresh(row)
            current_version = _safe_int(row.version, 1)
            if expected_version is not None and int(expected_version) != current_version:
                raise StaleSettingsError(
                    f"Settings changed (expected version {expected_version}, found {current_version})"
                )

            values = _values_for_transition(row, transition, fields)
            if not values:
                return _snapshot_from_row(row), False

            values.update(version=current_version + 1, updated_by=operator, updated_at=utcnow())
            result = await session.execute(
                update(SystemSettings)
                .where(SystemSettings.id == SYSTEM_SETTINGS_ID, SystemSettings.version == current_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.commit()
                await session.refresh(row)
                logger.info(
                    "Settings transition applied",
                    transition=transition,
                    version=row.version,
                    operator=operator,
                    changes=sorted(k for k in values if k not in {"version", "updated_at", "updated_by"}),
                )
                return _snapshot_from_row(row), True

            await session.rollback()
            if expected_version is not None:
                raise StaleSettingsError("Settings changed concurrently")

    raise StaleSettingsError(f"Could not apply {transition} after {_MAX_CAS_ATTEMPTS} attempts")
