"""Settlement-layer results and typed failures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from utils.utcnow import utcnow


class SettlementError(Exception):
    """Base class for a failed atomic submission."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class SettlementRejected(SettlementError):
    """The node refused the transaction (preflight, signature, blockhash)."""


class SettlementTimeout(SettlementError):
    """No final status was observed before the confirmation deadline."""


class SettlementReverted(SettlementError):
    """The transaction landed but its execution failed; no state changed."""


class InsufficientFundingError(Exception):
    """A transfer would take the funding wallet below its reserve."""


@dataclass(frozen=True)
class SettlementReceipt:
    signature: str
    slot: Optional[int] = None
    confirmation_status: str = "confirmed"


@dataclass
class BalanceSnapshot:
    owner: str
    native: int
    tokens: dict[str, int] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=utcnow)

    def token(self, mint: str) -> int:
        return int(self.tokens.get(mint, 0))

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "native": self.native,
            "tokens": dict(self.tokens),
            "taken_at": self.taken_at.isoformat(),
        }
