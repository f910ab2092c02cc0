from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidTransition


Action = Literal["BUY", "SELL", "HOLD"]
TradeAction = Literal["BUY", "SELL"]
RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]
Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
Priority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
TradeStatus = Literal["PENDING", "EXECUTING", "COMPLETED", "FAILED", "CANCELLED"]
DecisionOutcome = Literal[
    "EXECUTE_TRADE",
    "SKIP_RISK",
    "SKIP_CONFIDENCE",
    "SKIP_LIMITS",
    "SKIP_MARKET_CONDITIONS",
]

PRIORITY_RANK: dict[str, int] = {"URGENT": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}

TRADE_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"EXECUTING", "CANCELLED"},
    "EXECUTING": {"COMPLETED", "FAILED"},
    "COMPLETED": set(),
    "FAILED": set(),
    "CANCELLED": set(),
}
TERMINAL_TRADE_STATUSES = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Recommendation(BaseModel):
    """A single AI trade recommendation, validated at the dispatcher boundary."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    symbol: str = Field(min_length=1, max_length=15)
    action: Action
    confidence: float = Field(ge=0, le=100)
    current_price: float = Field(default=0.0, ge=0)
    target_price: float = Field(default=0.0, ge=0)
    risk_level: RiskLevel = "MEDIUM"
    reasoning: str = ""
    generated_at: datetime = Field(default_factory=utcnow)

    @field_validator("symbol", mode="before")
    @classmethod
    def _clean_symbol(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("action", "risk_level", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


@dataclass(frozen=True)
class Decision:
    id: str
    timestamp: datetime
    symbol: str
    recommendation: Recommendation
    outcome: DecisionOutcome
    reason: str
    trade_id: str | None = None

    @property
    def trade_executed(self) -> bool:
        return self.outcome == "EXECUTE_TRADE"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "symbol": self.symbol,
            "recommendation": self.recommendation.model_dump(mode="json"),
            "outcome": self.outcome,
            "reason": self.reason,
            "trade_id": self.trade_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Decision":
        return cls(
            id=data["id"],
            timestamp=_parse_dt(data["timestamp"]),
            symbol=data["symbol"],
            recommendation=Recommendation.model_validate(data["recommendation"]),
            outcome=data["outcome"],
            reason=data.get("reason", ""),
            trade_id=data.get("trade_id"),
        )


@dataclass
class QueuedTrade:
    id: str
    symbol: str
    action: TradeAction
    quantity: int
    target_price: float
    priority: Priority
    created_at: datetime
    scheduled_for: datetime
    status: TradeStatus = "PENDING"
    reason: str = ""
    source: str = "recommendation"   # recommendation / protective / target_sweep
    confidence: float = 0.0
    rationale: str = ""
    executed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRADE_STATUSES

    @property
    def notional(self) -> float:
        return self.quantity * self.target_price

    def transition(self, new_status: TradeStatus, reason: str = "", at: datetime | None = None) -> None:
        allowed = TRADE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidTransition(f"Trade {self.id}: {self.status} -> {new_status} is not allowed")
        self.status = new_status
        if reason:
            self.reason = reason
        if new_status in TERMINAL_TRADE_STATUSES and new_status != "CANCELLED":
            self.executed_at = at or utcnow()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        data["scheduled_for"] = _iso(self.scheduled_for)
        data["executed_at"] = _iso(self.executed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueuedTrade":
        payload = dict(data)
        payload["created_at"] = _parse_dt(payload["created_at"])
        payload["scheduled_for"] = _parse_dt(payload["scheduled_for"])
        payload["executed_at"] = _parse_dt(payload.get("executed_at"))
        return cls(**payload)


@dataclass
class Performance:
    total_automated_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_automated_trades <= 0:
            return 0.0
        return self.successful_trades / self.total_automated_trades * 100

    def record(self, success: bool) -> None:
        self.total_automated_trades += 1
        if success:
            self.successful_trades += 1
        else:
            self.failed_trades += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_automated_trades": self.total_automated_trades,
            "successful_trades": self.successful_trades,
            "failed_trades": self.failed_trades,
            "success_rate": round(self.success_rate, 2),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Performance":
        data = data or {}
        return cls(
            total_automated_trades=int(data.get("total_automated_trades", 0)),
            successful_trades=int(data.get("successful_trades", 0)),
            failed_trades=int(data.get("failed_trades", 0)),
        )


@dataclass
class SellInstruction:
    """Protective exit emitted by the order ledger or the target sweep."""
    symbol: str
    quantity: int
    price: float
    reason: str
    order_id: str | None = None
    order_type: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
