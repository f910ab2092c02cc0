"""Collaborator contracts consumed by the engine.

The engine never fetches quotes, moves cash or touches storage itself; it
goes through these protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .models import utcnow


@dataclass(frozen=True)
class PriceSnapshot:
    symbol: str
    price: float
    change_percent: float = 0.0
    volume: float = 0.0
    as_of: datetime = field(default_factory=utcnow)


@dataclass
class Holding:
    symbol: str
    quantity: int
    average_price: float
    current_price: float

    @property
    def total_value(self) -> float:
        return self.quantity * self.current_price


@dataclass
class PortfolioSummary:
    cash_balance: float
    total_value: float
    total_profit_loss_percent: float
    holdings: dict[str, Holding] = field(default_factory=dict)

    @property
    def invested_amount(self) -> float:
        return sum(h.total_value for h in self.holdings.values())


class MarketDataGateway(Protocol):
    def get_quote(self, symbol: str) -> PriceSnapshot:
        """Raises ``DataUnavailable`` when no price can be produced."""
        ...

    def get_candidates(self, limit: int) -> list[str]:
        ...


class PortfolioLedger(Protocol):
    def execute_trade(
        self,
        symbol: str,
        action: str,
        quantity: int,
        price: float,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        ...

    def get_summary(self) -> PortfolioSummary:
        ...


class Persistence(Protocol):
    def load(self, key: str) -> Any | None:
        ...

    def save(self, key: str, value: Any) -> None:
        ...
