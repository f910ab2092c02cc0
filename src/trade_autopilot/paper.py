from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from .gateways import Holding, Persistence, PortfolioSummary
from .models import utcnow
from .settings import settings


PAPER_KEY = "paper_portfolio"


@dataclass
class PaperFill:
    symbol: str
    action: str
    quantity: int
    price: float
    executed_at: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)


class PaperPortfolioLedger:
    """Simulated cash + holdings book; the only thing that moves balances."""

    def __init__(self, starting_cash: float | None = None, persistence: Persistence | None = None) -> None:
        self.starting_value = float(starting_cash if starting_cash is not None else settings.paper_starting_cash)
        self.cash = self.starting_value
        self.holdings: dict[str, Holding] = {}
        self.fills: list[PaperFill] = []
        self.persistence = persistence
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        stored = self.persistence.load(PAPER_KEY) if self.persistence else None
        if not stored:
            return
        self.starting_value = float(stored.get("starting_value", self.starting_value))
        self.cash = float(stored.get("cash", self.cash))
        self.holdings = {
            item["symbol"]: Holding(
                item["symbol"], int(item["quantity"]), float(item["average_price"]), float(item["current_price"])
            )
            for item in stored.get("holdings", [])
        }
        logger.info("Paper book restored: cash ${:.2f}, {} holdings", self.cash, len(self.holdings))

    def _save(self) -> None:
        if self.persistence is None:
            return
        self.persistence.save(
            PAPER_KEY,
            {
                "starting_value": self.starting_value,
                "cash": self.cash,
                "holdings": [asdict(h) for h in self.holdings.values()],
            },
        )

    def mark(self, symbol: str, price: float) -> None:
        with self._lock:
            holding = self.holdings.get(symbol)
            if holding is not None and price > 0:
                holding.current_price = price

    def execute_trade(
        self,
        symbol: str,
        action: str,
        quantity: int,
        price: float,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if quantity <= 0 or price <= 0:
            return False

        with self._lock:
            holding = self.holdings.get(symbol)
            if action == "BUY":
                cost = quantity * price
                if cost > self.cash:
                    logger.warning("Paper BUY {} x{} rejected: ${:.2f} > cash ${:.2f}", symbol, quantity, cost, self.cash)
                    return False
                self.cash -= cost
                if holding is None:
                    self.holdings[symbol] = Holding(symbol, quantity, price, price)
                else:
                    total = holding.quantity + quantity
                    holding.average_price = (holding.average_price * holding.quantity + cost) / total
                    holding.quantity = total
                    holding.current_price = price
            elif action == "SELL":
                if holding is None or holding.quantity < quantity:
                    logger.warning("Paper SELL {} x{} rejected: not enough shares", symbol, quantity)
                    return False
                self.cash += quantity * price
                holding.quantity -= quantity
                holding.current_price = price
                if holding.quantity == 0:
                    del self.holdings[symbol]
            else:
                return False

            self.fills.append(PaperFill(symbol, action, quantity, price, metadata=dict(metadata or {})))
            self._save()
        logger.info("Paper {} {} x{} @ {:.2f}", action, symbol, quantity, price)
        return True

    def get_summary(self) -> PortfolioSummary:
        with self._lock:
            holdings = {
                symbol: Holding(h.symbol, h.quantity, h.average_price, h.current_price)
                for symbol, h in self.holdings.items()
            }
            cash = self.cash
        total = cash + sum(h.total_value for h in holdings.values())
        pnl_percent = (total - self.starting_value) / self.starting_value * 100 if self.starting_value else 0.0
        return PortfolioSummary(
            cash_balance=cash,
            total_value=total,
            total_profit_loss_percent=pnl_percent,
            holdings=holdings,
        )
